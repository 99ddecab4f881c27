"""Shared in-memory stand-ins for the clock, exchange and notification channel."""
import asyncio
import copy
import sys
from collections import deque
from datetime import date, datetime, timezone
from typing import Any, Deque, Dict, List, Optional

sys.path.insert(0, '.')

from analytics.candles import Candle
from analytics.indicators import BollingerBands, IndicatorSnapshot, MACDResult
from ingest.binance_rest import BinanceAPIError
from monitoring.async_utils import SystemClock
from strategy.execution_types import OrderTicket
from strategy.transports.binance import SymbolInfo


START_MS = 1_700_000_000_000

BASE_CONFIG: Dict[str, Any] = {
    'exchange': {
        'symbol': 'BTCUSDT',
        'base_asset': 'BTC',
        'quote_asset': 'USDT',
        'quantity_step': 0.00001,
        'min_quantity': 0.00001,
        'price_tick': 0.01,
        'request_timeout_s': 2,
    },
    'window': {'max_size': 100, 'ttl_hours': 24, 'reject_out_of_order': True},
    'indicators': {},
    'strategy': {
        'paper_trading': True,
        'commission': 0.001,
        'min_profit_margin': 0.005,
        'min_candles': 50,
        'min_conditions': 5,
        'max_daily_signals': 300,
    },
    'risk': {'stop_atr_multiplier': 1.5, 'take_profit_atr_multiplier': 3.0, 'atr_floor_fraction': 0.1},
    'selling': {'prefer_immediate': True},
    'reconciliation': {
        'interval_s': 15,
        'grace_period_s': 300,
        'max_attempts': 3,
        'base_backoff_s': 5,
        'max_backoff_s': 120,
        'exhausted_retry_s': 1800,
        'signal_ttl_hours': 0,
    },
    'database': {'enabled': False},
    'notifications': {},
    'monitoring': {'prometheus_port': 0},
    'api': {'enabled': False},
    'users': [],
}


def make_config(**sections: Dict[str, Any]) -> Dict[str, Any]:
    cfg = copy.deepcopy(BASE_CONFIG)
    for name, values in sections.items():
        if isinstance(values, dict) and isinstance(cfg.get(name), dict):
            cfg[name].update(values)
        else:
            cfg[name] = values
    return cfg


class FakeClock(SystemClock):
    def __init__(self, start: float = START_MS / 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def time(self) -> float:
        return self.now

    def today(self) -> date:
        return datetime.fromtimestamp(self.now, tz=timezone.utc).date()

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.reports = []
        self.fail = fail

    async def send_trade_report(self, report) -> bool:
        if self.fail:
            raise RuntimeError("webhook down")
        self.reports.append(report)
        return True


def order_payload(order_id: int, status: str, side: str = 'BUY', qty: float = 0.00019,
                  price: float = 0.0, quote: float = 0.0) -> Dict[str, Any]:
    return {
        'symbol': 'BTCUSDT',
        'orderId': order_id,
        'clientOrderId': f'cid-{order_id}',
        'side': side,
        'type': 'MARKET' if side == 'BUY' else 'LIMIT',
        'origQty': f'{qty:.5f}',
        'executedQty': f'{qty:.5f}' if status == 'FILLED' else '0.00000',
        'cummulativeQuoteQty': f'{quote:.8f}',
        'price': f'{price:.2f}',
        'status': status,
    }


class FakeTransport:
    """Scriptable replacement for ``BinanceTransport``.

    ``create_results`` and ``status_results`` are queues of either exceptions to
    raise or payload dicts to return; the last status result repeats.
    """

    def __init__(self, create_results=None, status_results=None, balances=None):
        self.create_results: Deque[Any] = deque(create_results or [])
        self.status_results: Deque[Any] = deque(status_results or [])
        self.balances = balances or {'BTC': 0.0, 'USDT': 5.0}
        self.create_calls: List[Dict[str, Any]] = []
        self.status_calls: List[str] = []
        self.sync_calls = 0
        self.closed = False
        self.acked: Dict[str, Dict[str, Any]] = {}
        self._next_id = 1000

    async def sync_time(self) -> int:
        self.sync_calls += 1
        return 0

    async def get_server_time(self) -> int:
        return START_MS

    async def fetch_symbol_info(self, symbol: str) -> Optional[SymbolInfo]:
        return SymbolInfo(symbol, 'BTC', 'USDT', 0.01, 0.00001, 0.00001, {})

    async def create_order(self, symbol, side, order_type, quantity, price=None, time_in_force=None,
                           client_order_id=None) -> OrderTicket:
        self.create_calls.append({
            'symbol': symbol,
            'side': side,
            'type': order_type,
            'quantity': quantity,
            'price': price,
            'time_in_force': time_in_force,
            'client_order_id': client_order_id,
        })
        result = self.create_results.popleft() if self.create_results else None
        if isinstance(result, Exception):
            raise result
        if result is None:
            self._next_id += 1
            result = order_payload(self._next_id, 'NEW', side=side, qty=float(quantity))
        if client_order_id:
            self.acked[client_order_id] = result
        return _ticket(result)

    async def get_order_status(self, symbol: str, order_id: str) -> OrderTicket:
        self.status_calls.append(order_id)
        if len(self.status_results) > 1:
            result = self.status_results.popleft()
        elif self.status_results:
            result = self.status_results[0]
        elif order_id in self.acked:
            result = self.acked[order_id]
        elif order_id.isdigit():
            result = order_payload(int(order_id), 'NEW')
        else:
            result = BinanceAPIError(400, -2013, 'Order does not exist.', '{"code": -2013}')
        if isinstance(result, Exception):
            raise result
        return _ticket(result)

    async def get_account_balance(self, asset: str) -> float:
        return self.balances.get(asset, 0.0)

    async def close(self) -> None:
        self.closed = True


def _ticket(payload: Dict[str, Any]) -> OrderTicket:
    return OrderTicket(
        symbol=payload['symbol'],
        side=payload['side'],
        type=payload['type'],
        quantity=float(payload['origQty']),
        status=payload['status'],
        price=float(payload['price']) or None,
        executed_qty=float(payload['executedQty']),
        quote_qty=float(payload['cummulativeQuoteQty']),
        client_order_id=payload['clientOrderId'],
        exchange_order_id=payload['orderId'],
        raw=payload,
    )


def zigzag_uptrend(count: int = 60, base: float = 100000.0, start_ms: int = START_MS) -> List[Candle]:
    """Rising series alternating bullish-engulfing up candles with shallower down candles."""
    candles: List[Candle] = []
    prev_close: Optional[float] = None
    for i in range(count):
        close = base + 30 * i + (150 if i % 2 == 0 else -150)
        if prev_close is None:
            open_ = close - 5
        elif i % 2 == 0:
            open_ = prev_close - 5
        else:
            open_ = prev_close
        candles.append(Candle(
            open=open_,
            high=max(open_, close) + 20,
            low=min(open_, close) - 20,
            close=close,
            volume=10.0 + i % 5,
            timestamp=start_ms + i * 60_000,
        ))
        prev_close = close
    return candles


def make_snapshot(**overrides: Any) -> IndicatorSnapshot:
    """Snapshot that passes every entry condition unless overridden."""
    values: Dict[str, Any] = dict(
        close=100000.0,
        open=99900.0,
        sma_short=100100.0,
        sma_long=99800.0,
        sma_very_long=99500.0,
        ema_short=100050.0,
        ema_long=99900.0,
        rsi=55.0,
        macd=MACDResult(macd_line=(10.0, 12.0), signal_line=(8.0, 9.0), histogram=(2.0, 3.0)),
        atr=300.0,
        bollinger=BollingerBands(upper=100800.0, middle=100000.0, lower=99200.0),
        volume_ma=10.0,
        current_volume=12.0,
        bullish_engulfing=True,
        bearish_engulfing=False,
        timestamp=START_MS,
    )
    values.update(overrides)
    return IndicatorSnapshot(**values)
