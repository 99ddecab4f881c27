import asyncio
import logging
import time
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import aiohttp

from api.metrics import metrics
from config import config
from config.utils import get_config_section, section_value
from risk.position_sizer import floor_to_step
from strategy.execution_types import ExecutionOutcome, OrderTicket
from strategy.signal_types import Movement, MovementType
from strategy.simulators.paper import PaperTradingSimulator
from strategy.transports.binance import BinanceAPIError, BinanceTransport, MalformedResponseError


logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, MalformedResponseError)
EXCHANGE_ERRORS = (BinanceAPIError,) + TRANSIENT_ERRORS


def _decimals(step: float) -> int:
    exponent = Decimal(repr(float(step))).normalize().as_tuple().exponent
    return max(0, -exponent)


class ExecutionManager:
    """Order submission and status lookup for one user's account."""

    def __init__(
        self,
        user_id: str,
        transport: Optional[BinanceTransport] = None,
        paper_mode: bool = True,
        config_obj: Optional[Any] = None,
    ):
        source = config_obj if config_obj is not None else config
        exchange = get_config_section(source, "exchange")
        self.user_id = user_id
        self.symbol = exchange.get("symbol", "BTCUSDT")
        self.base_asset = exchange.get("base_asset", "BTC")
        self.quote_asset = exchange.get("quote_asset", "USDT")
        self.quantity_step = section_value(exchange, "quantity_step", 0.00001)
        self.price_tick = section_value(exchange, "price_tick", 0.01)
        self.timeout_s = section_value(exchange, "request_timeout_s", 10.0)
        self.paper_mode = paper_mode
        self.transport = transport
        self.simulator = PaperTradingSimulator(self.symbol)
        if not paper_mode and transport is None:
            raise ValueError(f"live execution for {user_id} needs a transport")

    async def initialize(self) -> None:
        if self.paper_mode:
            return
        try:
            await self._call("sync time", self.transport.sync_time, retry_skew=False)
            info = await self._call("symbol info", lambda: self.transport.fetch_symbol_info(self.symbol))
        except EXCHANGE_ERRORS as exc:
            self._log_transport_error("initialize", exc)
            return
        if info:
            if info.amount_step:
                self.quantity_step = info.amount_step
            if info.price_tick:
                self.price_tick = info.price_tick
            logger.info(
                "[%s] %s step=%s tick=%s",
                self.user_id,
                self.symbol,
                self.quantity_step,
                self.price_tick,
            )

    def format_quantity(self, qty: float) -> str:
        return "%.*f" % (_decimals(self.quantity_step), floor_to_step(qty, self.quantity_step))

    def format_price(self, price: float) -> str:
        digits = _decimals(self.price_tick)
        ticks = round(price / self.price_tick)
        return "%.*f" % (digits, ticks * self.price_tick)

    async def _call(self, action: str, factory: Callable[[], Awaitable[T]], retry_skew: bool = True) -> T:
        try:
            return await asyncio.wait_for(factory(), timeout=self.timeout_s)
        except BinanceAPIError as exc:
            if not (retry_skew and exc.is_clock_skew):
                raise
            logger.warning("[%s] %s hit clock skew; resyncing and retrying once", self.user_id, action)
        metrics.record_clock_resync()
        await asyncio.wait_for(self.transport.sync_time(), timeout=self.timeout_s)
        return await asyncio.wait_for(factory(), timeout=self.timeout_s)

    async def submit_order(self, movement: Movement) -> OrderTicket:
        quantity = self.format_quantity(movement.quantity)
        if movement.type is MovementType.BUY:
            factory = lambda: self.transport.create_order(
                self.symbol,
                "BUY",
                "MARKET",
                quantity,
                client_order_id=movement.movement_id,
            )
        else:
            price = self.format_price(movement.price)
            factory = lambda: self.transport.create_order(
                self.symbol,
                "SELL",
                "LIMIT",
                quantity,
                price=price,
                time_in_force="GTC",
                client_order_id=movement.movement_id,
            )
        started = time.perf_counter()
        ticket = await self._call(f"{movement.type.value} order", factory)
        metrics.record_order_send_latency(time.perf_counter() - started)
        return ticket

    async def execute_movement(self, symbol: str, movement: Movement) -> ExecutionOutcome:
        if symbol != self.symbol:
            raise ValueError(f"execution manager trades {self.symbol}, not {symbol}")
        if self.paper_mode:
            order_type = "MARKET" if movement.type is MovementType.BUY else "LIMIT"
            ticket = self.simulator.create_order(movement.type.value, order_type, movement.quantity, movement.price)
            if ticket is None:
                return ExecutionOutcome(rejected=True, error={"reason": "invalid_paper_order"})
            return ExecutionOutcome(ticket=ticket)

        try:
            ticket = await self.submit_order(movement)
        except BinanceAPIError as exc:
            self._log_transport_error(f"{movement.type.value} order", exc)
            if exc.is_transient or exc.is_clock_skew:
                metrics.record_order_error("transient")
                return ExecutionOutcome(error={"reason": "transient", "code": exc.code, "msg": exc.msg})
            metrics.record_order_error("rejected")
            return ExecutionOutcome(rejected=True, error=await self._rejection_diagnostics(movement, exc))
        except TRANSIENT_ERRORS as exc:
            self._log_transport_error(f"{movement.type.value} order", exc)
            metrics.record_order_error("transient")
            return ExecutionOutcome(error={"reason": "transient", "msg": str(exc) or type(exc).__name__})
        return ExecutionOutcome(ticket=ticket)

    async def fetch_order_status(self, order_id: str) -> OrderTicket:
        if self.paper_mode:
            ticket = self.simulator.get_order(order_id)
            if ticket is None:
                raise KeyError(f"unknown paper order {order_id}")
            return ticket
        return await self._call(
            f"order status {order_id}",
            lambda: self.transport.get_order_status(self.symbol, order_id),
        )

    async def _rejection_diagnostics(self, movement: Movement, error: BinanceAPIError) -> Dict[str, Any]:
        diagnostics: Dict[str, Any] = {
            "reason": "rejected",
            "code": error.code,
            "msg": error.msg,
            "side": movement.type.value,
            "requested_quantity": movement.quantity,
            "requested_price": movement.price,
            "requested_total": movement.total_amount,
        }
        for key, asset in (("free_base", self.base_asset), ("free_quote", self.quote_asset)):
            try:
                diagnostics[key] = await self._call(
                    f"{asset} balance",
                    lambda asset=asset: self.transport.get_account_balance(asset),
                )
            except EXCHANGE_ERRORS as exc:
                diagnostics[key] = None
                logger.debug("[%s] balance lookup for %s failed: %s", self.user_id, asset, exc)
        logger.error(
            "[%s] %s rejected: requested %.5f @ %.2f, free %s=%s %s=%s",
            self.user_id,
            movement.type.value.upper(),
            movement.quantity,
            movement.price,
            self.base_asset,
            diagnostics["free_base"],
            self.quote_asset,
            diagnostics["free_quote"],
        )
        return diagnostics

    async def close(self):
        if self.transport is not None:
            await self.transport.close()

    def _log_transport_error(self, action: str, error: Exception) -> None:
        if isinstance(error, BinanceAPIError):
            logger.error(
                "[%s] Binance %s failed (code=%s, msg=%s)",
                self.user_id,
                action,
                error.code,
                error.msg,
            )
        else:
            logger.error("[%s] %s failed: %s", self.user_id, action, error)
