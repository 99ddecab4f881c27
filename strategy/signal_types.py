import math
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional

from config.config_loader import as_bool, is_unresolved


class InvalidNumericError(ValueError):
    """Raised before persisting a record that carries a NaN/Infinity or non-numeric field."""


class InvalidTransitionError(ValueError):
    """Raised for movement/signal status changes that would move state backwards."""


class SignalStatus(Enum):
    ACTIVE = "active"
    MATCHED = "matched"
    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not SignalStatus.ACTIVE


class MovementType(Enum):
    BUY = "buy"
    SELL = "sell"


class MovementStatus(Enum):
    PENDING = "pending"
    FILLED = "filled"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not MovementStatus.PENDING


def can_transition(current: MovementStatus, target: MovementStatus) -> bool:
    """Movement statuses only move forward out of PENDING."""
    return current is MovementStatus.PENDING and target is not MovementStatus.PENDING


def to_float(value: Any) -> Optional[float]:
    """Single coercion point for numbers read back from storage (Decimal, str, int)."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidNumericError(f"boolean is not a numeric value: {value!r}")
    if isinstance(value, (Decimal, int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise InvalidNumericError(f"not a numeric value: {value!r}") from exc


def ensure_finite(record: str, values: Mapping[str, Any]) -> None:
    bad = []
    for name, value in values.items():
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            bad.append(f"{name}={value!r}")
    if bad:
        raise InvalidNumericError(f"{record} rejected, non-finite fields: {', '.join(bad)}")


def _timestamp(value: Any) -> Optional[float]:
    if value is None:
        return None
    if hasattr(value, 'timestamp'):
        return float(value.timestamp())
    return to_float(value)


@dataclass
class Movement:
    signal_id: str
    type: MovementType
    price: float
    quantity: float
    total_amount: float
    commission: float
    net_amount: float
    status: MovementStatus = MovementStatus.PENDING
    movement_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    order_id: Optional[str] = None
    client_order_id: Optional[str] = None
    order_response: Optional[Dict[str, Any]] = None
    order_error: Optional[Dict[str, Any]] = None
    created_at: float = field(default_factory=time.time)
    executed_at: Optional[float] = None

    NUMERIC_FIELDS = ('price', 'quantity', 'total_amount', 'commission', 'net_amount')

    def validate(self) -> None:
        ensure_finite('Movement', {name: getattr(self, name) for name in self.NUMERIC_FIELDS})
        if self.price <= 0 or self.quantity <= 0:
            raise InvalidNumericError(
                f"Movement rejected, non-positive price/quantity: {self.price}/{self.quantity}"
            )

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> 'Movement':
        return cls(
            movement_id=str(row['id']),
            signal_id=str(row['signal_id']),
            type=MovementType(row['type']),
            status=MovementStatus(row['status']),
            price=to_float(row['price']),
            quantity=to_float(row['quantity']),
            total_amount=to_float(row['total_amount']),
            commission=to_float(row['commission']),
            net_amount=to_float(row['net_amount']),
            order_id=str(row['order_id']) if row.get('order_id') is not None else None,
            client_order_id=row.get('client_order_id'),
            order_response=row.get('order_response'),
            order_error=row.get('order_error'),
            created_at=_timestamp(row.get('created_at')) or time.time(),
            executed_at=_timestamp(row.get('executed_at')),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.movement_id,
            'signal_id': self.signal_id,
            'type': self.type.value,
            'status': self.status.value,
            'price': self.price,
            'quantity': self.quantity,
            'total_amount': self.total_amount,
            'commission': self.commission,
            'net_amount': self.net_amount,
            'order_id': self.order_id,
            'client_order_id': self.client_order_id,
            'order_response': self.order_response,
            'order_error': self.order_error,
            'created_at': self.created_at,
            'executed_at': self.executed_at,
        }


@dataclass
class Signal:
    user_id: str
    symbol: str
    initial_price: float
    stop_loss: float
    take_profit: float
    atr: float
    rsi: float
    macd: float
    sma_short: float
    sma_long: float
    volume: float
    paper_trading: bool = True
    status: SignalStatus = SignalStatus.ACTIVE
    signal_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    final_price: float = 0.0
    total_profit: float = 0.0
    total_commission: float = 0.0
    net_profit: float = 0.0
    created_at: float = field(default_factory=time.time)
    closed_at: Optional[float] = None
    movements: List[Movement] = field(default_factory=list)

    NUMERIC_FIELDS = (
        'initial_price', 'stop_loss', 'take_profit', 'atr', 'rsi', 'macd',
        'sma_short', 'sma_long', 'volume', 'final_price', 'total_profit',
        'total_commission', 'net_profit',
    )

    def validate(self) -> None:
        ensure_finite('Signal', {name: getattr(self, name) for name in self.NUMERIC_FIELDS})
        if self.initial_price <= 0:
            raise InvalidNumericError(f"Signal rejected, non-positive price: {self.initial_price}")

    def movements_of(
        self,
        movement_type: MovementType,
        statuses: Optional[Iterable[MovementStatus]] = None,
    ) -> List[Movement]:
        wanted = set(statuses) if statuses is not None else None
        return [
            m for m in self.movements
            if m.type is movement_type and (wanted is None or m.status in wanted)
        ]

    @property
    def filled_buys(self) -> List[Movement]:
        return self.movements_of(MovementType.BUY, (MovementStatus.FILLED,))

    @property
    def filled_sells(self) -> List[Movement]:
        return self.movements_of(MovementType.SELL, (MovementStatus.FILLED,))

    @property
    def pending_sells(self) -> List[Movement]:
        return self.movements_of(MovementType.SELL, (MovementStatus.PENDING,))

    @property
    def live_buys(self) -> List[Movement]:
        return self.movements_of(MovementType.BUY, (MovementStatus.PENDING, MovementStatus.FILLED))

    @property
    def has_open_position(self) -> bool:
        return bool(self.filled_buys) and not self.filled_sells

    @property
    def ready_to_sell(self) -> bool:
        return self.status is SignalStatus.ACTIVE and self.has_open_position and not self.pending_sells

    @property
    def is_closable(self) -> bool:
        return bool(self.filled_buys) and bool(self.filled_sells)

    @property
    def holds_exposure(self) -> bool:
        """Counts toward the open-position limit, including BUYs still waiting on the exchange."""
        return self.status is SignalStatus.ACTIVE and bool(self.live_buys) and not self.filled_sells

    @classmethod
    def from_record(cls, row: Mapping[str, Any], movements: Iterable[Mapping[str, Any]] = ()) -> 'Signal':
        return cls(
            signal_id=str(row['id']),
            user_id=str(row['user_id']),
            symbol=row['symbol'],
            status=SignalStatus(row['status']),
            initial_price=to_float(row['initial_price']),
            stop_loss=to_float(row['stop_loss']),
            take_profit=to_float(row['take_profit']),
            atr=to_float(row['atr']),
            rsi=to_float(row['rsi']),
            macd=to_float(row['macd']),
            sma_short=to_float(row['sma_short']),
            sma_long=to_float(row['sma_long']),
            volume=to_float(row['volume']),
            final_price=to_float(row.get('final_price')) or 0.0,
            total_profit=to_float(row.get('total_profit')) or 0.0,
            total_commission=to_float(row.get('total_commission')) or 0.0,
            net_profit=to_float(row.get('net_profit')) or 0.0,
            paper_trading=bool(row.get('paper_trading', True)),
            created_at=_timestamp(row.get('created_at')) or time.time(),
            closed_at=_timestamp(row.get('closed_at')),
            movements=[Movement.from_record(m) for m in movements],
        )

    def to_dict(self, include_movements: bool = True) -> Dict[str, Any]:
        data = {
            'id': self.signal_id,
            'user_id': self.user_id,
            'symbol': self.symbol,
            'status': self.status.value,
            'initial_price': self.initial_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'atr': self.atr,
            'rsi': self.rsi,
            'macd': self.macd,
            'sma_short': self.sma_short,
            'sma_long': self.sma_long,
            'volume': self.volume,
            'final_price': self.final_price,
            'total_profit': self.total_profit,
            'total_commission': self.total_commission,
            'net_profit': self.net_profit,
            'paper_trading': self.paper_trading,
            'created_at': self.created_at,
            'closed_at': self.closed_at,
        }
        if include_movements:
            data['movements'] = [m.to_dict() for m in self.movements]
        return data


@dataclass
class UserConfig:
    user_id: str
    capital_per_trade: float = 20.0
    profit_margin: float = 0.005
    sell_margin: float = 0.004
    max_active_signals: int = 3
    max_daily_signals: int = 300
    daily_signal_count: int = 0
    last_reset_date: Optional[str] = None
    testnet: bool = False
    api_key: Optional[str] = field(default=None, repr=False)
    api_secret: Optional[str] = field(default=None, repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], max_daily_signals: int = 300) -> 'UserConfig':
        def _num(key: str, default: float) -> float:
            value = data.get(key)
            return default if is_unresolved(value) else float(value)

        return cls(
            user_id=str(data['user_id']),
            capital_per_trade=_num('capital_per_trade', 20.0),
            profit_margin=_num('profit_margin', 0.005),
            sell_margin=_num('sell_margin', 0.004),
            max_active_signals=int(_num('max_active_signals', 3)),
            max_daily_signals=int(_num('max_daily_signals', max_daily_signals)),
            testnet=as_bool(data.get('testnet'), False),
            api_key=None if is_unresolved(data.get('api_key')) else str(data['api_key']),
            api_secret=None if is_unresolved(data.get('api_secret')) else str(data['api_secret']),
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    @property
    def daily_cap_reached(self) -> bool:
        return self.daily_signal_count >= self.max_daily_signals

    def reset_daily_counter(self, today: str) -> bool:
        if self.last_reset_date == today:
            return False
        self.daily_signal_count = 0
        self.last_reset_date = today
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'capital_per_trade': self.capital_per_trade,
            'profit_margin': self.profit_margin,
            'sell_margin': self.sell_margin,
            'max_active_signals': self.max_active_signals,
            'max_daily_signals': self.max_daily_signals,
            'daily_signal_count': self.daily_signal_count,
            'last_reset_date': self.last_reset_date,
            'testnet': self.testnet,
        }
