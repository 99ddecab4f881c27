import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


class OrderState(Enum):
    OPEN = "open"
    FILLED = "filled"
    FAILED = "failed"


_OPEN_STATUSES = {"NEW", "PARTIALLY_FILLED", "PENDING_NEW", "PENDING_CANCEL"}
_FAILED_STATUSES = {"CANCELED", "REJECTED", "EXPIRED", "EXPIRED_IN_MATCH"}


def classify_status(status: Optional[str]) -> OrderState:
    normalized = (status or "").upper()
    if normalized == "FILLED":
        return OrderState.FILLED
    if normalized in _FAILED_STATUSES:
        return OrderState.FAILED
    if normalized not in _OPEN_STATUSES:
        logger.warning("Unknown order status %r treated as open", status)
    return OrderState.OPEN


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement across live and paper flows."""

    symbol: str
    side: str
    type: str
    quantity: float
    status: Optional[str] = None
    price: Optional[float] = None
    executed_qty: float = 0.0
    quote_qty: float = 0.0
    client_order_id: Optional[str] = None
    exchange_order_id: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.exchange_order_id is not None:
            return str(self.exchange_order_id)
        if self.client_order_id:
            return self.client_order_id
        fallback = self.raw.get("id")
        if fallback is not None:
            return str(fallback)
        return "order"

    @property
    def state(self) -> OrderState:
        return classify_status(self.status)

    @property
    def fill_price(self) -> Optional[float]:
        """Average execution price when the exchange reports cumulative quote quantity."""
        if self.executed_qty > 0 and self.quote_qty > 0:
            return self.quote_qty / self.executed_qty
        return self.price

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "state": self.state.value,
            "quantity": self.quantity,
            "price": self.price,
            "executed_qty": self.executed_qty,
            "quote_qty": self.quote_qty,
            "client_order_id": self.client_order_id,
            "exchange_order_id": self.exchange_order_id,
        }
        if self.raw:
            data["raw"] = self.raw
        return data


@dataclass
class ExecutionOutcome:
    """Result of submitting one movement: a ticket, a terminal rejection, or a retryable miss."""

    ticket: Optional[OrderTicket] = None
    rejected: bool = False
    error: Optional[Dict[str, Any]] = None

    @property
    def submitted(self) -> bool:
        return self.ticket is not None
