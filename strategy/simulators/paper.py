import logging
import uuid
from collections import OrderedDict
from typing import Optional

from strategy.execution_types import OrderTicket


logger = logging.getLogger(__name__)


class PaperTradingSimulator:
    """Fills every order immediately at its requested price.

    Tickets are already terminal when created, so only the most recent
    ``max_orders`` are kept for status lookups.
    """

    def __init__(self, symbol: str, max_orders: int = 500) -> None:
        self.symbol = symbol
        self.max_orders = max(1, max_orders)
        self._orders: "OrderedDict[str, OrderTicket]" = OrderedDict()

    def create_order(self, side: str, order_type: str, qty: float, price: float) -> Optional[OrderTicket]:
        if qty <= 0 or price <= 0:
            return None
        order_id = f"paper-{uuid.uuid4().hex[:8]}"
        ticket = OrderTicket(
            symbol=self.symbol,
            side=side.upper(),
            type=order_type.upper(),
            quantity=qty,
            status="FILLED",
            price=price,
            executed_qty=qty,
            quote_qty=qty * price,
            client_order_id=order_id,
            raw={"paper": True},
        )
        self._orders[order_id] = ticket
        while len(self._orders) > self.max_orders:
            self._orders.popitem(last=False)
        logger.info("Paper %s %s %.5f @ %.2f filled as %s", side.upper(), self.symbol, qty, price, order_id)
        return ticket

    def get_order(self, order_id: str) -> Optional[OrderTicket]:
        return self._orders.get(order_id)
