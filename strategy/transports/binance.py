import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ingest.binance_rest import BinanceAPIError, BinanceRESTClient, MalformedResponseError

from strategy.execution_types import OrderTicket


__all__ = ["BinanceTransport", "SymbolInfo", "BinanceAPIError", "MalformedResponseError"]

logger = logging.getLogger(__name__)


@dataclass
class SymbolInfo:
    symbol: str
    base_asset: Optional[str]
    quote_asset: Optional[str]
    price_tick: Optional[float]
    amount_step: Optional[float]
    min_qty: Optional[float]
    raw: Dict[str, Any]


class BinanceTransport:
    """Thin adapter around Binance spot REST with typed, validated responses."""

    def __init__(self, rest: Optional[BinanceRESTClient] = None) -> None:
        self._rest = rest
        self._lock = asyncio.Lock()

    @classmethod
    def for_user(cls, api_key: Optional[str], api_secret: Optional[str], testnet: bool = False,
                 config_obj: Optional[Any] = None) -> 'BinanceTransport':
        return cls(BinanceRESTClient(api_key, api_secret, testnet=testnet, config_obj=config_obj))

    def _client(self) -> BinanceRESTClient:
        if self._rest is None:
            self._rest = BinanceRESTClient()
        return self._rest

    async def sync_time(self) -> int:
        return await self._client().sync_time()

    async def get_server_time(self) -> int:
        data = await self._client().get("/api/v3/time")
        if not isinstance(data, dict) or "serverTime" not in data:
            raise MalformedResponseError(f"Malformed server time response: {data!r}")
        return int(data["serverTime"])

    async def fetch_symbol_info(self, symbol: str) -> Optional[SymbolInfo]:
        data = await self._client().get("/api/v3/exchangeInfo", params={"symbol": symbol})
        if not isinstance(data, dict):
            return None
        symbols = data.get("symbols") or []
        if not symbols:
            return None
        return self._parse_symbol_info(symbols[0])

    async def create_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        quantity: str,
        price: Optional[str] = None,
        time_in_force: Optional[str] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderTicket:
        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side.upper(),
            "type": order_type.upper(),
            "quantity": quantity,
            "newOrderRespType": "RESULT",
        }
        if price is not None:
            params["price"] = price
        if time_in_force:
            params["timeInForce"] = time_in_force
        if client_order_id:
            params["newClientOrderId"] = client_order_id
        data = await self._client().post("/api/v3/order", params=params, signed=True)
        ticket = self._parse_order(data)
        if ticket is None:
            raise MalformedResponseError(f"Malformed order acknowledgement: {data!r}")
        return ticket

    async def get_order_status(self, symbol: str, order_id: str) -> OrderTicket:
        params: Dict[str, Any] = {"symbol": symbol}
        numeric = self._as_int(order_id)
        if numeric is not None:
            params["orderId"] = numeric
        else:
            params["origClientOrderId"] = order_id
        data = await self._client().get("/api/v3/order", params=params, signed=True)
        ticket = self._parse_order(data)
        if ticket is None:
            raise MalformedResponseError(f"Malformed order status: {data!r}")
        return ticket

    async def get_account_balance(self, asset: str) -> float:
        data = await self._client().get("/api/v3/account", signed=True)
        if not isinstance(data, dict):
            return 0.0
        for balance in data.get("balances") or []:
            if balance.get("asset") != asset:
                continue
            return self._as_float(balance.get("free")) or 0.0
        return 0.0

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    def _parse_symbol_info(self, payload: Dict[str, Any]) -> SymbolInfo:
        price_tick = None
        amount_step = None
        min_qty = None
        for filt in payload.get("filters", []):
            ftype = filt.get("filterType")
            if ftype == "PRICE_FILTER" and price_tick is None:
                price_tick = self._as_float(filt.get("tickSize"))
            elif ftype == "LOT_SIZE" and amount_step is None:
                amount_step = self._as_float(filt.get("stepSize"))
                min_qty = self._as_float(filt.get("minQty"))
        return SymbolInfo(
            symbol=payload.get("symbol"),
            base_asset=payload.get("baseAsset"),
            quote_asset=payload.get("quoteAsset"),
            price_tick=price_tick,
            amount_step=amount_step,
            min_qty=min_qty,
            raw=payload,
        )

    def _parse_order(self, payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict) or payload.get("orderId") is None:
            return None
        return OrderTicket(
            symbol=payload.get("symbol", ""),
            side=(payload.get("side") or "").upper(),
            type=payload.get("type") or "LIMIT",
            quantity=self._as_float(payload.get("origQty")) or 0.0,
            status=payload.get("status"),
            price=self._as_float(payload.get("price")),
            executed_qty=self._as_float(payload.get("executedQty")) or 0.0,
            quote_qty=self._as_float(payload.get("cummulativeQuoteQty")) or 0.0,
            client_order_id=payload.get("clientOrderId"),
            exchange_order_id=self._as_int(payload.get("orderId")),
            raw=payload,
        )

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _as_int(value: Any) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None
