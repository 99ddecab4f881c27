import asyncio
import hmac
import hashlib
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config import config
from config.utils import get_config_section, section_value


logger = logging.getLogger(__name__)

CLOCK_SKEW_CODE = -1021
ORDER_NOT_FOUND_CODE = -2013
_TRANSIENT_HTTP = {418, 429}


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)

    @property
    def is_clock_skew(self) -> bool:
        return self.code == CLOCK_SKEW_CODE

    @property
    def is_unknown_order(self) -> bool:
        return self.code == ORDER_NOT_FOUND_CODE

    @property
    def is_transient(self) -> bool:
        return self.status >= 500 or self.status in _TRANSIENT_HTTP


class MalformedResponseError(ValueError):
    """A 2xx reply whose body is not the payload the endpoint documents."""


class BinanceRESTClient:
    """Spot REST client with HMAC-signed requests and a server clock offset."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        testnet: bool = False,
        base_url: Optional[str] = None,
        config_obj: Optional[Any] = None,
    ):
        exchange = get_config_section(config_obj if config_obj is not None else config, 'exchange')
        if base_url is None:
            key = 'testnet_url' if testnet else 'base_url'
            default = "https://testnet.binance.vision" if testnet else "https://api.binance.com"
            base_url = exchange.get(key) or default
        self.base_url = str(base_url).rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.recv_window = section_value(exchange, 'recv_window_ms', 10000, int)
        self.timeout_s = section_value(exchange, 'request_timeout_s', 10.0)
        self.time_offset_ms = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    def _timestamp_ms(self) -> int:
        return int(time.time() * 1000) + self.time_offset_ms

    async def sync_time(self) -> int:
        """Align signed timestamps with the exchange clock; returns the new offset."""
        payload = await self.get("/api/v3/time")
        server_time = int(payload["serverTime"])
        self.time_offset_ms = server_time - int(time.time() * 1000)
        logger.info("Exchange clock offset set to %d ms", self.time_offset_ms)
        return self.time_offset_ms

    def sign(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Stamp ``params`` with the offset-corrected timestamp and append the HMAC-SHA256 signature."""
        if not self.api_key or not self.api_secret:
            raise RuntimeError("Binance API key/secret required for signed request")
        signed = dict(params)
        signed["timestamp"] = self._timestamp_ms()
        signed.setdefault("recvWindow", self.recv_window)
        digest = hmac.new(
            self.api_secret.encode("utf-8"),
            urlencode(signed, doseq=True).encode("utf-8"),
            hashlib.sha256,
        )
        signed["signature"] = digest.hexdigest()
        return signed

    @staticmethod
    def _decode(status: int, content_type: str, text: str) -> Any:
        payload: Any = text
        if "application/json" in content_type:
            try:
                payload = json.loads(text)
            except ValueError:
                logger.debug("Undecodable JSON body with status %s", status)
        if status >= 400:
            details = payload if isinstance(payload, dict) else {}
            raise BinanceAPIError(status, details.get("code"), details.get("msg"), text)
        return payload

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        query = self.sign(params or {}) if signed else dict(params or {})
        headers = {"X-MBX-APIKEY": self.api_key} if self.api_key else {}
        async with session.request(
            method.upper(),
            f"{self.base_url}{path}",
            params=query,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        ) as resp:
            text = await resp.text()
            return self._decode(resp.status, resp.headers.get("Content-Type", ""), text)

    async def get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        # signed params travel in the query string
        return await self._request("POST", path, params=params, signed=signed)

