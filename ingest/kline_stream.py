import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable, List, Optional, Union

import websockets
import websockets.exceptions

from analytics.candles import Candle
from api.metrics import metrics
from config import config
from config.utils import get_config_section, section_value


logger = logging.getLogger(__name__)

CandleHandler = Callable[[Candle], Awaitable[None]]


def parse_kline_message(raw: Union[str, bytes, dict]) -> Optional[Candle]:
    """Closed candle from a ``<symbol>@kline_<interval>`` event, or None for anything else."""
    try:
        data = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    except ValueError:
        logger.warning("Discarding non-JSON kline message")
        return None
    if not isinstance(data, dict):
        return None
    kline = data.get("k")
    if not isinstance(kline, dict) or not kline.get("x"):
        return None
    try:
        return Candle.from_kline(kline)
    except (KeyError, TypeError, ValueError) as exc:
        logger.warning("Malformed kline payload: %s", exc)
        return None


class KlineStream:
    def __init__(self, handler: CandleHandler, symbol: Optional[str] = None, config_obj: Optional[Any] = None):
        source = config_obj if config_obj is not None else config
        stream_cfg = get_config_section(source, "stream")
        self.symbol = symbol or get_config_section(source, "exchange").get("symbol", "BTCUSDT")
        self.interval = stream_cfg.get("interval", "1m")
        self.base_url = str(stream_cfg.get("url", "wss://stream.binance.com:9443/ws")).rstrip("/")
        self.reconnect_backoff: List[float] = [float(v) for v in stream_cfg.get("reconnect_backoff") or [1, 2, 5, 10, 30]]
        self.recv_timeout = section_value(stream_cfg, "recv_timeout_s", 120.0)
        self.handler = handler
        self.running = False

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.symbol.lower()}@kline_{self.interval}"

    async def _handle_reconnect(self, backoff_index: int) -> None:
        backoff_index = min(backoff_index, len(self.reconnect_backoff) - 1)
        delay = self.reconnect_backoff[backoff_index] + random.uniform(0, 0.5)
        metrics.record_reconnect()
        logger.info("Reconnecting kline stream in %.1fs", delay)
        await asyncio.sleep(delay)

    async def run(self) -> None:
        self.running = True
        backoff_index = 0
        while self.running:
            try:
                async with websockets.connect(self.url, ping_interval=20) as ws:
                    logger.info("Kline stream connected: %s", self.url)
                    backoff_index = 0
                    while self.running:
                        try:
                            raw = await asyncio.wait_for(ws.recv(), timeout=self.recv_timeout)
                        except asyncio.TimeoutError:
                            logger.warning("Kline stream stale for %.0fs; reconnecting", self.recv_timeout)
                            raise
                        candle = parse_kline_message(raw)
                        if candle is not None:
                            await self.handler(candle)
            except asyncio.CancelledError:
                break
            except (asyncio.TimeoutError, websockets.exceptions.WebSocketException, OSError) as e:
                if not self.running:
                    break
                logger.error("Kline stream error: %s", e)
                await self._handle_reconnect(backoff_index)
                backoff_index += 1
        self.running = False

    def stop(self) -> None:
        self.running = False
