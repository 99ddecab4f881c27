import logging
import math
from collections import deque
from dataclasses import asdict, dataclass
from typing import Any, Deque, Dict, Optional, Tuple

from monitoring.async_utils import SystemClock, system_clock


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candle:
    open: float
    high: float
    low: float
    close: float
    volume: float
    timestamp: int

    @classmethod
    def from_kline(cls, payload: Dict[str, Any]) -> 'Candle':
        """Build a candle from a Binance kline object (the ``k`` field of a stream event)."""
        return cls(
            open=float(payload['o']),
            high=float(payload['h']),
            low=float(payload['l']),
            close=float(payload['c']),
            volume=float(payload['v']),
            timestamp=int(payload['t']),
        )

    def is_valid(self) -> bool:
        prices = (self.open, self.high, self.low, self.close)
        if not all(math.isfinite(p) and p > 0 for p in prices):
            return False
        return math.isfinite(self.volume) and self.volume >= 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CandleWindow:
    """Bounded, time-expiring buffer of closed candles for one instrument.

    The window is cleared wholesale once its oldest candle is older than ``ttl_s``,
    so a stale regime is never mixed with fresh data after an outage.
    """

    def __init__(
        self,
        symbol: str,
        max_size: int = 100,
        ttl_s: float = 24 * 3600,
        reject_out_of_order: bool = True,
        clock: Optional[SystemClock] = None,
    ):
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self.symbol = symbol
        self.max_size = max_size
        self.ttl_s = ttl_s
        self.reject_out_of_order = reject_out_of_order
        self.clock = clock or system_clock
        self._candles: Deque[Candle] = deque(maxlen=max_size)

    @classmethod
    def from_config(cls, symbol: str, section: Dict[str, Any], clock: Optional[SystemClock] = None) -> 'CandleWindow':
        return cls(
            symbol,
            max_size=int(section.get('max_size', 100)),
            ttl_s=float(section.get('ttl_hours', 24)) * 3600,
            reject_out_of_order=bool(section.get('reject_out_of_order', True)),
            clock=clock,
        )

    def append(self, candle: Candle) -> bool:
        if self._is_stale():
            logger.warning(
                "%s window stale (oldest candle older than %.0fh); clearing %s candles",
                self.symbol,
                self.ttl_s / 3600,
                len(self._candles),
            )
            self._candles.clear()

        latest = self.latest()
        if self.reject_out_of_order and latest is not None and candle.timestamp <= latest.timestamp:
            logger.warning(
                "%s dropping out-of-order candle ts=%s (latest ts=%s)",
                self.symbol,
                candle.timestamp,
                latest.timestamp,
            )
            return False

        self._candles.append(candle)
        return True

    def _is_stale(self) -> bool:
        if not self._candles:
            return False
        oldest = self._candles[0]
        age_s = self.clock.time() - oldest.timestamp / 1000.0
        return age_s > self.ttl_s

    def snapshot(self) -> Tuple[Candle, ...]:
        return tuple(self._candles)

    def latest(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def count(self) -> int:
        return len(self._candles)

    def clear(self) -> None:
        self._candles.clear()

    def __len__(self) -> int:
        return len(self._candles)
