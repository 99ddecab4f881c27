"""Technical indicators over closed-candle series.

Every function returns ``None`` when the input is shorter than its lookback or
contains a non-finite value. None of them raise on bad input, and NaN/Infinity
never escape to callers.
"""
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np
import talib

from analytics.candles import Candle


def _finite_array(data: Sequence[float], min_len: int) -> Optional[np.ndarray]:
    if data is None or min_len < 1:
        return None
    try:
        arr = np.asarray(data, dtype=float)
    except (TypeError, ValueError):
        return None
    if arr.ndim != 1 or arr.size < min_len:
        return None
    if not np.all(np.isfinite(arr)):
        return None
    return arr


def _defined(value: Any) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    return value if math.isfinite(value) else None


def sma(data: Sequence[float], period: int) -> Optional[float]:
    if period < 1:
        return None
    arr = _finite_array(data, period)
    if arr is None:
        return None
    return _defined(arr[-period:].mean())


def ema_series(data: Sequence[float], period: int) -> Optional[np.ndarray]:
    """EMA seeded with the SMA of the first ``period`` points, one value per point from there on."""
    if period < 1:
        return None
    arr = _finite_array(data, period)
    if arr is None:
        return None
    if period == 1:
        return arr.copy()
    out = talib.EMA(arr, timeperiod=period)[period - 1:]
    if not np.all(np.isfinite(out)):
        return None
    return out


def ema(data: Sequence[float], period: int) -> Optional[float]:
    series = ema_series(data, period)
    if series is None or series.size == 0:
        return None
    return _defined(series[-1])


def rsi(data: Sequence[float], period: int = 14) -> Optional[float]:
    """RSI from average gain/loss over the trailing ``period`` price changes."""
    if period < 1:
        return None
    arr = _finite_array(data, period + 1)
    if arr is None:
        return None
    diffs = np.diff(arr[-(period + 1):])
    gains = float(diffs[diffs > 0].sum())
    losses = float(-diffs[diffs < 0].sum())
    if losses == 0:
        return 100.0
    rs = (gains / period) / (losses / period)
    return _defined(100.0 - 100.0 / (1.0 + rs))


@dataclass(frozen=True)
class MACDResult:
    macd_line: Tuple[float, ...]
    signal_line: Tuple[float, ...]
    histogram: Tuple[float, ...]

    @property
    def macd(self) -> float:
        return self.macd_line[-1]

    @property
    def signal(self) -> float:
        return self.signal_line[-1]

    @property
    def histogram_last(self) -> float:
        return self.histogram[-1]

    def aligned_macd(self) -> Tuple[float, ...]:
        """MACD values over the suffix shared with the signal line."""
        return self.macd_line[-len(self.signal_line):]


def macd(
    data: Sequence[float],
    short_period: int = 12,
    long_period: int = 26,
    signal_period: int = 9,
) -> Optional[MACDResult]:
    if short_period < 1 or long_period <= short_period or signal_period < 1:
        return None
    arr = _finite_array(data, long_period + signal_period)
    if arr is None:
        return None
    fast = ema_series(arr, short_period)
    slow = ema_series(arr, long_period)
    if fast is None or slow is None:
        return None
    macd_line = fast[fast.size - slow.size:] - slow
    signal_line = ema_series(macd_line, signal_period)
    if signal_line is None or signal_line.size == 0:
        return None
    histogram = macd_line[-signal_line.size:] - signal_line
    if not (np.all(np.isfinite(macd_line)) and np.all(np.isfinite(histogram))):
        return None
    return MACDResult(
        macd_line=tuple(float(v) for v in macd_line),
        signal_line=tuple(float(v) for v in signal_line),
        histogram=tuple(float(v) for v in histogram),
    )


def atr(candles: Sequence[Candle], period: int = 14) -> Optional[float]:
    """Mean true range over the trailing ``period`` candles.

    Short histories are accepted as long as at least ``period / 2`` true-range
    samples exist.
    """
    if period < 1 or candles is None or len(candles) < 2:
        return None
    highs = _finite_array([c.high for c in candles], 2)
    lows = _finite_array([c.low for c in candles], 2)
    closes = _finite_array([c.close for c in candles], 2)
    if highs is None or lows is None or closes is None:
        return None
    samples = min(period, closes.size - 1)
    if samples < period / 2:
        return None
    high = highs[-samples:]
    low = lows[-samples:]
    prev_close = closes[-samples - 1:-1]
    true_range = np.maximum.reduce([
        high - low,
        np.abs(high - prev_close),
        np.abs(low - prev_close),
    ])
    return _defined(true_range.mean())


@dataclass(frozen=True)
class BollingerBands:
    upper: float
    middle: float
    lower: float


def bollinger(data: Sequence[float], period: int = 20, k: float = 2.0) -> Optional[BollingerBands]:
    if period < 2 or k < 0:
        return None
    arr = _finite_array(data, period)
    if arr is None:
        return None
    upper, middle, lower = talib.BBANDS(
        arr[-period:],
        timeperiod=period,
        nbdevup=float(k),
        nbdevdn=float(k),
        matype=0,
    )
    values = (_defined(upper[-1]), _defined(middle[-1]), _defined(lower[-1]))
    if any(v is None for v in values):
        return None
    return BollingerBands(*values)


def _last_two(candles: Sequence[Candle]) -> Optional[Tuple[Candle, Candle]]:
    if candles is None or len(candles) < 2:
        return None
    prev, curr = candles[-2], candles[-1]
    prices = (prev.open, prev.close, curr.open, curr.close)
    if not all(math.isfinite(p) for p in prices):
        return None
    return prev, curr


def is_bullish_engulfing(candles: Sequence[Candle]) -> bool:
    pair = _last_two(candles)
    if pair is None:
        return False
    prev, curr = pair
    return (
        prev.close < prev.open
        and curr.close > curr.open
        and curr.open < prev.close
        and curr.close > prev.open
    )


def is_bearish_engulfing(candles: Sequence[Candle]) -> bool:
    pair = _last_two(candles)
    if pair is None:
        return False
    prev, curr = pair
    return (
        prev.close > prev.open
        and curr.close < curr.open
        and curr.open > prev.close
        and curr.close < prev.open
    )


@dataclass(frozen=True)
class IndicatorSnapshot:
    close: float
    open: float
    sma_short: float
    sma_long: float
    sma_very_long: float
    ema_short: float
    ema_long: float
    rsi: float
    macd: MACDResult
    atr: float
    bollinger: BollingerBands
    volume_ma: float
    current_volume: float
    bullish_engulfing: bool
    bearish_engulfing: bool
    timestamp: int = 0

    @property
    def strong_uptrend(self) -> bool:
        return (
            self.sma_short > self.sma_long > self.sma_very_long
            and self.ema_short > self.ema_long
        )

    @property
    def strong_downtrend(self) -> bool:
        return (
            self.sma_short < self.sma_long < self.sma_very_long
            and self.ema_short < self.ema_long
        )

    @property
    def range_market(self) -> bool:
        return not self.strong_uptrend and not self.strong_downtrend

    @property
    def volatility(self) -> float:
        return self.atr / self.close if self.close > 0 else float('inf')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'close': self.close,
            'sma_short': self.sma_short,
            'sma_long': self.sma_long,
            'sma_very_long': self.sma_very_long,
            'ema_short': self.ema_short,
            'ema_long': self.ema_long,
            'rsi': self.rsi,
            'macd': self.macd.macd,
            'macd_signal': self.macd.signal,
            'macd_hist': self.macd.histogram_last,
            'atr': self.atr,
            'bb_upper': self.bollinger.upper,
            'bb_middle': self.bollinger.middle,
            'bb_lower': self.bollinger.lower,
            'volume_ma': self.volume_ma,
            'current_volume': self.current_volume,
            'bullish_engulfing': self.bullish_engulfing,
            'bearish_engulfing': self.bearish_engulfing,
        }


class IndicatorCalculator:
    """Computes the full indicator battery once per tick from a window snapshot."""

    def __init__(
        self,
        sma_short: int = 9,
        sma_long: int = 21,
        sma_very_long: int = 50,
        ema_short: int = 12,
        ema_long: int = 26,
        rsi_period: int = 14,
        macd_fast: int = 12,
        macd_slow: int = 26,
        macd_signal: int = 9,
        atr_period: int = 14,
        atr_lookback: int = 20,
        bb_period: int = 20,
        bb_k: float = 2.0,
        volume_ma: int = 10,
    ):
        self.sma_short = sma_short
        self.sma_long = sma_long
        self.sma_very_long = sma_very_long
        self.ema_short = ema_short
        self.ema_long = ema_long
        self.rsi_period = rsi_period
        self.macd_fast = macd_fast
        self.macd_slow = macd_slow
        self.macd_signal = macd_signal
        self.atr_period = atr_period
        self.atr_lookback = atr_lookback
        self.bb_period = bb_period
        self.bb_k = bb_k
        self.volume_ma = volume_ma
        self.last_snapshot: Optional[IndicatorSnapshot] = None

    @classmethod
    def from_config(cls, section: Dict[str, Any]) -> 'IndicatorCalculator':
        kwargs: Dict[str, Any] = {}
        for key, default in (
            ('sma_short', 9), ('sma_long', 21), ('sma_very_long', 50),
            ('ema_short', 12), ('ema_long', 26), ('rsi_period', 14),
            ('macd_fast', 12), ('macd_slow', 26), ('macd_signal', 9),
            ('atr_period', 14), ('atr_lookback', 20), ('bb_period', 20),
            ('volume_ma', 10),
        ):
            kwargs[key] = int(section.get(key, default))
        kwargs['bb_k'] = float(section.get('bb_k', 2.0))
        return cls(**kwargs)

    @property
    def required_history(self) -> int:
        return max(
            self.sma_very_long,
            self.sma_long,
            self.ema_long,
            self.rsi_period + 1,
            self.macd_slow + self.macd_signal,
            self.bb_period,
            self.volume_ma,
        )

    def compute(self, candles: Sequence[Candle]) -> Optional[IndicatorSnapshot]:
        if not candles:
            return None
        closes = [c.close for c in candles]
        volumes = [c.volume for c in candles]
        last = candles[-1]

        values = {
            'sma_short': sma(closes, self.sma_short),
            'sma_long': sma(closes, self.sma_long),
            'sma_very_long': sma(closes, self.sma_very_long),
            'ema_short': ema(closes, self.ema_short),
            'ema_long': ema(closes, self.ema_long),
            'rsi': rsi(closes, self.rsi_period),
            'macd': macd(closes, self.macd_fast, self.macd_slow, self.macd_signal),
            'atr': atr(candles[-self.atr_lookback:], self.atr_period),
            'bollinger': bollinger(closes, self.bb_period, self.bb_k),
            'volume_ma': sma(volumes, self.volume_ma),
        }
        if any(v is None for v in values.values()):
            return None

        snapshot = IndicatorSnapshot(
            close=last.close,
            open=last.open,
            current_volume=last.volume,
            bullish_engulfing=is_bullish_engulfing(candles),
            bearish_engulfing=is_bearish_engulfing(candles),
            timestamp=last.timestamp,
            **values,
        )
        self.last_snapshot = snapshot
        return snapshot
