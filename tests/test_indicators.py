import math
import sys

sys.path.insert(0, '.')

import pytest

from analytics.candles import Candle
from analytics.indicators import (
    IndicatorCalculator,
    atr,
    bollinger,
    ema,
    is_bearish_engulfing,
    is_bullish_engulfing,
    macd,
    rsi,
    sma,
)
from tests.fakes import zigzag_uptrend


PRICES = [109000 + 100 * i for i in range(8)]


def _candle(o, c, ts, h=None, l=None):
    return Candle(open=o, high=h or max(o, c) + 10, low=l or min(o, c) - 10, close=c, volume=1.0, timestamp=ts)


def test_sma_is_mean_of_last_period():
    assert sma(PRICES, 5) == pytest.approx(109500.0)
    assert sma([1.0, 2.0, 3.0], 3) == pytest.approx(2.0)


@pytest.mark.parametrize('fn, args', [
    (sma, (5,)),
    (ema, (5,)),
    (rsi, (14,)),
    (bollinger, (20,)),
])
def test_short_or_non_finite_input_is_undefined(fn, args):
    assert fn([1.0, 2.0, 3.0], *args) is None
    assert fn([1.0] * 30 + [float('nan')], *args) is None
    assert fn([1.0] * 30 + [float('inf')], *args) is None


def test_invalid_periods_are_undefined():
    assert sma(PRICES, 0) is None
    assert ema(PRICES, -1) is None
    assert bollinger(PRICES, 1) is None
    assert macd(PRICES, 26, 12, 9) is None


def test_ema_seeded_by_sma():
    data = [10.0, 11.0, 12.0, 13.0, 14.0]
    # seed SMA(3) = 11, k = 0.5
    expected = 11.0
    for price in data[3:]:
        expected = (price - expected) * 0.5 + expected
    assert ema(data, 3) == pytest.approx(expected)


def test_rsi_extremes():
    rising = [100.0 + i for i in range(20)]
    falling = [100.0 - i for i in range(20)]
    assert rsi(rising) == pytest.approx(100.0)
    assert rsi(falling) == pytest.approx(0.0)
    assert rsi([50.0] * 20) == pytest.approx(100.0)


def test_rsi_mixed_series_is_bounded():
    data = [100, 102, 101, 103, 102, 104, 103, 105, 104, 106, 105, 107, 106, 108, 107]
    value = rsi(data)
    assert value is not None
    assert 50 < value < 100


def test_macd_histogram_matches_aligned_lines():
    closes = [c.close for c in zigzag_uptrend(60)]
    result = macd(closes)
    assert result is not None
    aligned = result.aligned_macd()
    assert len(aligned) == len(result.signal_line) == len(result.histogram)
    for m, s, h in zip(aligned, result.signal_line, result.histogram):
        assert h == pytest.approx(m - s)
    assert result.histogram_last == pytest.approx(result.macd - result.signal)


def test_macd_needs_long_plus_signal_points():
    closes = [100.0 + i for i in range(34)]
    assert macd(closes) is None
    assert macd(closes + [135.0]) is not None


def test_atr_mean_true_range():
    candles = [_candle(100, 100, 0, h=105, l=95)]
    candles += [_candle(100, 100, i, h=105, l=95) for i in range(1, 15)]
    assert atr(candles, 14) == pytest.approx(10.0)


def test_atr_accepts_half_period_history():
    candles = [_candle(100, 100, i, h=105, l=95) for i in range(8)]
    assert atr(candles, 14) == pytest.approx(10.0)
    assert atr(candles[:7], 14) is None


def test_atr_uses_previous_close_gap():
    candles = [_candle(100, 100, 0, h=101, l=99), _candle(120, 120, 1, h=121, l=119)]
    # gap from prior close dominates the bar range
    assert atr(candles, 2) == pytest.approx(21.0)


def test_bollinger_ordering():
    closes = [c.close for c in zigzag_uptrend(40)]
    bands = bollinger(closes, 20, 2.0)
    assert bands is not None
    assert bands.upper >= bands.middle >= bands.lower
    assert bands.middle == pytest.approx(sma(closes, 20))


def test_engulfing_patterns():
    bearish_then_bullish = [_candle(110, 100, 0), _candle(99, 112, 1)]
    bullish_then_bearish = [_candle(100, 110, 0), _candle(111, 98, 1)]
    assert is_bullish_engulfing(bearish_then_bullish)
    assert not is_bearish_engulfing(bearish_then_bullish)
    assert is_bearish_engulfing(bullish_then_bearish)
    assert not is_bullish_engulfing([_candle(100, 110, 0)])
    assert not is_bullish_engulfing([_candle(110, 100, 0), _candle(float('nan'), 112, 1)])


def test_calculator_snapshot_on_uptrend():
    calc = IndicatorCalculator()
    candles = zigzag_uptrend(60)
    assert calc.compute(candles[:40]) is None

    snap = calc.compute(candles)
    assert snap is not None
    assert snap is calc.last_snapshot
    assert snap.close == candles[-1].close
    assert snap.strong_uptrend
    assert not snap.range_market
    assert 0 < snap.rsi < 100
    assert snap.atr > 0
    assert math.isfinite(snap.volatility)
    data = snap.to_dict()
    assert data['macd_hist'] == pytest.approx(snap.macd.histogram_last)


def test_calculator_required_history_from_config():
    calc = IndicatorCalculator.from_config({'sma_very_long': 60, 'bb_k': 2.5})
    assert calc.required_history == 60
    assert calc.bb_k == 2.5
