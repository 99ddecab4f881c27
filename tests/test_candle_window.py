import sys

sys.path.insert(0, '.')

from analytics.candles import Candle, CandleWindow
from tests.fakes import START_MS, FakeClock


def _candle(i: int, price: float = 100.0) -> Candle:
    return Candle(open=price, high=price + 1, low=price - 1, close=price, volume=1.0,
                  timestamp=START_MS + i * 60_000)


def test_window_evicts_oldest_beyond_max_size():
    window = CandleWindow('BTCUSDT', max_size=5, clock=FakeClock())
    for i in range(6):
        assert window.append(_candle(i, 100.0 + i))
    assert len(window) == 5
    assert [c.close for c in window.snapshot()] == [101.0, 102.0, 103.0, 104.0, 105.0]
    assert window.latest().close == 105.0


def test_snapshot_is_a_copy():
    window = CandleWindow('BTCUSDT', max_size=5, clock=FakeClock())
    window.append(_candle(0))
    snap = window.snapshot()
    window.append(_candle(1))
    assert len(snap) == 1
    assert window.count() == 2


def test_stale_window_is_cleared_before_insert():
    clock = FakeClock()
    window = CandleWindow('BTCUSDT', max_size=10, ttl_s=3600, clock=clock)
    for i in range(3):
        window.append(_candle(i))
    clock.advance(2 * 3600)
    fresh = Candle(open=1, high=2, low=0.5, close=1.5, volume=1, timestamp=int(clock.time() * 1000))
    assert window.append(fresh)
    assert window.snapshot() == (fresh,)


def test_out_of_order_and_duplicates_rejected_by_default():
    window = CandleWindow('BTCUSDT', clock=FakeClock())
    assert window.append(_candle(2))
    assert not window.append(_candle(2))
    assert not window.append(_candle(1))
    assert window.count() == 1


def test_out_of_order_allowed_when_configured():
    window = CandleWindow.from_config('BTCUSDT', {'reject_out_of_order': False, 'max_size': 3}, FakeClock())
    assert window.append(_candle(2))
    assert window.append(_candle(1))
    assert window.count() == 2
    window.clear()
    assert window.latest() is None


def test_candle_validity_and_kline_parsing():
    candle = Candle.from_kline({'o': '100.5', 'h': '101', 'l': '99', 'c': '100', 'v': '3.2', 't': START_MS})
    assert candle.is_valid()
    assert candle.timestamp == START_MS
    assert not Candle(0, 1, 1, 1, 1, 0).is_valid()
    assert not Candle(1, 1, 1, float('nan'), 1, 0).is_valid()
    assert not Candle(1, 1, 1, 1, -1, 0).is_valid()
