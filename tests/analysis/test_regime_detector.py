"""Tests for RegimeDetector sideways classification."""

from datetime import datetime, timedelta, timezone

import pytest

from sideways_trader.analysis.regime_detector import RegimeDetector
from sideways_trader.models.candle import Candle

BASE_TIME = datetime(2026, 3, 2, tzinfo=timezone.utc)


def make_candle(i, o, h, l, c):
    open_time = BASE_TIME + timedelta(minutes=15 * i)
    return Candle(
        symbol="BTCUSDT",
        interval="15m",
        open_time=open_time,
        open=o,
        high=h,
        low=l,
        close=c,
        volume=10.0,
        close_time=open_time + timedelta(minutes=15) - timedelta(milliseconds=1),
    )


def range_window(first=None, last=None, overrides=None):
    """
    20 candles oscillating between 19000 and 19300.

    Support touched at 3 and 11, resistance at 7 and 15; every other
    candle stays well inside the band.
    """
    rows = [(19150, 19200, 19100, 19150)] * 20
    rows = list(rows)
    rows[0] = first or (19100, 19200, 19050, 19100)
    rows[3] = (19100, 19150, 19000, 19100)
    rows[7] = (19200, 19300, 19150, 19250)
    rows[11] = (19100, 19150, 19010, 19100)
    rows[15] = (19200, 19290, 19150, 19250)
    rows[19] = last or (19150, 19200, 19100, 19150)
    for index, row in (overrides or {}).items():
        rows[index] = row
    return [make_candle(i, *row) for i, row in enumerate(rows)]


@pytest.fixture
def detector():
    return RegimeDetector()


class TestSidewaysScenario:
    """The reference 19000/19300 window."""

    def test_classified_sideways(self, detector):
        result = detector.classify(range_window(), window_size=20, range_threshold=0.02)

        assert result.is_sideways is True
        assert result.support == 19000
        assert result.resistance == 19300
        assert result.range_ratio == pytest.approx(300 / 19000)
        assert result.trend_ratio == pytest.approx(50 / 19100)
        assert result.in_range and result.multiple_touches and result.not_trending

    def test_only_most_recent_window_is_used(self, detector):
        # Older candles with a huge range must not widen the band
        noise = [make_candle(-10 + i, 15000, 25000, 14000, 16000) for i in range(10)]
        result = detector.classify(noise + range_window(), window_size=20, range_threshold=0.02)

        assert result.is_sideways is True
        assert result.support == 19000
        assert result.resistance == 19300


class TestInsufficientData:

    def test_short_window_is_never_sideways(self, detector):
        candles = range_window()[1:]
        result = detector.classify(candles, window_size=20, range_threshold=0.02)

        assert result.is_sideways is False
        assert result.insufficient_data is True

    def test_short_perfectly_flat_window_is_not_sideways(self, detector):
        candles = [make_candle(i, 100, 100, 100, 100) for i in range(5)]
        result = detector.classify(candles, window_size=20, range_threshold=0.5)

        assert result.is_sideways is False
        assert result.support == 100
        assert result.resistance == 100

    def test_empty_window(self, detector):
        result = detector.classify([], window_size=20, range_threshold=0.02)

        assert result.is_sideways is False
        assert result.support is None
        assert result.resistance is None

    def test_window_size_must_be_at_least_two(self, detector):
        with pytest.raises(ValueError):
            detector.classify(range_window(), window_size=1, range_threshold=0.02)


class TestRejections:

    def test_range_above_threshold(self, detector):
        result = detector.classify(range_window(), window_size=20, range_threshold=0.01)

        assert result.in_range is False
        assert result.is_sideways is False

    def test_single_spike_is_not_a_range(self, detector):
        # Only one candle reaches the top of the band
        candles = range_window(overrides={15: (19150, 19200, 19100, 19150)})
        result = detector.classify(candles, window_size=20, range_threshold=0.02)

        assert result.in_range is True
        assert result.multiple_touches is False
        assert result.is_sideways is False

    def test_net_drift_counts_as_trend(self, detector):
        candles = range_window(
            first=(19010, 19050, 19000, 19010),
            last=(19290, 19300, 19250, 19290),
        )
        result = detector.classify(candles, window_size=20, range_threshold=0.02)

        assert result.in_range is True
        assert result.multiple_touches is True
        assert result.not_trending is False
        assert result.is_sideways is False


class TestRangeMonotonicity:

    @pytest.mark.parametrize("widen_by", [0, 10, 50, 200, 1000])
    def test_widening_extremes_never_enters_range(self, detector, widen_by):
        threshold = 0.01
        base = detector.classify(range_window(), window_size=20, range_threshold=threshold)
        assert base.in_range is False

        widened = range_window(overrides={
            3: (19100, 19150, 19000 - widen_by, 19100),
            7: (19200, 19300 + widen_by, 19150, 19250),
        })
        result = detector.classify(widened, window_size=20, range_threshold=threshold)

        assert result.in_range is False
        assert result.range_ratio >= base.range_ratio


class TestZeroWidthRange:

    def test_flat_window(self, detector):
        candles = [make_candle(i, 100, 100, 100, 100) for i in range(20)]
        result = detector.classify(candles, window_size=20, range_threshold=0.02)

        assert result.range_ratio == 0
        assert result.in_range is True
        # Zero tolerance: every candle sits exactly on both levels
        assert result.multiple_touches is True
        assert result.is_sideways is True


class TestSupportResistanceLevels:

    def test_levels_match_window_extremes(self):
        support, resistance = RegimeDetector.support_resistance_levels(range_window(), 20)

        assert support == 19000
        assert resistance == 19300

    def test_fewer_candles_than_window(self):
        candles = range_window()[:5]
        support, resistance = RegimeDetector.support_resistance_levels(candles, 20)

        assert support == 19000
        assert resistance == 19200

    def test_empty_raises(self):
        with pytest.raises(ValueError):
            RegimeDetector.support_resistance_levels([], 20)
