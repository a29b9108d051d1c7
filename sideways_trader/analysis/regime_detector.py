"""
Sideways (range-bound) market detection.

A window is sideways when its high/low band is narrow, both band edges were
touched repeatedly, and price did not drift far from where it started.
"""

import logging
from typing import Sequence, Tuple

import numpy as np

from sideways_trader.models.candle import Candle
from sideways_trader.models.regime import RegimeResult

# Fraction of the band width within which a high/low counts as a touch
TOUCH_TOLERANCE_RATIO = 0.10
MIN_TOUCHES = 2


class RegimeDetector:
    """
    Pure classifier over an ordered (oldest first) candle window.

    Holds no state between calls; one instance can be shared freely.
    """

    def __init__(self, touch_tolerance_ratio: float = TOUCH_TOLERANCE_RATIO, min_touches: int = MIN_TOUCHES):
        if touch_tolerance_ratio < 0:
            raise ValueError(f"touch_tolerance_ratio must be >= 0, got {touch_tolerance_ratio}")
        if min_touches < 1:
            raise ValueError(f"min_touches must be >= 1, got {min_touches}")
        self.touch_tolerance_ratio = touch_tolerance_ratio
        self.min_touches = min_touches
        self.logger = logging.getLogger(__name__)

    def classify(
        self,
        candles: Sequence[Candle],
        window_size: int,
        range_threshold: float,
    ) -> RegimeResult:
        """
        Classify the most recent ``window_size`` candles.

        Args:
            candles: Candles ordered oldest to newest
            window_size: Number of candles the decision is based on
            range_threshold: Maximum (resistance - support) / support

        Returns:
            RegimeResult; ``is_sideways`` is False whenever fewer than
            ``window_size`` candles are available.
        """
        if window_size < 2:
            raise ValueError(f"window_size must be >= 2, got {window_size}")

        if len(candles) < window_size:
            self.logger.warning(
                f"Insufficient candles for regime detection: "
                f"{len(candles)} < {window_size}"
            )
            if not candles:
                return RegimeResult.insufficient()
            support, resistance = self.support_resistance_levels(candles, window_size)
            return RegimeResult.insufficient(support, resistance)

        window = candles[-window_size:]
        highs = np.array([c.high for c in window], dtype=float)
        lows = np.array([c.low for c in window], dtype=float)

        support = float(lows.min())
        resistance = float(highs.max())

        if support <= 0:
            self.logger.warning(f"Non-positive support {support}, cannot compute range")
            return RegimeResult(is_sideways=False, support=support, resistance=resistance)

        range_ratio = (resistance - support) / support
        in_range = range_ratio <= range_threshold

        # Zero-width band gives zero tolerance: only exact touches count
        tolerance = (resistance - support) * self.touch_tolerance_ratio
        resistance_touches = int(np.count_nonzero(np.abs(highs - resistance) <= tolerance))
        support_touches = int(np.count_nonzero(np.abs(lows - support) <= tolerance))
        multiple_touches = (
            resistance_touches >= self.min_touches and support_touches >= self.min_touches
        )

        first_close = window[0].close
        last_close = window[-1].close
        trend_ratio = abs(last_close - first_close) / first_close
        not_trending = trend_ratio <= range_threshold / 2

        is_sideways = bool(in_range and multiple_touches and not_trending)

        self.logger.debug(
            f"Regime: support={support} resistance={resistance} "
            f"range={range_ratio:.4%} (in_range={in_range}) "
            f"touches={support_touches}/{resistance_touches} "
            f"trend={trend_ratio:.4%} (not_trending={not_trending}) "
            f"-> sideways={is_sideways}"
        )

        return RegimeResult(
            is_sideways=is_sideways,
            support=support,
            resistance=resistance,
            range_ratio=range_ratio,
            trend_ratio=trend_ratio,
            in_range=bool(in_range),
            multiple_touches=multiple_touches,
            not_trending=bool(not_trending),
        )

    @staticmethod
    def support_resistance_levels(
        candles: Sequence[Candle], window_size: int
    ) -> Tuple[float, float]:
        """
        Lowest low and highest high over the last ``window_size`` candles.

        Uses all candles when fewer are available.

        Raises:
            ValueError: If ``candles`` is empty
        """
        if not candles:
            raise ValueError("Cannot compute support/resistance without candles")
        window = candles[-window_size:]
        support = float(np.min([c.low for c in window]))
        resistance = float(np.max([c.high for c in window]))
        return support, resistance
