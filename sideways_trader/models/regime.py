"""
Market regime classification result
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class RegimeResult:
    """
    Outcome of one sideways classification.

    Recomputed every cycle and never persisted. ``support``/``resistance``
    are None only when no candles were available at all.
    """

    is_sideways: bool
    support: Optional[float]
    resistance: Optional[float]
    range_ratio: Optional[float] = None
    trend_ratio: Optional[float] = None
    in_range: bool = False
    multiple_touches: bool = False
    not_trending: bool = False
    insufficient_data: bool = False

    @classmethod
    def insufficient(
        cls,
        support: Optional[float] = None,
        resistance: Optional[float] = None,
    ) -> "RegimeResult":
        return cls(
            is_sideways=False,
            support=support,
            resistance=resistance,
            insufficient_data=True,
        )
