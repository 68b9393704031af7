"""
Chart period configuration.

Maps a selectable chart window to its sampling grid: how far back to look,
how wide each bucket is, and how many buckets make up the window.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Union

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


class Period(str, Enum):
    """Selectable chart windows."""
    ONE_DAY = "1D"
    ONE_WEEK = "1W"
    ONE_MONTH = "1M"
    THREE_MONTHS = "3M"
    ONE_YEAR = "1Y"


@dataclass(frozen=True)
class PeriodConfig:
    """Sampling configuration for one period."""
    lookback_days: int
    bucket_interval_ms: int
    bucket_count: int

    @property
    def bucket_interval(self) -> timedelta:
        return timedelta(milliseconds=self.bucket_interval_ms)

    @property
    def window_ms(self) -> int:
        """Span covered by the grid, first bucket to last."""
        return self.bucket_count * self.bucket_interval_ms


# 1W samples 6 buckets per day rather than 24
_PERIOD_CONFIGS = {
    Period.ONE_DAY: PeriodConfig(lookback_days=1, bucket_interval_ms=HOUR_MS, bucket_count=24),
    Period.ONE_WEEK: PeriodConfig(lookback_days=7, bucket_interval_ms=4 * HOUR_MS, bucket_count=42),
    Period.ONE_MONTH: PeriodConfig(lookback_days=30, bucket_interval_ms=DAY_MS, bucket_count=30),
    Period.THREE_MONTHS: PeriodConfig(lookback_days=90, bucket_interval_ms=DAY_MS, bucket_count=90),
    Period.ONE_YEAR: PeriodConfig(lookback_days=365, bucket_interval_ms=DAY_MS, bucket_count=365),
}


def parse_period(value: Union[Period, str]) -> Period:
    """
    Strictly parse a period literal.

    Callers use this to reject bad input before it reaches the engine.

    Raises:
        ValueError: If the value is not one of 1D, 1W, 1M, 3M, 1Y
    """
    if isinstance(value, Period):
        return value
    try:
        return Period(str(value).strip().upper())
    except ValueError:
        valid = ", ".join(p.value for p in Period)
        raise ValueError(f"Unknown period {value!r}; expected one of: {valid}")


def config_for(period: Union[Period, str]) -> PeriodConfig:
    """
    Get the sampling configuration for a period.

    Unknown values fall back to the 1D configuration so a chart still renders.
    """
    try:
        return _PERIOD_CONFIGS[parse_period(period)]
    except ValueError:
        logger.warning(f"Unknown period {period!r}, defaulting to {Period.ONE_DAY.value}")
        return _PERIOD_CONFIGS[Period.ONE_DAY]
