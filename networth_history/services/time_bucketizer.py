"""
Time bucketing.

Re-samples an irregular, chronological balance series onto a fixed grid of
evenly spaced timestamps. Every grid point gets a value: the latest source
point at or before it, or the earliest known value when the grid point comes
before all source points.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

from .balance_reconstructor import HistoricalDataPoint, round_money
from .period_config import PeriodConfig

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def floor_to_interval(now: datetime, config: PeriodConfig) -> datetime:
    """Floor a timestamp to the period's bucket interval (epoch aligned, UTC)."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now_ms = (now - EPOCH) // _ONE_MS
    floored_ms = now_ms - (now_ms % config.bucket_interval_ms)
    return EPOCH + timedelta(milliseconds=floored_ms)


def build_grid(config: PeriodConfig, now_floored: datetime) -> List[datetime]:
    """
    Build the bucket grid ending at now_floored.

    Returns bucket_count + 1 ascending timestamps spaced by the bucket interval.
    """
    interval = config.bucket_interval
    return [now_floored - i * interval for i in range(config.bucket_count, -1, -1)]


def bucketize_onto_grid(series: Sequence[HistoricalDataPoint], grid: Sequence[datetime],
                        default: Optional[Decimal] = None) -> List[HistoricalDataPoint]:
    """
    Carry a chronological series onto an ascending grid in one forward pass.

    Args:
        series: Chronologically ordered source points
        grid: Ascending target timestamps
        default: Value used for every bucket when the series is empty (0 if None)

    Returns:
        One point per grid timestamp, values rounded to cents
    """
    if not series:
        fill = round_money(default if default is not None else Decimal('0'))
        return [HistoricalDataPoint(timestamp=ts, value=fill) for ts in grid]

    last_known = series[0].value
    index = 0
    buckets = []
    for ts in grid:
        while index < len(series) and series[index].timestamp <= ts:
            last_known = series[index].value
            index += 1
        buckets.append(HistoricalDataPoint(timestamp=ts, value=round_money(last_known)))
    return buckets


def bucketize(series: Sequence[HistoricalDataPoint], config: PeriodConfig,
              now_floored: datetime) -> List[HistoricalDataPoint]:
    """Bucketize a chronological series onto the period grid ending at now_floored."""
    return bucketize_onto_grid(series, build_grid(config, now_floored))
