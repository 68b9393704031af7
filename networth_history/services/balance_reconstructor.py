"""
Balance reconstruction.

Derives point-in-time balances for one account by starting from the known
current balance and undoing transactions from newest to oldest.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional

from .transaction_normalizer import NormalizedTransaction

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')


def round_money(value: Decimal) -> Decimal:
    """Round to cents, half away from zero."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 UTC with millisecond precision and a 'Z' suffix."""
    utc_value = value.astimezone(timezone.utc)
    return utc_value.strftime('%Y-%m-%dT%H:%M:%S.') + f"{utc_value.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class HistoricalDataPoint:
    """Balance (or aggregate value) at one instant."""
    timestamp: datetime
    value: Decimal

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'timestamp': format_timestamp(self.timestamp),
            'value': float(self.value),
        }


def reconstruct(transactions: Iterable[NormalizedTransaction], current_balance: Decimal,
                now: Optional[datetime] = None) -> List[HistoricalDataPoint]:
    """
    Rebuild an account's balance history from its current balance.

    Walking newest to oldest, each transaction is subtracted from the running
    balance to recover the balance before it happened. The returned series is
    chronological:

    - the first point is the opening balance (before the earliest
      transaction), stamped at the earliest transaction's time;
    - each transaction's timestamp then carries the balance including that
      transaction;
    - the last point is current_balance, stamped at now or at the newest
      transaction when that is later.

    Replaying every transaction forward from the first point reproduces
    current_balance.

    Args:
        transactions: Normalized transactions in any order
        current_balance: Balance reported by the provider right now
        now: Reference time for the current-balance point (defaults to utcnow)

    Returns:
        Chronological list of HistoricalDataPoint, values rounded to cents
    """
    if now is None:
        now = datetime.now(timezone.utc)

    # Stable sort keeps same-timestamp transactions in feed order
    ordered = sorted(transactions, key=lambda txn: txn.date)

    # Pending/future-dated transactions are already in the current balance;
    # the current-balance point never precedes them.
    latest = now
    if ordered and ordered[-1].date > now:
        logger.debug(f"Found transactions dated after {now.isoformat()}")
        latest = ordered[-1].date

    balance = Decimal(current_balance)
    points = [HistoricalDataPoint(timestamp=latest, value=round_money(balance))]

    for txn in reversed(ordered):
        points.append(HistoricalDataPoint(timestamp=txn.date, value=round_money(balance)))
        balance -= txn.amount

    if ordered:
        points.append(HistoricalDataPoint(timestamp=ordered[0].date, value=round_money(balance)))

    points.reverse()
    return points


def replay(opening_balance: Decimal, transactions: Iterable[NormalizedTransaction]) -> Decimal:
    """Apply transactions forward from an opening balance."""
    balance = Decimal(opening_balance)
    for txn in transactions:
        balance += txn.amount
    return balance
