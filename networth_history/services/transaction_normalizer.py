"""
Transaction normalization.

Converts provider-specific raw records into NormalizedTransaction objects whose
amount sign always describes the effect on portfolio value:

- Bank accounts (Teller depository): positive = money in. Passed through.
- Credit cards (Teller credit): positive = a charge, which grows the debt and
  lowers net worth. The sign is INVERTED. A negative raw amount (payment or
  refund) becomes positive.
- Brokerage accounts (SnapTrade activities): net_amount already reflects the
  portfolio impact. Passed through.

Downstream components never look at the account type again, so getting the
card inversion wrong here silently mirrors the chart.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)


class AccountType(str, Enum):
    """Account categories with distinct sign conventions."""
    BANK = "bank"
    CARD = "card"
    BROKERAGE = "brokerage"


class TransactionNormalizationError(ValueError):
    """Raised when a raw provider record cannot be normalized."""

    def __init__(self, message: str, account_id: str, raw: Optional[Dict[str, Any]] = None):
        self.account_id = account_id
        self.raw = raw
        super().__init__(f"[{account_id}] {message}")


@dataclass(frozen=True)
class NormalizedTransaction:
    """Provider-independent transaction with a portfolio-correct signed amount."""
    date: datetime              # Timezone-aware (UTC)
    amount: Decimal             # Positive = portfolio value increase
    description: str
    account_id: str
    account_type: AccountType


def parse_timestamp(value: Union[str, date, datetime, None]) -> datetime:
    """
    Parse a provider date/timestamp into an aware UTC datetime.

    Accepts datetime, date and ISO-8601 strings (date-only or full timestamps,
    with or without a trailing 'Z'). Naive values are treated as UTC.

    Raises:
        ValueError: If the value is missing or unparsable
    """
    if value is None or value == '':
        raise ValueError("missing date")

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"unsupported date type {type(value).__name__}")

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_amount(value: Any) -> Decimal:
    if value is None or value == '':
        raise ValueError("missing amount")
    if isinstance(value, bool):
        raise ValueError(f"unsupported amount {value!r}")
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"unparsable amount {value!r}")
    if not amount.is_finite():
        raise ValueError(f"non-finite amount {value!r}")
    return amount


def _brokerage_amount(raw: Dict[str, Any]) -> Decimal:
    """net_amount, falling back to amount when net_amount is absent or zero."""
    gross = raw.get('amount')
    net_amount = raw.get('net_amount')
    if net_amount is None or net_amount == '':
        return _parse_amount(gross)
    amount = _parse_amount(net_amount)
    # Some activity types report a zero net_amount alongside the real gross amount
    if amount == 0 and gross is not None and gross != '':
        return _parse_amount(gross)
    return amount


def _teller_description(raw: Dict[str, Any]) -> str:
    if raw.get('description'):
        return str(raw['description'])
    details = raw.get('details') or {}
    counterparty = details.get('counterparty') or raw.get('counterparty') or {}
    if isinstance(counterparty, dict) and counterparty.get('name'):
        return str(counterparty['name'])
    return 'Transaction'


def _snaptrade_description(raw: Dict[str, Any]) -> str:
    return str(raw.get('description') or raw.get('type') or 'Transaction')


def normalize(raw: Dict[str, Any], account_type: Union[AccountType, str],
              account_id: str) -> NormalizedTransaction:
    """
    Normalize one raw provider record.

    Args:
        raw: Teller transaction (bank/card) or SnapTrade activity (brokerage)
        account_type: Account category deciding the sign convention
        account_id: Internal account ID the record belongs to

    Returns:
        NormalizedTransaction with a portfolio-correct amount

    Raises:
        TransactionNormalizationError: If the record is malformed
    """
    try:
        account_type = AccountType(account_type)
    except ValueError:
        raise TransactionNormalizationError(f"unknown account type {account_type!r}", account_id, raw)

    if not isinstance(raw, dict):
        raise TransactionNormalizationError(f"expected a mapping, got {type(raw).__name__}", account_id)

    try:
        if account_type is AccountType.BROKERAGE:
            amount = _brokerage_amount(raw)
            occurred_at = parse_timestamp(raw.get('trade_date') or raw.get('settlement_date'))
            description = _snaptrade_description(raw)
        else:
            amount = _parse_amount(raw.get('amount'))
            if account_type is AccountType.CARD:
                amount = -amount
            occurred_at = parse_timestamp(raw.get('date'))
            description = _teller_description(raw)
    except ValueError as e:
        raise TransactionNormalizationError(str(e), account_id, raw) from e

    return NormalizedTransaction(
        date=occurred_at,
        amount=amount,
        description=description,
        account_id=account_id,
        account_type=account_type,
    )


def normalize_transactions(raws: Iterable[Dict[str, Any]], account_type: Union[AccountType, str],
                           account_id: str) -> List[NormalizedTransaction]:
    """Normalize a batch, skipping (and logging) individual malformed records."""
    normalized = []
    skipped = 0
    for raw in raws:
        try:
            normalized.append(normalize(raw, account_type, account_id))
        except TransactionNormalizationError as e:
            skipped += 1
            logger.warning(f"Skipping malformed transaction: {e}")

    if skipped:
        logger.warning(f"Skipped {skipped} malformed transaction(s) for account {account_id}")
    return normalized
