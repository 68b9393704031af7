"""
Abstract account data source interface for multi-provider history reconstruction.

This module defines the contract every transaction feed must implement so the
history engine can treat bank and brokerage providers uniformly. Adding a new
provider means adding one AbstractAccountDataSource subclass and registering it
by its Provider value; the orchestrator never branches on provider identity.
"""

import asyncio
import logging
import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..services.transaction_normalizer import AccountType

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Provider(str, Enum):
    """Supported transaction feed providers."""
    BANK_AGGREGATOR = "teller"          # Bank and credit card accounts
    BROKERAGE_AGGREGATOR = "snaptrade"  # Brokerage accounts


@dataclass(frozen=True)
class ConnectedAccount:
    """A user's linked account as seen by the history engine (read-only)."""
    id: str                     # Internal account ID
    provider: Provider          # Which feed serves this account
    external_account_id: str    # Provider's native account ID
    account_type: AccountType   # 'bank', 'card' or 'brokerage'
    current_balance: Decimal    # Latest balance reported by the provider
    user_id: Optional[str] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['provider'] = self.provider.value
        data['account_type'] = self.account_type.value
        data['current_balance'] = str(self.current_balance)
        return data


class ProviderError(Exception):
    """Custom exception for account data source errors."""

    def __init__(self, message: str, provider: str, error_code: Optional[str] = None,
                 original_error: Optional[Exception] = None):
        self.message = message
        self.provider = provider
        self.error_code = error_code
        self.original_error = original_error
        super().__init__(f"[{provider}] {message}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            'error': True,
            'message': self.message,
            'provider': self.provider,
            'error_code': self.error_code,
            'timestamp': datetime.now().isoformat()
        }


class RetryableProviderError(ProviderError):
    """Transient failure (rate limit, 5xx, network) worth retrying."""

    def __init__(self, message: str, provider: str, error_code: Optional[str] = None,
                 original_error: Optional[Exception] = None,
                 retry_after_seconds: Optional[float] = None):
        super().__init__(message, provider, error_code, original_error)
        self.retry_after_seconds = retry_after_seconds


def parse_retry_after(value: Any) -> Optional[float]:
    """Seconds from a Retry-After header (delta-seconds form), or None."""
    if value is None or value == '':
        return None
    try:
        return max(float(value), 0.0)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter, shared by every provider adapter."""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    jitter_seconds: float = 0.5

    def backoff_delay(self, attempt: int) -> float:
        """Delay before the next try after `attempt` (1-based) failed."""
        exponential = min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)
        return exponential + random.uniform(0, self.jitter_seconds)


async def call_with_retry(operation: Callable[[], Awaitable[T]], policy: RetryPolicy,
                          provider: str, context: str) -> T:
    """
    Run an async provider call, retrying transient failures with backoff.

    Only RetryableProviderError triggers a retry; any other exception
    propagates immediately. After the final attempt the last error is raised.
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except RetryableProviderError as e:
            if attempt >= policy.max_attempts:
                logger.error(f"[{provider} {context}] Final failure after {attempt} attempts: {e.message}")
                raise
            if e.retry_after_seconds is not None:
                delay = e.retry_after_seconds
            else:
                delay = policy.backoff_delay(attempt)
            logger.warning(
                f"[{provider} {context}] Attempt {attempt}/{policy.max_attempts} failed "
                f"({e.error_code}), retrying in {delay:.1f}s: {e.message}"
            )
            await asyncio.sleep(delay)
            attempt += 1


class AbstractAccountDataSource(ABC):
    """
    Abstract base class for transaction feeds.

    Implements the Strategy pattern for different providers (Teller, SnapTrade)
    behind a single fetch contract.
    """

    @property
    @abstractmethod
    def provider(self) -> Provider:
        """Provider tag this source serves."""

    async def resolve_credentials(self, user_id: str) -> Any:
        """
        Look up the user's credentials for this provider.

        The orchestrator calls this once per request and hands the result to
        every fetch_raw_transactions call for the same user. Sources that
        need no credentials keep the default.

        Raises:
            ProviderError: If the credentials are missing or cannot be read
        """
        return None

    @abstractmethod
    async def fetch_raw_transactions(self, user_id: str, account: ConnectedAccount,
                                     lookback_days: int,
                                     now: Optional[datetime] = None,
                                     credentials: Any = None) -> List[Dict[str, Any]]:
        """
        Fetch raw provider records for one account within the lookback window.

        Args:
            user_id: Unique user identifier (used to resolve provider credentials)
            account: The connected account to fetch for
            lookback_days: Number of days of history to fetch
            now: Reference time for the window end (defaults to the current time)
            credentials: Result of resolve_credentials(user_id); resolved here when None

        Returns:
            List of raw provider records, ready for the normalizer

        Raises:
            ProviderError: If unable to fetch transactions
        """

    def get_provider_name(self) -> str:
        """
        Get the name of this provider.

        Returns:
            Provider name string (e.g., 'teller', 'snaptrade')
        """
        return self.provider.value
