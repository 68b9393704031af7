"""
SnapTrade provider implementation (brokerage-aggregator).

Fetches brokerage account activities from SnapTrade. Activities carry a
`net_amount` that already reflects the portfolio impact, so no sign handling
happens here.
"""

import asyncio
import logging
from collections.abc import Mapping
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import urllib3
from snaptrade_client import SnapTrade
from snaptrade_client.exceptions import ApiException

from ..config import HistorySettings
from .abstract_provider import (
    AbstractAccountDataSource, ConnectedAccount, Provider, ProviderError,
    RetryableProviderError, RetryPolicy, call_with_retry, parse_retry_after
)

logger = logging.getLogger(__name__)


class SnapTradeDataSource(AbstractAccountDataSource):
    """Activity feed for SnapTrade-linked brokerage accounts."""

    def __init__(self, credential_store, settings: HistorySettings,
                 client: Optional[SnapTrade] = None):
        """
        Args:
            credential_store: Object exposing async get_snaptrade_credentials(user_id)
            settings: Provider and retry configuration
            client: Optional pre-built SnapTrade SDK client
        """
        self.credential_store = credential_store
        self.settings = settings
        self._client = client
        self.retry_policy = RetryPolicy(
            max_attempts=settings.provider_max_attempts,
            base_delay_seconds=settings.provider_base_delay_seconds,
            max_delay_seconds=settings.provider_max_delay_seconds,
            jitter_seconds=settings.provider_jitter_seconds,
        )

    @property
    def provider(self) -> Provider:
        return Provider.BROKERAGE_AGGREGATOR

    @property
    def client(self) -> SnapTrade:
        """Lazy load the SnapTrade SDK client."""
        if self._client is None:
            consumer_key = self.settings.snaptrade_consumer_key
            client_id = self.settings.snaptrade_client_id
            if not consumer_key or not client_id:
                raise ProviderError(
                    "SNAPTRADE_CONSUMER_KEY and SNAPTRADE_CLIENT_ID must be set in environment",
                    "snaptrade",
                    "MISSING_CREDENTIALS"
                )
            self._client = SnapTrade(consumer_key=consumer_key, client_id=client_id)
            logger.info("SnapTrade client initialized successfully")
        return self._client

    async def resolve_credentials(self, user_id: str) -> Dict[str, str]:
        """Get the user's SnapTrade user ID and secret."""
        try:
            user_credentials = await self.credential_store.get_snaptrade_credentials(user_id)
        except Exception as e:
            raise ProviderError(
                f"Failed to resolve SnapTrade credentials for user {user_id}: {e}",
                self.get_provider_name(),
                "CREDENTIALS_ERROR",
                e
            )

        if not user_credentials or not user_credentials.get('user_secret'):
            raise ProviderError(
                f"No SnapTrade credentials for user {user_id}",
                self.get_provider_name(),
                "MISSING_CREDENTIALS"
            )
        return user_credentials

    async def fetch_raw_transactions(self, user_id: str, account: ConnectedAccount,
                                     lookback_days: int,
                                     now: Optional[datetime] = None,
                                     credentials: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        """Fetch the account's activities, resolving SnapTrade credentials if not given."""
        user_credentials = credentials or await self.resolve_credentials(user_id)

        if now is None:
            now = datetime.now(timezone.utc)
        end_date = now.date()
        start_date = (now - timedelta(days=lookback_days)).date()

        return await self.fetch_activities(
            user_credentials, account.external_account_id, start_date, end_date
        )

    async def fetch_activities(self, user_credentials: Dict[str, str], external_account_id: str,
                               start_date: date, end_date: date) -> List[Dict[str, Any]]:
        """
        Fetch raw SnapTrade activities for a date range.

        Accepts both the paginated `{data, pagination}` body and a bare list.
        Pagination is bounded by the configured page cap.

        Args:
            user_credentials: {'snaptrade_user_id': ..., 'user_secret': ...}
            external_account_id: SnapTrade account ID
            start_date: First day of the range (inclusive)
            end_date: Last day of the range (inclusive)

        Returns:
            Raw activity dicts

        Raises:
            ProviderError: If the activities cannot be fetched
        """
        limit = self.settings.snaptrade_page_size
        max_pages = self.settings.snaptrade_max_pages

        activities: List[Dict[str, Any]] = []
        offset = 0
        page_count = 0
        reached_end = False

        while page_count < max_pages:
            page_count += 1
            body = await call_with_retry(
                lambda: self._request_page(user_credentials, external_account_id,
                                           start_date, end_date, offset, limit),
                self.retry_policy,
                self.get_provider_name(),
                'GetAccountActivities'
            )

            page, total = self._extract_page(body)
            activities.extend(page)

            if total is None or not page or len(page) < limit or len(activities) >= total:
                reached_end = True
                break
            offset += len(page)

        if not reached_end:
            logger.warning(
                f"SnapTrade pagination cap ({max_pages} pages) reached for account "
                f"{external_account_id}; history may be truncated"
            )

        logger.info(
            f"Fetched {len(activities)} SnapTrade activities in {page_count} pages "
            f"for account {external_account_id}"
        )
        return activities

    @staticmethod
    def _extract_page(body: Any):
        """Return (activities, total) from either response shape."""
        if isinstance(body, Mapping):
            data = body.get('data') or []
            pagination = body.get('pagination') or {}
            total = pagination.get('total') if isinstance(pagination, Mapping) else None
        elif isinstance(body, (list, tuple)):
            data, total = body, None
        else:
            data, total = [], None

        page = [dict(item) for item in data if isinstance(item, Mapping)]
        return page, (int(total) if total is not None else None)

    async def _request_page(self, user_credentials: Dict[str, str], external_account_id: str,
                            start_date: date, end_date: date, offset: int, limit: int) -> Any:
        """Call the blocking SDK in a worker thread, classifying failures."""
        provider = self.get_provider_name()
        client = self.client
        try:
            response = await asyncio.to_thread(
                client.account_information.get_account_activities,
                account_id=external_account_id,
                user_id=user_credentials['snaptrade_user_id'],
                user_secret=user_credentials['user_secret'],
                start_date=start_date.isoformat(),
                end_date=end_date.isoformat(),
                offset=offset,
                limit=limit,
            )
        except ApiException as e:
            status = getattr(e, 'status', None)
            if status == 429:
                headers = getattr(e, 'headers', None) or {}
                raise RetryableProviderError(
                    f"Rate limited by SnapTrade: {e}", provider, "RATE_LIMITED", e,
                    retry_after_seconds=parse_retry_after(headers.get('Retry-After'))
                )
            if status is None or (isinstance(status, int) and status >= 500):
                raise RetryableProviderError(
                    f"SnapTrade API error {status}: {e}", provider, "API_ERROR", e
                )
            error_code = "AUTH_ERROR" if status in (401, 403) else "API_ERROR"
            raise ProviderError(f"SnapTrade API error {status}: {e}", provider, error_code, e)
        except (urllib3.exceptions.HTTPError, ConnectionError, TimeoutError) as e:
            # The SDK transport is urllib3; its connection errors are not builtin ConnectionErrors
            raise RetryableProviderError(f"Network error: {e}", provider, "NETWORK_ERROR", e)

        return response.body
