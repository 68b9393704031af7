"""
Teller provider implementation (bank-aggregator).

Fetches bank and credit card transactions from Teller's REST API with
cursor-based pagination. Teller returns transactions newest first, up to
`count` per page; the next page starts after `from_id`.
"""

import asyncio
import logging
import os
import re
import ssl
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from ..config import HistorySettings
from ..services.transaction_normalizer import AccountType, parse_timestamp
from .abstract_provider import (
    AbstractAccountDataSource, ConnectedAccount, Provider, ProviderError,
    RetryableProviderError, RetryPolicy, call_with_retry, parse_retry_after
)

logger = logging.getLogger(__name__)

_PEM_PATTERN = re.compile(r'-----BEGIN ([A-Z ]+)-----(.*?)-----END \1-----', re.DOTALL)


def format_pem(pem: str) -> str:
    """
    Restore line breaks in a PEM blob that was flattened into one line
    (as happens when certificates are stored in environment variables).
    """
    if '\n' in pem.strip():
        return pem
    match = _PEM_PATTERN.search(pem)
    if not match:
        return pem
    label, body = match.group(1), re.sub(r'\s', '', match.group(2))
    lines = [body[i:i + 64] for i in range(0, len(body), 64)]
    return "-----BEGIN {0}-----\n{1}\n-----END {0}-----\n".format(label, '\n'.join(lines))


class TellerDataSource(AbstractAccountDataSource):
    """Transaction feed for Teller-linked bank and card accounts."""

    def __init__(self, credential_store, settings: HistorySettings,
                 session: Optional[aiohttp.ClientSession] = None):
        """
        Args:
            credential_store: Object exposing async get_teller_access_token(user_id)
            settings: Provider and retry configuration
            session: Optional shared aiohttp session (caller keeps ownership)
        """
        self.credential_store = credential_store
        self.settings = settings
        self.session = session
        self.retry_policy = RetryPolicy(
            max_attempts=settings.provider_max_attempts,
            base_delay_seconds=settings.provider_base_delay_seconds,
            max_delay_seconds=settings.provider_max_delay_seconds,
            jitter_seconds=settings.provider_jitter_seconds,
        )

    @property
    def provider(self) -> Provider:
        return Provider.BANK_AGGREGATOR

    async def resolve_credentials(self, user_id: str) -> str:
        """Get the user's Teller access token."""
        try:
            access_token = await self.credential_store.get_teller_access_token(user_id)
        except Exception as e:
            raise ProviderError(
                f"Failed to resolve Teller credentials for user {user_id}: {e}",
                self.get_provider_name(),
                "CREDENTIALS_ERROR",
                e
            )

        if not access_token:
            raise ProviderError(
                f"No Teller access token for user {user_id}",
                self.get_provider_name(),
                "MISSING_CREDENTIALS"
            )
        return access_token

    async def fetch_raw_transactions(self, user_id: str, account: ConnectedAccount,
                                     lookback_days: int,
                                     now: Optional[datetime] = None,
                                     credentials: Optional[str] = None) -> List[Dict[str, Any]]:
        """Fetch the account's transactions, resolving the Teller token if not given."""
        access_token = credentials or await self.resolve_credentials(user_id)
        return await self.fetch_transactions(
            access_token, account.external_account_id, account.account_type, lookback_days, now
        )

    async def fetch_transactions(self, access_token: str, external_account_id: str,
                                 account_type: AccountType, lookback_days: int,
                                 now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Fetch raw Teller transactions within the lookback window.

        Stops once a page reaches past the cutoff date, a short page signals the
        end of the feed, or the page cap is hit.

        Args:
            access_token: Teller access token (sent as the Basic auth username)
            external_account_id: Teller account ID
            account_type: 'bank' or 'card' (for logging; sign handling is the normalizer's job)
            lookback_days: Number of days of history to keep
            now: Reference time for the window end

        Returns:
            Raw transactions dated on or after the cutoff, newest first

        Raises:
            ProviderError: If a page cannot be fetched
        """
        if now is None:
            now = datetime.now(timezone.utc)
        cutoff = now - timedelta(days=lookback_days)
        account_type = AccountType(account_type)

        url = f"{self.settings.teller_base_url}/accounts/{external_account_id}/transactions"
        auth = aiohttp.BasicAuth(access_token, '')
        page_size = self.settings.teller_page_size
        max_pages = self.settings.teller_max_pages

        transactions: List[Dict[str, Any]] = []
        from_id = None
        page_count = 0
        reached_end = False

        session, owns_session = self._open_session()
        try:
            while page_count < max_pages:
                page_count += 1
                params = {'count': str(page_size)}
                if from_id:
                    params['from_id'] = from_id

                page = await call_with_retry(
                    lambda: self._request_page(session, url, params, auth),
                    self.retry_policy,
                    self.get_provider_name(),
                    'FetchTransactions'
                )

                if not isinstance(page, list) or not page:
                    reached_end = True
                    break

                transactions.extend(txn for txn in page if self._is_within_window(txn, cutoff))

                if self._is_before_cutoff(page[-1], cutoff) or len(page) < page_size:
                    reached_end = True
                    break

                from_id = page[-1].get('id')
                if not from_id:
                    logger.warning(f"Teller page without a cursor for account {external_account_id}, stopping")
                    reached_end = True
                    break
        finally:
            if owns_session:
                await session.close()

        if not reached_end:
            logger.warning(
                f"Teller pagination cap ({max_pages} pages) reached for {account_type.value} "
                f"account {external_account_id}; history may be truncated"
            )

        logger.info(
            f"Fetched {len(transactions)} Teller transactions in {page_count} pages "
            f"for {account_type.value} account {external_account_id}"
        )
        return transactions

    @staticmethod
    def _transaction_time(txn: Dict[str, Any]) -> Optional[datetime]:
        try:
            return parse_timestamp(txn.get('date'))
        except (ValueError, TypeError):
            return None

    def _is_within_window(self, txn: Dict[str, Any], cutoff: datetime) -> bool:
        occurred_at = self._transaction_time(txn)
        # Undated records are passed on so the normalizer can reject and log them
        return occurred_at is None or occurred_at >= cutoff

    def _is_before_cutoff(self, txn: Dict[str, Any], cutoff: datetime) -> bool:
        occurred_at = self._transaction_time(txn)
        return occurred_at is not None and occurred_at < cutoff

    async def _request_page(self, session: aiohttp.ClientSession, url: str,
                            params: Dict[str, str], auth: aiohttp.BasicAuth) -> Any:
        """Fetch one page, classifying failures as retryable or not."""
        provider = self.get_provider_name()
        try:
            async with session.get(url, params=params, auth=auth,
                                   headers={'Accept': 'application/json'}) as response:
                if response.status == 200:
                    return await response.json()

                body = await response.text()
                if response.status == 429:
                    raise RetryableProviderError(
                        "Rate limited by Teller", provider, "RATE_LIMITED",
                        retry_after_seconds=parse_retry_after(response.headers.get('Retry-After'))
                    )
                if 500 <= response.status < 600:
                    raise RetryableProviderError(
                        f"Teller server error {response.status}: {body[:200]}", provider, "SERVER_ERROR"
                    )
                error_code = "AUTH_ERROR" if response.status in (401, 403) else "HTTP_ERROR"
                raise ProviderError(f"Teller API error {response.status}: {body[:200]}", provider, error_code)
        except ProviderError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise RetryableProviderError(f"Network error: {e}", provider, "NETWORK_ERROR", e)

    def _open_session(self) -> Tuple[aiohttp.ClientSession, bool]:
        """Return (session, owned); an injected session is never closed here."""
        if self.session is not None:
            return self.session, False

        connector = aiohttp.TCPConnector(ssl=self._build_ssl_context(), limit_per_host=10)
        timeout = aiohttp.ClientTimeout(total=30, connect=10)
        session = aiohttp.ClientSession(
            connector=connector,
            timeout=timeout,
            headers={'User-Agent': 'networth-history/1.0'}
        )
        return session, True

    def _build_ssl_context(self) -> Optional[ssl.SSLContext]:
        """Build the mTLS context Teller requires outside sandbox."""
        if self.settings.teller_environment == 'sandbox':
            return None

        cert, key = self.settings.teller_cert, self.settings.teller_private_key
        if not cert or not key:
            logger.warning(
                f"Teller mTLS certificates not configured for {self.settings.teller_environment} environment"
            )
            return None

        context = ssl.create_default_context()
        if os.path.isfile(cert) and os.path.isfile(key):
            context.load_cert_chain(certfile=cert, keyfile=key)
            return context

        # ssl only loads certificates from disk
        with tempfile.TemporaryDirectory() as tmp_dir:
            cert_path = os.path.join(tmp_dir, 'teller_cert.pem')
            key_path = os.path.join(tmp_dir, 'teller_key.pem')
            with open(cert_path, 'w') as f:
                f.write(format_pem(cert))
            with open(key_path, 'w') as f:
                f.write(format_pem(key))
            context.load_cert_chain(certfile=cert_path, keyfile=key_path)
        return context
