"""
Pytest configuration for the net-worth history tests

Provides a fixed reference time, fast retry settings and in-memory
collaborators so no test touches the network.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

from networth_history.config import HistorySettings
from networth_history.providers.abstract_provider import (
    AbstractAccountDataSource, ConnectedAccount, Provider
)
from networth_history.services.transaction_normalizer import AccountType


class StubDataSource(AbstractAccountDataSource):
    """Data source returning canned raw records (or raising) per external account ID."""

    def __init__(self, provider, records_by_account=None, errors_by_account=None):
        self._provider = provider
        self.records_by_account = records_by_account or {}
        self.errors_by_account = errors_by_account or {}
        self.calls = []
        self.credential_lookups = 0

    @property
    def provider(self):
        return self._provider

    async def resolve_credentials(self, user_id):
        self.credential_lookups += 1
        return f'{self._provider.value}-credentials-{user_id}'

    async def fetch_raw_transactions(self, user_id, account, lookback_days, now=None, credentials=None):
        self.calls.append((user_id, account.external_account_id, lookback_days, credentials))
        if account.external_account_id in self.errors_by_account:
            raise self.errors_by_account[account.external_account_id]
        return list(self.records_by_account.get(account.external_account_id, []))


@pytest.fixture
def now():
    """Reference time already aligned to the hour and the day."""
    return datetime(2025, 3, 14, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    """Settings with instant retries so retry tests run without real sleeps."""
    return HistorySettings(
        teller_base_url='https://api.teller.test',
        teller_environment='sandbox',
        teller_page_size=3,
        teller_max_pages=20,
        snaptrade_consumer_key='consumer-key',
        snaptrade_client_id='client-id',
        snaptrade_page_size=2,
        snaptrade_max_pages=20,
        provider_max_attempts=3,
        provider_base_delay_seconds=0.0,
        provider_max_delay_seconds=0.0,
        provider_jitter_seconds=0.0,
        max_concurrency=2,
        account_timeout_seconds=1.0,
    )


@pytest.fixture
def bank_account():
    return ConnectedAccount(
        id='acc-bank',
        provider=Provider.BANK_AGGREGATOR,
        external_account_id='teller-bank-1',
        account_type=AccountType.BANK,
        current_balance=Decimal('1000.00'),
        user_id='user-1',
    )


@pytest.fixture
def card_account():
    return ConnectedAccount(
        id='acc-card',
        provider=Provider.BANK_AGGREGATOR,
        external_account_id='teller-card-1',
        account_type=AccountType.CARD,
        current_balance=Decimal('-250.00'),
        user_id='user-1',
    )


@pytest.fixture
def brokerage_account():
    return ConnectedAccount(
        id='acc-brokerage',
        provider=Provider.BROKERAGE_AGGREGATOR,
        external_account_id='snap-1',
        account_type=AccountType.BROKERAGE,
        current_balance=Decimal('5000.00'),
        user_id='user-1',
    )


@pytest.fixture
def account_store():
    """Account/credential store double with async lookups."""
    store = AsyncMock()
    store.get_connected_accounts.return_value = []
    store.get_teller_access_token.return_value = 'token-abc'
    store.get_snaptrade_credentials.return_value = {
        'snaptrade_user_id': 'snap-user',
        'user_secret': 'snap-secret'
    }
    return store


@pytest.fixture
def stub_source_factory():
    return StubDataSource
