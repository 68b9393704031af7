"""
Tests for PortfolioHistoryService

Covers the end-to-end aggregation path with stub data sources: the grid
contract, cross-account summing, and per-account failure containment.
"""

import asyncio
import dataclasses
import time
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, Mock, patch

from networth_history.providers.abstract_provider import ConnectedAccount, Provider, ProviderError
from networth_history.providers.account_store import SupabaseAccountStore
from networth_history.providers.teller_provider import TellerDataSource
from networth_history.services.period_config import Period, config_for
from networth_history.services.portfolio_history_service import (
    PortfolioHistoryService, get_portfolio_history_service
)
from networth_history.services.transaction_normalizer import AccountType


def iso(dt):
    return dt.strftime('%Y-%m-%dT%H:%M:%SZ')


def values(history):
    return [point.value for point in history]


@pytest.fixture
def teller_source(stub_source_factory):
    return stub_source_factory(Provider.BANK_AGGREGATOR)


@pytest.fixture
def snaptrade_source(stub_source_factory):
    return stub_source_factory(Provider.BROKERAGE_AGGREGATOR)


@pytest.fixture
def service(account_store, teller_source, snaptrade_source, settings):
    return PortfolioHistoryService(account_store, [teller_source, snaptrade_source], settings)


class TestGenerateHistory:

    @pytest.mark.asyncio
    async def test_one_day_single_deposit(self, service, account_store, teller_source, bank_account, now):
        """A +200 deposit 12h ago on a 1000 balance: 800 before it, 1000 from then on."""
        account_store.get_connected_accounts.return_value = [bank_account]
        teller_source.records_by_account['teller-bank-1'] = [
            {'id': 'txn_1', 'amount': '200.00', 'date': iso(now - timedelta(hours=12))}
        ]

        history = await service.generate_history('user-1', Period.ONE_DAY, now=now)

        assert len(history) == 25
        assert history[0].timestamp == now - timedelta(hours=24)
        assert history[-1].timestamp == now
        assert values(history) == [Decimal('800.00')] * 12 + [Decimal('1000.00')] * 13

    @pytest.mark.asyncio
    async def test_one_day_single_deposit_with_unaligned_now(self, service, account_store, teller_source,
                                                              bank_account):
        """Grid ends at the floored hour; the deposit shows from the next grid point."""
        now = datetime(2025, 3, 14, 15, 47, tzinfo=timezone.utc)
        account_store.get_connected_accounts.return_value = [bank_account]
        teller_source.records_by_account['teller-bank-1'] = [
            {'id': 'txn_1', 'amount': '200.00', 'date': iso(now - timedelta(hours=12))}
        ]

        history = await service.generate_history('user-1', Period.ONE_DAY, now=now)

        assert len(history) == 25
        assert history[-1].timestamp == datetime(2025, 3, 14, 15, tzinfo=timezone.utc)
        assert history[0].timestamp == datetime(2025, 3, 13, 15, tzinfo=timezone.utc)
        values_by_time = {point.timestamp: point.value for point in history}
        assert values_by_time[datetime(2025, 3, 14, 3, tzinfo=timezone.utc)] == Decimal('800.00')
        assert values_by_time[datetime(2025, 3, 14, 4, tzinfo=timezone.utc)] == Decimal('1000.00')
        assert values(history) == [Decimal('800.00')] * 13 + [Decimal('1000.00')] * 12

    @pytest.mark.asyncio
    async def test_account_without_transactions_is_flat(self, service, account_store, bank_account, now):
        account_store.get_connected_accounts.return_value = [bank_account]

        history = await service.generate_history('user-1', '1M', now=now)

        assert len(history) == 31
        assert set(values(history)) == {Decimal('1000.00')}

    @pytest.mark.asyncio
    async def test_accounts_are_summed_per_bucket(self, service, account_store, teller_source,
                                                  snaptrade_source, bank_account, card_account,
                                                  brokerage_account, now):
        account_store.get_connected_accounts.return_value = [bank_account, card_account, brokerage_account]
        teller_source.records_by_account['teller-card-1'] = [
            # charge of 50 two days ago: debt was -200 before it
            {'id': 'c1', 'amount': '50.00', 'date': iso(now - timedelta(days=2))}
        ]
        snaptrade_source.records_by_account['snap-1'] = [
            {'id': 'a1', 'net_amount': 1000, 'trade_date': iso(now - timedelta(days=5))}
        ]

        history = await service.generate_history('user-1', Period.ONE_WEEK, now=now)

        assert len(history) == 43
        # 1000 bank + (-200 card) + 4000 brokerage at the start of the window
        assert history[0].value == Decimal('4800.00')
        assert history[-1].value == Decimal('5750.00')

    @pytest.mark.asyncio
    async def test_result_independent_of_account_order(self, account_store, teller_source,
                                                       snaptrade_source, settings, bank_account,
                                                       card_account, brokerage_account, now):
        teller_source.records_by_account['teller-bank-1'] = [
            {'amount': '10.10', 'date': iso(now - timedelta(days=3))},
            {'amount': '-4.05', 'date': iso(now - timedelta(days=1))},
        ]
        snaptrade_source.records_by_account['snap-1'] = [
            {'net_amount': '-0.33', 'trade_date': iso(now - timedelta(days=6))}
        ]
        service = PortfolioHistoryService(account_store, [teller_source, snaptrade_source], settings)

        account_store.get_connected_accounts.return_value = [bank_account, card_account, brokerage_account]
        first = await service.generate_history('user-1', '1W', now=now)
        account_store.get_connected_accounts.return_value = [brokerage_account, bank_account, card_account]
        second = await service.generate_history('user-1', '1W', now=now)

        assert first == second

    @pytest.mark.asyncio
    async def test_unknown_period_uses_one_day_grid(self, service, account_store, bank_account, now):
        account_store.get_connected_accounts.return_value = [bank_account]
        history = await service.generate_history('user-1', '10Y', now=now)
        assert len(history) == config_for(Period.ONE_DAY).bucket_count + 1

    @pytest.mark.asyncio
    async def test_malformed_records_are_skipped(self, service, account_store, teller_source, bank_account, now):
        account_store.get_connected_accounts.return_value = [bank_account]
        teller_source.records_by_account['teller-bank-1'] = [
            {'amount': 'garbage', 'date': iso(now - timedelta(hours=3))},
            {'amount': '100', 'date': iso(now - timedelta(hours=3))},
        ]

        history = await service.generate_history('user-1', Period.ONE_DAY, now=now)

        assert history[0].value == Decimal('900.00')
        assert history[-1].value == Decimal('1000.00')


class TestFailureContainment:

    @pytest.mark.asyncio
    async def test_failed_account_is_omitted(self, service, account_store, teller_source,
                                             bank_account, brokerage_account, now, caplog):
        account_store.get_connected_accounts.return_value = [bank_account, brokerage_account]
        teller_source.errors_by_account['teller-bank-1'] = ProviderError('boom', 'teller', 'SERVER_ERROR')

        history = await service.generate_history('user-1', Period.ONE_DAY, now=now)

        assert set(values(history)) == {Decimal('5000.00')}
        assert 'Error fetching teller transactions for account acc-bank' in caplog.text

    @pytest.mark.asyncio
    async def test_flat_policy_keeps_failed_account_balance(self, account_store, teller_source,
                                                            snaptrade_source, settings, bank_account,
                                                            brokerage_account, now):
        flat_settings = dataclasses.replace(settings, failed_account_policy='flat')
        service = PortfolioHistoryService(account_store, [teller_source, snaptrade_source], flat_settings)
        account_store.get_connected_accounts.return_value = [bank_account, brokerage_account]
        snaptrade_source.errors_by_account['snap-1'] = RuntimeError('unexpected')

        history = await service.generate_history('user-1', Period.ONE_DAY, now=now)

        assert set(values(history)) == {Decimal('6000.00')}

    @pytest.mark.asyncio
    async def test_slow_account_times_out(self, account_store, teller_source, snaptrade_source,
                                          settings, bank_account, brokerage_account, now):
        class SlowSource(type(snaptrade_source)):
            async def fetch_raw_transactions(self, user_id, account, lookback_days, now=None, credentials=None):
                await asyncio.sleep(5)
                return []

        fast_settings = dataclasses.replace(settings, account_timeout_seconds=0.01)
        service = PortfolioHistoryService(
            account_store, [teller_source, SlowSource(Provider.BROKERAGE_AGGREGATOR)], fast_settings
        )
        account_store.get_connected_accounts.return_value = [bank_account, brokerage_account]

        history = await service.generate_history('user-1', Period.ONE_DAY, now=now)

        assert set(values(history)) == {Decimal('1000.00')}

    @pytest.mark.asyncio
    async def test_slow_credential_lookup_does_not_block_other_accounts(self, account_store, snaptrade_source,
                                                                        settings, bank_account,
                                                                        brokerage_account, now):
        def slow_execute():
            time.sleep(0.5)
            return Mock(data=[{'access_token': 'token-abc'}])

        client = MagicMock()
        client.table.return_value.select.return_value.eq.return_value.execute.side_effect = slow_execute
        teller = TellerDataSource(SupabaseAccountStore(client=client), settings, session=MagicMock())
        fast_settings = dataclasses.replace(settings, account_timeout_seconds=0.05)
        service = PortfolioHistoryService(account_store, [teller, snaptrade_source], fast_settings)
        second_bank = dataclasses.replace(bank_account, id='acc-bank-2', external_account_id='teller-bank-2')
        account_store.get_connected_accounts.return_value = [bank_account, second_bank, brokerage_account]

        started = time.monotonic()
        history = await service.generate_history('user-1', Period.ONE_DAY, now=now)
        elapsed = time.monotonic() - started

        assert elapsed < 0.4
        assert set(values(history)) == {Decimal('5000.00')}

    @pytest.mark.asyncio
    async def test_all_accounts_failing_yields_zero_series(self, service, account_store, teller_source,
                                                           bank_account, now):
        account_store.get_connected_accounts.return_value = [bank_account]
        teller_source.errors_by_account['teller-bank-1'] = ProviderError('down', 'teller')

        history = await service.generate_history('user-1', Period.ONE_DAY, now=now)

        assert len(history) == 25
        assert set(values(history)) == {Decimal('0.00')}

    @pytest.mark.asyncio
    async def test_account_store_failure_returns_empty(self, service, account_store, now):
        account_store.get_connected_accounts.side_effect = Exception('database unavailable')
        assert await service.generate_history('user-1', Period.ONE_DAY, now=now) == []

    @pytest.mark.asyncio
    async def test_no_accounts_returns_empty(self, service, account_store, now):
        account_store.get_connected_accounts.return_value = []
        assert await service.generate_history('user-1', Period.ONE_DAY, now=now) == []

    @pytest.mark.asyncio
    async def test_unregistered_provider_contributes_flat_balance(self, account_store, teller_source,
                                                                  settings, bank_account,
                                                                  brokerage_account, now):
        service = PortfolioHistoryService(account_store, {Provider.BANK_AGGREGATOR: teller_source}, settings)
        account_store.get_connected_accounts.return_value = [bank_account, brokerage_account]

        history = await service.generate_history('user-1', Period.ONE_DAY, now=now)

        assert set(values(history)) == {Decimal('6000.00')}


class TestCredentialSharing:

    @pytest.mark.asyncio
    async def test_credentials_resolved_once_per_provider(self, service, account_store, teller_source,
                                                          snaptrade_source, bank_account, card_account,
                                                          brokerage_account, now):
        account_store.get_connected_accounts.return_value = [bank_account, card_account, brokerage_account]

        await service.generate_history('user-1', Period.ONE_DAY, now=now)

        assert teller_source.credential_lookups == 1
        assert snaptrade_source.credential_lookups == 1
        assert {call[3] for call in teller_source.calls} == {'teller-credentials-user-1'}
        assert snaptrade_source.calls[0][3] == 'snaptrade-credentials-user-1'

    @pytest.mark.asyncio
    async def test_teller_token_queried_once_for_many_accounts(self, account_store, settings, bank_account,
                                                               card_account, now):
        teller = TellerDataSource(account_store, settings, session=MagicMock())
        service = PortfolioHistoryService(account_store, [teller], settings)
        account_store.get_connected_accounts.return_value = [bank_account, card_account]

        with patch.object(teller, 'fetch_transactions', new_callable=AsyncMock) as mock_fetch:
            mock_fetch.return_value = []
            await service.generate_history('user-1', Period.ONE_DAY, now=now)

        account_store.get_teller_access_token.assert_awaited_once_with('user-1')
        assert mock_fetch.await_count == 2
        assert {c.args[0] for c in mock_fetch.await_args_list} == {'token-abc'}

    @pytest.mark.asyncio
    async def test_missing_token_fails_every_account_of_that_provider(self, account_store, settings,
                                                                      snaptrade_source, bank_account,
                                                                      card_account, brokerage_account, now):
        teller = TellerDataSource(account_store, settings, session=MagicMock())
        service = PortfolioHistoryService(account_store, [teller, snaptrade_source], settings)
        account_store.get_teller_access_token.return_value = None
        account_store.get_connected_accounts.return_value = [bank_account, card_account, brokerage_account]

        history = await service.generate_history('user-1', Period.ONE_DAY, now=now)

        account_store.get_teller_access_token.assert_awaited_once_with('user-1')
        assert set(values(history)) == {Decimal('5000.00')}


class TestServiceWiring:

    def test_factory_registers_both_providers(self, settings):
        with patch('networth_history.providers.account_store.SupabaseAccountStore') as mock_store:
            service = get_portfolio_history_service(settings)

        mock_store.assert_called_once_with(settings=settings)
        assert set(service.data_sources) == {Provider.BANK_AGGREGATOR, Provider.BROKERAGE_AGGREGATOR}
        assert service.settings is settings

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, account_store, settings, stub_source_factory, now):
        in_flight = 0
        peak = 0

        class CountingSource(stub_source_factory):
            async def fetch_raw_transactions(self, user_id, account, lookback_days, now=None, credentials=None):
                nonlocal in_flight, peak
                in_flight += 1
                peak = max(peak, in_flight)
                await asyncio.sleep(0.01)
                in_flight -= 1
                return []

        accounts = [
            ConnectedAccount(
                id=f'acc-{i}', provider=Provider.BANK_AGGREGATOR, external_account_id=f'ext-{i}',
                account_type=AccountType.BANK, current_balance=Decimal('1')
            )
            for i in range(6)
        ]
        account_store.get_connected_accounts.return_value = accounts
        service = PortfolioHistoryService(account_store, [CountingSource(Provider.BANK_AGGREGATOR)], settings)

        history = await service.generate_history('user-1', Period.ONE_DAY, now=now)

        assert peak <= settings.max_concurrency
        assert set(values(history)) == {Decimal('6.00')}
