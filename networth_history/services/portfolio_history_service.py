"""
Portfolio History Service

Aggregates every connected account of a user into one gap-free, evenly spaced
net-worth series for charting.

Algorithm Overview:
1. Resolve the period's sampling configuration
2. Build the shared timestamp grid ONCE so every account lands on identical keys
3. Resolve the user's connected accounts
4. Per account, concurrently: credentials (one lookup per provider) -> fetch raw feed
   -> normalize -> reconstruct -> bucketize
5. Reduce the per-account series sequentially into the grid-keyed accumulator
6. Emit the accumulator in grid order, rounded to cents

Failures are contained per account; only an account-store failure degrades the
whole response, and then to an empty series rather than an error.
"""

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from ..config import HistorySettings, load_settings
from ..providers.abstract_provider import AbstractAccountDataSource, ConnectedAccount, Provider
from .balance_reconstructor import HistoricalDataPoint, reconstruct, round_money
from .period_config import Period, config_for
from .time_bucketizer import build_grid, bucketize_onto_grid, floor_to_interval
from .transaction_normalizer import normalize_transactions

logger = logging.getLogger(__name__)


class PortfolioHistoryService:
    """
    Net-worth history engine.

    Stateless apart from its collaborators: every call builds its own grid and
    accumulator and discards them once the series is returned.
    """

    def __init__(self, account_store, data_sources: Union[Mapping[Provider, AbstractAccountDataSource],
                                                          List[AbstractAccountDataSource]],
                 settings: Optional[HistorySettings] = None):
        """
        Args:
            account_store: Object exposing async get_connected_accounts(user_id)
            data_sources: One data source per provider (mapping or list, keyed by source.provider)
            settings: Concurrency, timeout and failure policy (defaults from environment)
        """
        self.account_store = account_store
        if isinstance(data_sources, Mapping):
            self.data_sources = {Provider(key): source for key, source in data_sources.items()}
        else:
            self.data_sources = {source.provider: source for source in data_sources}
        self.settings = settings or load_settings()

    async def generate_history(self, user_id: str, period: Union[Period, str],
                               now: Optional[datetime] = None) -> List[HistoricalDataPoint]:
        """
        Generate the aggregate net-worth series for a user.

        Args:
            user_id: User to build history for
            period: Chart window ('1D', '1W', '1M', '3M', '1Y'); unknown values fall back to 1D
            now: Reference time (defaults to the current UTC time)

        Returns:
            bucket_count + 1 chronological points, or [] when no accounts can be resolved
        """
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        config = config_for(period)
        grid = build_grid(config, floor_to_interval(now, config))

        try:
            accounts = await self.account_store.get_connected_accounts(user_id)
        except Exception as e:
            logger.error(f"Could not resolve connected accounts for user {user_id}: {e}")
            return []

        if not accounts:
            logger.warning(f"No connected accounts for portfolio history (user {user_id})")
            return []

        semaphore = asyncio.Semaphore(self.settings.max_concurrency)
        # One credential lookup per provider per request, shared by that provider's accounts
        credential_tasks: Dict[Provider, asyncio.Future] = {}

        async def process(account: ConnectedAccount) -> Optional[List[HistoricalDataPoint]]:
            async with semaphore:
                return await self._process_account(
                    user_id, account, config.lookback_days, grid, now, credential_tasks
                )

        try:
            results = await asyncio.gather(*(process(account) for account in accounts), return_exceptions=True)
        finally:
            for task in credential_tasks.values():
                if not task.done():
                    task.cancel()

        accumulator: Dict[datetime, Decimal] = {ts: Decimal('0') for ts in grid}
        contributing = 0
        for account, series in zip(accounts, results):
            if isinstance(series, BaseException):
                # _process_account contains its own failures; this is a programming error
                logger.error(f"Unexpected error processing account {account.id}: {series!r}")
                continue
            if series is None:
                continue
            contributing += 1
            for point in series:
                accumulator[point.timestamp] += point.value

        history = [HistoricalDataPoint(timestamp=ts, value=round_money(accumulator[ts])) for ts in grid]

        logger.info(
            f"Portfolio history generated for user {user_id}: {len(history)} data points, "
            f"period {getattr(period, 'value', period)}, {contributing}/{len(accounts)} accounts contributing"
        )
        return history

    async def _process_account(self, user_id: str, account: ConnectedAccount, lookback_days: int,
                               grid: List[datetime], now: datetime,
                               credential_tasks: Dict[Provider, asyncio.Future]) -> Optional[List[HistoricalDataPoint]]:
        """
        Build one account's bucketized series on the shared grid.

        Returns None when the account should contribute nothing.
        """
        source = self.data_sources.get(account.provider)
        if source is None:
            logger.warning(
                f"No data source registered for provider {account.provider.value}; "
                f"account {account.id} contributes a flat current balance"
            )
            return self._flat_series(account, grid)

        try:
            raw_transactions = await asyncio.wait_for(
                self._fetch_account(source, user_id, account, lookback_days, now, credential_tasks),
                timeout=self.settings.account_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Timed out after {self.settings.account_timeout_seconds}s fetching "
                f"{account.provider.value} transactions for account {account.id}"
            )
            return self._failed_account_series(account, grid)
        except Exception as e:
            logger.error(
                f"Error fetching {account.provider.value} transactions for account {account.id}: {e}"
            )
            return self._failed_account_series(account, grid)

        transactions = normalize_transactions(raw_transactions, account.account_type, account.id)
        if not transactions:
            return self._flat_series(account, grid)

        history = reconstruct(transactions, account.current_balance, now)
        return bucketize_onto_grid(history, grid)

    @staticmethod
    async def _fetch_account(source: AbstractAccountDataSource, user_id: str, account: ConnectedAccount,
                             lookback_days: int, now: datetime,
                             credential_tasks: Dict[Provider, asyncio.Future]) -> List[Dict[str, Any]]:
        task = credential_tasks.get(source.provider)
        if task is None:
            task = asyncio.ensure_future(source.resolve_credentials(user_id))
            credential_tasks[source.provider] = task
        # Shielded so one account timing out does not cancel the lookup its siblings await
        credentials = await asyncio.shield(task)
        return await source.fetch_raw_transactions(user_id, account, lookback_days, now, credentials=credentials)

    def _failed_account_series(self, account: ConnectedAccount,
                               grid: List[datetime]) -> Optional[List[HistoricalDataPoint]]:
        if self.settings.failed_account_policy == 'flat':
            return self._flat_series(account, grid)
        return None

    @staticmethod
    def _flat_series(account: ConnectedAccount, grid: List[datetime]) -> List[HistoricalDataPoint]:
        """No historical variation known: current balance at every grid point."""
        return bucketize_onto_grid([], grid, default=account.current_balance)


def get_portfolio_history_service(settings: Optional[HistorySettings] = None) -> PortfolioHistoryService:
    """Wire the service with the Supabase store and the Teller and SnapTrade sources."""
    from ..providers.account_store import SupabaseAccountStore
    from ..providers.snaptrade_provider import SnapTradeDataSource
    from ..providers.teller_provider import TellerDataSource

    settings = settings or load_settings()
    store = SupabaseAccountStore(settings=settings)
    return PortfolioHistoryService(
        account_store=store,
        data_sources=[
            TellerDataSource(store, settings),
            SnapTradeDataSource(store, settings),
        ],
        settings=settings,
    )
