"""
Supabase-backed account and credential store.

Resolves a user's connected accounts (with current balances) and the provider
credentials needed to fetch their transaction feeds. Read-only: the history
engine never writes here.

The supabase client is synchronous; every query runs in a worker thread so a
slow lookup never blocks the event loop.
"""

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from ..config import HistorySettings
from ..services.transaction_normalizer import AccountType
from .abstract_provider import ConnectedAccount, Provider

logger = logging.getLogger(__name__)

# Teller reports credit cards as type 'credit' / subtype 'credit_card'
_CARD_TYPES = {'card', 'credit', 'credit_card'}


class AccountStoreError(Exception):
    """Raised when accounts or credentials cannot be resolved at all."""

    def __init__(self, message: str, user_id: Optional[str] = None,
                 original_error: Optional[Exception] = None):
        self.message = message
        self.user_id = user_id
        self.original_error = original_error
        super().__init__(message)


def get_supabase_client(settings: HistorySettings) -> Client:
    """
    Create a Supabase client using the service role key.

    Raises:
        AccountStoreError: If the Supabase URL or key is not configured
    """
    if not settings.supabase_url or not settings.supabase_service_key:
        raise AccountStoreError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in environment")
    try:
        return create_client(settings.supabase_url, settings.supabase_service_key)
    except Exception as e:
        logger.error(f"Failed to create Supabase client: {e}")
        raise AccountStoreError(f"Failed to create Supabase client: {e}", original_error=e)


def _parse_provider(raw: Any) -> Optional[Provider]:
    try:
        return Provider(str(raw).lower().strip())
    except ValueError:
        return None


def _parse_account_type(raw: Any, provider: Provider) -> AccountType:
    if provider is Provider.BROKERAGE_AGGREGATOR:
        return AccountType.BROKERAGE
    if str(raw or '').lower().strip() in _CARD_TYPES:
        return AccountType.CARD
    return AccountType.BANK


def _parse_balance(raw: Any, account_id: str) -> Decimal:
    if raw is None or raw == '':
        return Decimal('0')
    try:
        balance = Decimal(str(raw))
    except InvalidOperation:
        logger.warning(f"Unparsable balance {raw!r} for account {account_id}, treating as 0")
        return Decimal('0')
    if not balance.is_finite():
        logger.warning(f"Non-finite balance {raw!r} for account {account_id}, treating as 0")
        return Decimal('0')
    return balance


class SupabaseAccountStore:
    """Account and credential lookups against Supabase tables."""

    def __init__(self, client: Optional[Client] = None, settings: Optional[HistorySettings] = None):
        self._client = client
        self._settings = settings

    def _get_client(self) -> Client:
        """Lazy load Supabase client."""
        if self._client is None:
            if self._settings is None:
                raise AccountStoreError("No Supabase client or settings provided")
            self._client = get_supabase_client(self._settings)
        return self._client

    async def get_connected_accounts(self, user_id: str) -> List[ConnectedAccount]:
        """
        Get every connected account for a user.

        Rows for unknown providers or without an external account ID are
        skipped with a warning.

        Raises:
            AccountStoreError: If the accounts cannot be read
        """
        try:
            query = self._get_client().table('connected_accounts')\
                .select('id, user_id, provider, external_account_id, account_type, balance, name')\
                .eq('user_id', user_id)
            result = await asyncio.to_thread(query.execute)
        except AccountStoreError:
            raise
        except Exception as e:
            logger.error(f"Error fetching connected accounts for user {user_id}: {e}")
            raise AccountStoreError(f"Failed to fetch connected accounts: {e}", user_id, e)

        accounts = []
        for row in result.data or []:
            account_id = str(row.get('id'))
            provider = _parse_provider(row.get('provider'))
            if provider is None:
                logger.warning(f"Skipping account {account_id}: unsupported provider {row.get('provider')!r}")
                continue
            if not row.get('external_account_id'):
                logger.warning(f"Skipping account {account_id}: missing external account ID")
                continue

            accounts.append(ConnectedAccount(
                id=account_id,
                provider=provider,
                external_account_id=str(row['external_account_id']),
                account_type=_parse_account_type(row.get('account_type'), provider),
                current_balance=_parse_balance(row.get('balance'), account_id),
                user_id=user_id,
                name=row.get('name'),
            ))

        logger.info(f"Resolved {len(accounts)} connected accounts for user {user_id}")
        return accounts

    async def get_teller_access_token(self, user_id: str) -> Optional[str]:
        """Get the user's Teller access token, or None if not linked."""
        try:
            query = self._get_client().table('teller_users')\
                .select('access_token')\
                .eq('user_id', user_id)
            result = await asyncio.to_thread(query.execute)
        except AccountStoreError:
            raise
        except Exception as e:
            logger.error(f"Error getting Teller access token for user {user_id}: {e}")
            raise AccountStoreError(f"Failed to fetch Teller credentials: {e}", user_id, e)

        if not result.data:
            logger.warning(f"No Teller access token found for user {user_id}")
            return None
        return result.data[0].get('access_token')

    async def get_snaptrade_credentials(self, user_id: str) -> Optional[Dict[str, str]]:
        """Get SnapTrade user credentials, or None if not registered."""
        try:
            query = self._get_client().table('snaptrade_users')\
                .select('snaptrade_user_id, snaptrade_user_secret')\
                .eq('user_id', user_id)
            result = await asyncio.to_thread(query.execute)
        except AccountStoreError:
            raise
        except Exception as e:
            logger.error(f"Error getting SnapTrade credentials for user {user_id}: {e}")
            raise AccountStoreError(f"Failed to fetch SnapTrade credentials: {e}", user_id, e)

        if not result.data:
            logger.warning(f"No SnapTrade credentials found for user {user_id}")
            return None

        return {
            'snaptrade_user_id': result.data[0]['snaptrade_user_id'],
            'user_secret': result.data[0]['snaptrade_user_secret']
        }
