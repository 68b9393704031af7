"""
Account data sources for multi-provider history reconstruction.

This package provides the data source contract and its bank (Teller) and
brokerage (SnapTrade) implementations, plus the Supabase-backed account store.
"""

from .abstract_provider import (
    AbstractAccountDataSource,
    ConnectedAccount,
    Provider,
    ProviderError
)

__all__ = [
    'AbstractAccountDataSource',
    'ConnectedAccount',
    'Provider',
    'ProviderError'
]
