"""
Environment-based configuration for the portfolio history engine.

Settings are read from the process environment (and a local .env file when
present) every time load_settings() is called, so tests and long-running
workers always see the current environment.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

FAILED_ACCOUNT_POLICIES = ('omit', 'flat')


@dataclass(frozen=True)
class HistorySettings:
    """Runtime configuration for providers and the aggregation engine."""
    # Teller (bank-aggregator)
    teller_base_url: str = 'https://api.teller.io'
    teller_environment: str = 'development'
    teller_cert: Optional[str] = None
    teller_private_key: Optional[str] = None
    teller_page_size: int = 500
    teller_max_pages: int = 20

    # SnapTrade (brokerage-aggregator)
    snaptrade_consumer_key: Optional[str] = None
    snaptrade_client_id: Optional[str] = None
    snaptrade_page_size: int = 1000
    snaptrade_max_pages: int = 20

    # Supabase (account store)
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None

    # Retry discipline shared by provider adapters
    provider_max_attempts: int = 3
    provider_base_delay_seconds: float = 1.0
    provider_max_delay_seconds: float = 10.0
    provider_jitter_seconds: float = 0.5

    # Aggregation
    max_concurrency: int = 5
    account_timeout_seconds: float = 20.0
    failed_account_policy: str = 'omit'
    currency: str = 'USD'


def _parse_int_env(env_var: str, default: int) -> int:
    """Parse a positive integer environment variable, falling back on bad input."""
    raw = os.getenv(env_var)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid integer for {env_var}={raw!r}, using default {default}")
        return default
    if value <= 0:
        logger.warning(f"{env_var} must be positive (got {value}), using default {default}")
        return default
    return value


def _parse_float_env(env_var: str, default: float) -> float:
    """Parse a non-negative float environment variable, falling back on bad input."""
    raw = os.getenv(env_var)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid number for {env_var}={raw!r}, using default {default}")
        return default
    if value < 0:
        logger.warning(f"{env_var} must not be negative (got {value}), using default {default}")
        return default
    return value


def _parse_policy_env(env_var: str, default: str) -> str:
    value = os.getenv(env_var, default).lower().strip()
    if value not in FAILED_ACCOUNT_POLICIES:
        logger.warning(
            f"Unknown {env_var}={value!r}, expected one of {FAILED_ACCOUNT_POLICIES}; using '{default}'"
        )
        return default
    return value


def load_settings(load_env_file: bool = True) -> HistorySettings:
    """
    Build settings from environment variables.

    Args:
        load_env_file: Whether to load a .env file first (existing variables win)

    Returns:
        HistorySettings populated from the environment with defaults applied
    """
    if load_env_file:
        load_dotenv()

    return HistorySettings(
        teller_base_url=os.getenv('TELLER_BASE_URL', 'https://api.teller.io').rstrip('/'),
        teller_environment=os.getenv('TELLER_ENVIRONMENT', 'development').lower().strip(),
        teller_cert=os.getenv('TELLER_CERT') or None,
        teller_private_key=os.getenv('TELLER_PRIVATE_KEY') or None,
        teller_page_size=_parse_int_env('TELLER_PAGE_SIZE', 500),
        teller_max_pages=_parse_int_env('TELLER_MAX_PAGES', 20),
        snaptrade_consumer_key=os.getenv('SNAPTRADE_CONSUMER_KEY') or None,
        snaptrade_client_id=os.getenv('SNAPTRADE_CLIENT_ID') or None,
        snaptrade_page_size=_parse_int_env('SNAPTRADE_PAGE_SIZE', 1000),
        snaptrade_max_pages=_parse_int_env('SNAPTRADE_MAX_PAGES', 20),
        supabase_url=os.getenv('SUPABASE_URL') or None,
        supabase_service_key=os.getenv('SUPABASE_SERVICE_ROLE_KEY') or None,
        provider_max_attempts=_parse_int_env('PROVIDER_MAX_ATTEMPTS', 3),
        provider_base_delay_seconds=_parse_float_env('PROVIDER_BASE_DELAY_SECONDS', 1.0),
        provider_max_delay_seconds=_parse_float_env('PROVIDER_MAX_DELAY_SECONDS', 10.0),
        provider_jitter_seconds=_parse_float_env('PROVIDER_JITTER_SECONDS', 0.5),
        max_concurrency=_parse_int_env('HISTORY_MAX_CONCURRENCY', 5),
        account_timeout_seconds=_parse_float_env('HISTORY_ACCOUNT_TIMEOUT_SECONDS', 20.0),
        failed_account_policy=_parse_policy_env('HISTORY_FAILED_ACCOUNT_POLICY', 'omit'),
        currency=os.getenv('HISTORY_CURRENCY', 'USD').upper().strip() or 'USD',
    )
