"""
History engine: period configuration, normalization, reconstruction,
bucketing and cross-account aggregation.
"""

from .period_config import Period, PeriodConfig, config_for, parse_period
from .transaction_normalizer import (
    AccountType,
    NormalizedTransaction,
    TransactionNormalizationError,
    normalize,
    normalize_transactions
)
from .balance_reconstructor import HistoricalDataPoint, reconstruct
from .time_bucketizer import build_grid, bucketize, bucketize_onto_grid, floor_to_interval

__all__ = [
    'Period',
    'PeriodConfig',
    'config_for',
    'parse_period',
    'AccountType',
    'NormalizedTransaction',
    'TransactionNormalizationError',
    'normalize',
    'normalize_transactions',
    'HistoricalDataPoint',
    'reconstruct',
    'build_grid',
    'bucketize',
    'bucketize_onto_grid',
    'floor_to_interval'
]
