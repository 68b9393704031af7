"""
Net-worth history engine.

Reconstructs and aggregates the balance history of a user's connected bank,
card and brokerage accounts into one chartable series.
"""

from .services.period_config import Period, PeriodConfig, config_for
from .services.balance_reconstructor import HistoricalDataPoint
from .services.portfolio_history_service import PortfolioHistoryService, get_portfolio_history_service

__all__ = [
    'Period',
    'PeriodConfig',
    'config_for',
    'HistoricalDataPoint',
    'PortfolioHistoryService',
    'get_portfolio_history_service'
]
