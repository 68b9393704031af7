"""
Response models for the portfolio history contract.

The HTTP layer serializes generate_history() results as
{period, dataPoints: [{timestamp, value}], currency}.
"""

from typing import List, Sequence, Union

from pydantic import BaseModel, Field

from .services.balance_reconstructor import HistoricalDataPoint, format_timestamp
from .services.period_config import Period, parse_period


class HistoryDataPoint(BaseModel):
    timestamp: str = Field(..., description="ISO-8601 UTC timestamp of the bucket")
    value: float = Field(..., description="Aggregate net worth at the bucket, rounded to cents")


class PortfolioHistoryResponse(BaseModel):
    period: str = Field(..., description="Chart period: 1D, 1W, 1M, 3M or 1Y")
    dataPoints: List[HistoryDataPoint] = Field(default_factory=list, description="Chronological series")
    currency: str = Field("USD", description="ISO currency code of the values")

    @classmethod
    def from_points(cls, period: Union[Period, str], points: Sequence[HistoricalDataPoint],
                    currency: str = "USD") -> 'PortfolioHistoryResponse':
        """Build the response from engine output; rejects unknown periods."""
        return cls(
            period=parse_period(period).value,
            dataPoints=[
                HistoryDataPoint(timestamp=format_timestamp(point.timestamp), value=float(point.value))
                for point in points
            ],
            currency=currency,
        )
