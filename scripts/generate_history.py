#!/usr/bin/env python3
"""
Generate the aggregate net-worth history for one user.

Runs a single aggregation against the configured Supabase, Teller and
SnapTrade environments and prints the chart payload.

Usage:
    python scripts/generate_history.py <user_id> [--period 1M] [--json]
"""

import argparse
import asyncio
import json
import logging
import sys

from networth_history.config import load_settings
from networth_history.schemas import PortfolioHistoryResponse
from networth_history.services.period_config import Period, parse_period
from networth_history.services.portfolio_history_service import get_portfolio_history_service


async def run(user_id: str, period: Period, as_json: bool) -> int:
    settings = load_settings()
    service = get_portfolio_history_service(settings)
    points = await service.generate_history(user_id, period)
    response = PortfolioHistoryResponse.from_points(period, points, settings.currency)

    if as_json:
        print(json.dumps(response.model_dump(), indent=2))
        return 0

    print("=" * 60)
    print(f"NET WORTH HISTORY  user={user_id}  period={period.value}")
    print("=" * 60)
    if not response.dataPoints:
        print("No data points (no accounts could be resolved).")
        return 1
    for point in response.dataPoints:
        print(f"{point.timestamp:<26} {point.value:>18,.2f} {response.currency}")
    print("=" * 60)
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Generate aggregate net-worth history for a user")
    parser.add_argument("user_id", help="User ID to generate history for")
    parser.add_argument("--period", default="1M", help="1D, 1W, 1M, 3M or 1Y (default: 1M)")
    parser.add_argument("--json", action="store_true", help="Print the JSON response payload")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        period = parse_period(args.period)
    except ValueError as e:
        parser.error(str(e))

    return asyncio.run(run(args.user_id, period, args.json))


if __name__ == "__main__":
    sys.exit(main())
