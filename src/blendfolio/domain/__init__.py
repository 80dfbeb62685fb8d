"""Pure reconstruction logic over in-memory events, rates and prices.

This package provides:
- Rate index and price resolution with forward fill
- Balance history reconstruction and earnings statistics
- Cost basis, Q4W aggregation and realized yield reports
"""

from blendfolio.domain.balances import BalanceHistory, BalanceSnapshot, reconstruct_balance_history
from blendfolio.domain.cost_basis import CostBasisReport, build_cost_basis_report
from blendfolio.domain.prices import PriceTable, resolve_prices
from blendfolio.domain.q4w import Q4WReport, build_q4w_report
from blendfolio.domain.rates import RateIndexResolver, RateLookup
from blendfolio.domain.yield_report import YieldReport, build_yield_report

__all__ = [
    "BalanceHistory",
    "BalanceSnapshot",
    "reconstruct_balance_history",
    "CostBasisReport",
    "build_cost_basis_report",
    "PriceTable",
    "resolve_prices",
    "Q4WReport",
    "build_q4w_report",
    "RateIndexResolver",
    "RateLookup",
    "YieldReport",
    "build_yield_report",
]
