"""Average-cost accounting over deposit / withdrawal flows.

This module provides:
- `price_flows`: classify events as deposits or withdrawals and attach the
  USD price resolved for each event's local date.
- `compute_cost_basis`: the average-cost `CostBasisRecord` of one position.
- `compute_yield_breakdown`: mark-to-market split of unrealized yield.
- `realized_yield` / `roi` / `annualized_roi`: cash-flow metrics.
- `build_cost_basis_report`: every (pool, asset) pair of a user, with
  per-pair failure isolation.

Design notes
------------
- Deposits dated "today" in the caller's timezone are repriced at the live
  price when one is given; withdrawals never are.
- Withdrawals remove cost at the weighted average deposit price, so the
  realized side of a withdrawal never leaks into the cost basis.
- Backstop positions are costed the same way, in LP tokens.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Literal
from zoneinfo import ZoneInfo

from blendfolio.constants import (
    DEPOSIT,
    LP_TOKEN_ADDRESS,
    POOL_DEPOSIT_ACTIONS,
    POOL_WITHDRAW_ACTIONS,
)
from blendfolio.core.errors import BlendfolioError, DataGapWarning, require_identifier
from blendfolio.core.models import Event, EventSource, PriceSource, num, to_jsonable
from blendfolio.domain.prices import PriceTable
from blendfolio.domain.timezones import local_date_of

logger = logging.getLogger(__name__)

FlowKind = Literal["deposit", "withdraw"]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class PricedFlow:
    kind: FlowKind
    pool_id: str
    asset_address: str
    date: date  # local date
    tokens: float
    price: float
    price_source: PriceSource | Literal["live"]

    @property
    def usd(self) -> float:
        return self.tokens * self.price


@dataclass(slots=True, frozen=True)
class CostBasisRecord:
    pool_id: str
    asset_address: str
    cost_basis: float
    weighted_avg_deposit_price: float
    net_tokens: float
    deposited_tokens: float = 0.0
    withdrawn_tokens: float = 0.0
    deposited_usd: float = 0.0
    withdrawn_usd: float = 0.0
    cost_removed_by_withdrawals: float = 0.0
    source: EventSource = "pool"

    @property
    def key(self) -> str:
        return asset_key(self.pool_id, self.asset_address)

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)


@dataclass(slots=True, frozen=True)
class YieldBreakdown:
    """Unrealized yield of a position at the current balance and price."""

    cost_basis: float
    weighted_avg_deposit_price: float
    net_tokens: float
    current_balance_tokens: float
    current_price: float
    current_value_usd: float
    protocol_yield_tokens: float
    protocol_yield_usd: float
    price_change_usd: float
    price_change_percent: float
    total_earned_usd: float
    total_earned_percent: float

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(self)


@dataclass(slots=True, frozen=True)
class PairFailure:
    key: str
    error_type: str
    message: str


@dataclass(slots=True)
class CostBasisReport:
    by_asset_key: dict[str, CostBasisRecord] = field(default_factory=dict)
    breakdowns: dict[str, YieldBreakdown] = field(default_factory=dict)
    failures: list[PairFailure] = field(default_factory=list)
    gaps: list[DataGapWarning] = field(default_factory=list)

    @property
    def totals(self) -> dict[str, float]:
        records = self.by_asset_key.values()
        return {
            "cost_basis": sum(r.cost_basis for r in records),
            "deposited_usd": sum(r.deposited_usd for r in records),
            "withdrawn_usd": sum(r.withdrawn_usd for r in records),
            "current_value_usd": sum(b.current_value_usd for b in self.breakdowns.values()),
            "protocol_yield_usd": sum(b.protocol_yield_usd for b in self.breakdowns.values()),
            "price_change_usd": sum(b.price_change_usd for b in self.breakdowns.values()),
            "total_earned_usd": sum(b.total_earned_usd for b in self.breakdowns.values()),
            "positions": float(len(self.by_asset_key)),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "by_asset_key": {k: r.to_dict() for k, r in sorted(self.by_asset_key.items())},
            "breakdowns": {k: b.to_dict() for k, b in sorted(self.breakdowns.items())},
            "totals": self.totals,
            "failures": to_jsonable(self.failures),
            "gaps": [g.to_dict() for g in self.gaps],
        }


def asset_key(pool_id: str, asset_address: str) -> str:
    return f"{pool_id}-{asset_address}"


# ---------------------------------------------------------------------------
# Flow classification & pricing
# ---------------------------------------------------------------------------


def flow_kind(event: Event) -> FlowKind | None:
    """Deposit / withdrawal kind of a lending or backstop event, else None."""
    if event.action_type in POOL_DEPOSIT_ACTIONS or event.action_type == DEPOSIT:
        return "deposit"
    if event.action_type in POOL_WITHDRAW_ACTIONS:  # includes backstop `withdraw`
        return "withdraw"
    return None


def pool_token(event: Event) -> tuple[str | None, float]:
    return event.asset_address, num(event.amount_tokens)


def backstop_token(event: Event) -> tuple[str | None, float]:
    return LP_TOKEN_ADDRESS, num(event.lp_tokens)


def flow_price_pairs(
    events: Iterable[Event],
    tz: str | ZoneInfo,
    token_of: Callable[[Event], tuple[str | None, float]] = pool_token,
) -> set[tuple[str, date]]:
    """`(token, local date)` pairs needed to price every flow in `events`."""
    pairs: set[tuple[str, date]] = set()
    for ev in events:
        token, _ = token_of(ev)
        if token and flow_kind(ev):
            pairs.add((token, local_date_of(ev.ledger_closed_at, tz)))
    return pairs


def price_flows(
    events: Iterable[Event],
    prices: PriceTable,
    tz: str | ZoneInfo,
    *,
    today: date | None = None,
    live_price: float | None = None,
    token_of: Callable[[Event], tuple[str | None, float]] = pool_token,
) -> list[PricedFlow]:
    """Classify and price `events`; non-flow events are skipped."""
    flows: list[PricedFlow] = []
    for ev in sorted(events, key=lambda e: e.sort_key):
        kind = flow_kind(ev)
        token, tokens = token_of(ev)
        if kind is None or not token:
            continue
        pool_id = require_identifier(ev.pool_id, "pool")
        on = local_date_of(ev.ledger_closed_at, tz)
        if kind == "deposit" and today is not None and on == today and live_price is not None:
            price, source = float(live_price), "live"
        else:
            resolved = prices.get(token, on)
            price = resolved.price if resolved else 0.0
            source = resolved.source if resolved else "live_fallback"
        flows.append(
            PricedFlow(
                kind=kind,
                pool_id=pool_id,
                asset_address=token,
                date=on,
                tokens=abs(tokens),
                price=price,
                price_source=source,
            )
        )
    return flows


# ---------------------------------------------------------------------------
# Average cost
# ---------------------------------------------------------------------------


def compute_cost_basis(
    flows: Iterable[PricedFlow],
    *,
    pool_id: str,
    asset_address: str,
    live_price: float | None = None,
    source: EventSource = "pool",
) -> CostBasisRecord:
    """Average-cost basis of one position.

    Parameters
    ----------
    flows : Iterable[PricedFlow]
        Priced deposits and withdrawals of the position.
    live_price : float | None
        Used as the weighted average price when there are no deposits.

    Returns
    -------
    CostBasisRecord
        All-zero amounts for an empty flow list.
    """
    dep_tokens = dep_usd = wd_tokens = wd_usd = 0.0
    for f in flows:
        if f.kind == "deposit":
            dep_tokens += f.tokens
            dep_usd += f.usd
        else:
            wd_tokens += f.tokens
            wd_usd += f.usd

    wavg = dep_usd / dep_tokens if dep_tokens > 0 else float(live_price or 0.0)
    removed = wd_tokens * wavg
    return CostBasisRecord(
        pool_id=pool_id,
        asset_address=asset_address,
        cost_basis=dep_usd - removed,
        weighted_avg_deposit_price=wavg,
        net_tokens=dep_tokens - wd_tokens,
        deposited_tokens=dep_tokens,
        withdrawn_tokens=wd_tokens,
        deposited_usd=dep_usd,
        withdrawn_usd=wd_usd,
        cost_removed_by_withdrawals=removed,
        source=source,
    )


def compute_yield_breakdown(
    record: CostBasisRecord,
    current_balance_tokens: float,
    current_price: float,
) -> YieldBreakdown:
    """Split unrealized yield into protocol accrual and price movement."""
    current_value = current_balance_tokens * current_price
    protocol_tokens = current_balance_tokens - record.net_tokens
    wavg = record.weighted_avg_deposit_price
    price_change = record.net_tokens * (current_price - wavg)
    total_earned = current_value - record.cost_basis
    return YieldBreakdown(
        cost_basis=record.cost_basis,
        weighted_avg_deposit_price=wavg,
        net_tokens=record.net_tokens,
        current_balance_tokens=current_balance_tokens,
        current_price=current_price,
        current_value_usd=current_value,
        protocol_yield_tokens=protocol_tokens,
        protocol_yield_usd=protocol_tokens * current_price,
        price_change_usd=price_change,
        price_change_percent=(current_price - wavg) / wavg * 100 if wavg > 0 else 0.0,
        total_earned_usd=total_earned,
        total_earned_percent=total_earned / record.cost_basis * 100 if record.cost_basis > 0 else 0.0,
    )


# ---------------------------------------------------------------------------
# Cash-flow metrics
# ---------------------------------------------------------------------------


def realized_yield(deposited_usd: float, withdrawn_usd: float) -> float:
    return withdrawn_usd - deposited_usd


def roi(realized_pnl: float, total_deposited_usd: float) -> float | None:
    """Realized P&L as a percentage of deposits; None without deposits."""
    if total_deposited_usd <= 0:
        return None
    return realized_pnl / total_deposited_usd * 100


def annualized_roi(roi_percent: float | None, days_active: int) -> float | None:
    """`((1 + roi/100)^(365/days) - 1) * 100`; None when undefined."""
    if roi_percent is None or days_active <= 0 or roi_percent <= -100:
        return None
    return ((1 + roi_percent / 100) ** (365 / days_active) - 1) * 100


# ---------------------------------------------------------------------------
# Batch report
# ---------------------------------------------------------------------------


def build_cost_basis_report(
    pool_events: Iterable[Event],
    backstop_events: Iterable[Event],
    prices: PriceTable,
    *,
    tz: str | ZoneInfo,
    today: date | None = None,
    live_prices: Mapping[str, float] | None = None,
    current_balances: Mapping[str, float] | None = None,
) -> CostBasisReport:
    """Cost basis for every (pool, asset) pair and backstop pool of a user.

    `current_balances` (asset key → tokens held now) adds a mark-to-market
    `YieldBreakdown` for the keys it covers, priced at `live_prices`.

    A pair whose computation raises a `BlendfolioError` is recorded under
    `failures` and the remaining pairs are still computed.
    """
    live = live_prices or {}
    balances = current_balances or {}
    report = CostBasisReport(gaps=list(prices.gaps))

    groups: dict[tuple[EventSource, str, str], list[Event]] = defaultdict(list)
    for ev in pool_events:
        if ev.asset_address and flow_kind(ev):
            groups[("pool", ev.pool_id, ev.asset_address)].append(ev)
    for ev in backstop_events:
        if flow_kind(ev):
            groups[("backstop", ev.pool_id, LP_TOKEN_ADDRESS)].append(ev)

    for (source, pool_id, token), events in sorted(groups.items()):
        key = asset_key(pool_id, token)
        try:
            flows = price_flows(
                events,
                prices,
                tz,
                today=today,
                live_price=live.get(token),
                token_of=pool_token if source == "pool" else backstop_token,
            )
            record = compute_cost_basis(
                flows,
                pool_id=pool_id,
                asset_address=token,
                live_price=live.get(token),
                source=source,
            )
            report.by_asset_key[key] = record
            if key in balances:
                report.breakdowns[key] = compute_yield_breakdown(record, balances[key], float(live.get(token) or 0.0))
        except BlendfolioError as e:
            logger.error("cost basis failed for %s", key, exc_info=True)
            report.failures.append(PairFailure(key=key, error_type=type(e).__name__, message=str(e)))

    return report
