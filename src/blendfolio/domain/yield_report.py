"""Realized (cash-flow) yield report.

Every deposit, withdrawal and emission claim of a user is priced once at
its local date and summed by source:

- pools: `supply` / `supply_collateral` in, `withdraw` / `withdraw_collateral` out
- backstop: `deposit` / `withdraw` in LP tokens
- emissions: pool `claim` (BLND) and backstop `claim` (LP tokens)

Claims count as withdrawn value. ROI and annualized ROI follow
`blendfolio.domain.cost_basis`.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal
from zoneinfo import ZoneInfo

from blendfolio.constants import BLND_TOKEN_ADDRESS, CLAIM, LP_TOKEN_ADDRESS
from blendfolio.core.errors import DataGapWarning
from blendfolio.core.models import Event, EventSource, Pool, num, to_jsonable
from blendfolio.domain.cost_basis import annualized_roi, flow_kind, realized_yield, roi
from blendfolio.domain.prices import PriceTable
from blendfolio.domain.timezones import local_date_of

TransactionType = Literal["deposit", "withdraw", "claim"]


@dataclass(slots=True, frozen=True)
class YieldTransaction:
    date: date  # local date
    timestamp: datetime  # naive UTC
    type: TransactionType
    source: EventSource
    asset: str
    amount: float
    price_usd: float
    tx_hash: str = ""
    pool_id: str = ""
    pool_name: str | None = None

    @property
    def value_usd(self) -> float:
        return self.amount * self.price_usd

    def to_dict(self) -> dict[str, Any]:
        d = to_jsonable(self)
        d["value_usd"] = self.value_usd
        return d


@dataclass(slots=True)
class SourceTotals:
    deposited: float = 0.0
    withdrawn: float = 0.0

    @property
    def realized(self) -> float:
        return realized_yield(self.deposited, self.withdrawn)

    def to_dict(self) -> dict[str, float]:
        return {"deposited": self.deposited, "withdrawn": self.withdrawn, "realized": self.realized}


@dataclass(slots=True)
class EmissionTotals:
    blnd_claimed: float = 0.0
    lp_claimed: float = 0.0
    usd_value: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"blnd_claimed": self.blnd_claimed, "lp_claimed": self.lp_claimed, "usd_value": self.usd_value}


@dataclass(slots=True, frozen=True)
class CumulativePoint:
    date: date
    cumulative_deposited: float
    cumulative_withdrawn: float

    @property
    def cumulative_realized(self) -> float:
        return self.cumulative_withdrawn - self.cumulative_deposited


@dataclass(slots=True)
class YieldReport:
    pools: SourceTotals = field(default_factory=SourceTotals)
    backstop: SourceTotals = field(default_factory=SourceTotals)
    emissions: EmissionTotals = field(default_factory=EmissionTotals)
    days_active: int = 0
    first_activity: date | None = None
    last_activity: date | None = None
    cumulative_series: list[CumulativePoint] = field(default_factory=list)
    transactions: list[YieldTransaction] = field(default_factory=list)  # newest first
    gaps: list[DataGapWarning] = field(default_factory=list)

    @property
    def total_deposited(self) -> float:
        return self.pools.deposited + self.backstop.deposited

    @property
    def total_withdrawn(self) -> float:
        return self.pools.withdrawn + self.backstop.withdrawn + self.emissions.usd_value

    @property
    def realized_pnl(self) -> float:
        return realized_yield(self.total_deposited, self.total_withdrawn)

    @property
    def roi(self) -> float | None:
        return roi(self.realized_pnl, self.total_deposited)

    @property
    def annualized_roi(self) -> float | None:
        return annualized_roi(self.roi, self.days_active)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_deposited": self.total_deposited,
            "total_withdrawn": self.total_withdrawn,
            "realized_pnl": self.realized_pnl,
            "by_source": {
                "pools": self.pools.to_dict(),
                "backstop": self.backstop.to_dict(),
                "emissions": self.emissions.to_dict(),
            },
            "roi": self.roi,
            "annualized_roi": self.annualized_roi,
            "days_active": self.days_active,
            "first_activity": self.first_activity.isoformat() if self.first_activity else None,
            "last_activity": self.last_activity.isoformat() if self.last_activity else None,
            "cumulative_series": [
                {
                    "date": p.date.isoformat(),
                    "cumulative_deposited": p.cumulative_deposited,
                    "cumulative_withdrawn": p.cumulative_withdrawn,
                    "cumulative_realized": p.cumulative_realized,
                }
                for p in self.cumulative_series
            ],
            "transactions": [t.to_dict() for t in self.transactions],
            "gaps": [g.to_dict() for g in self.gaps],
        }


def _classify(event: Event, source: EventSource) -> tuple[TransactionType, str, float] | None:
    """Transaction type, priced token and amount of one event."""
    if event.action_type == CLAIM:
        if source == "pool":
            return "claim", BLND_TOKEN_ADDRESS, num(event.amount_tokens)
        return "claim", LP_TOKEN_ADDRESS, num(event.lp_tokens)
    kind = flow_kind(event)
    if kind is None:
        return None
    if source == "pool":
        if not event.asset_address:
            return None
        return kind, event.asset_address, num(event.amount_tokens)
    return kind, LP_TOKEN_ADDRESS, num(event.lp_tokens)


def yield_price_pairs(
    pool_events: Iterable[Event],
    backstop_events: Iterable[Event],
    tz: str | ZoneInfo,
) -> set[tuple[str, date]]:
    """Every `(token, local date)` the report will price, for one batch load."""
    pairs: set[tuple[str, date]] = set()
    for source, events in (("pool", pool_events), ("backstop", backstop_events)):
        for ev in events:
            c = _classify(ev, source)
            if c is not None:
                pairs.add((c[1], local_date_of(ev.ledger_closed_at, tz)))
    return pairs


def days_between(first: date | None, last: date | None) -> int:
    """`max(1, ceil(days))` with any activity, else 0."""
    if first is None or last is None:
        return 0
    return max(1, math.ceil((last - first).days))


def cumulative_series(transactions: Iterable[YieldTransaction]) -> list[CumulativePoint]:
    per_day: dict[date, list[float]] = defaultdict(lambda: [0.0, 0.0])
    for tx in transactions:
        per_day[tx.date][0 if tx.type == "deposit" else 1] += tx.value_usd
    out: list[CumulativePoint] = []
    dep = wd = 0.0
    for d in sorted(per_day):
        dep += per_day[d][0]
        wd += per_day[d][1]
        out.append(CumulativePoint(date=d, cumulative_deposited=dep, cumulative_withdrawn=wd))
    return out


def build_yield_report(
    pool_events: Iterable[Event],
    backstop_events: Iterable[Event],
    prices: PriceTable,
    *,
    tz: str | ZoneInfo,
    pools: Mapping[str, Pool] | None = None,
) -> YieldReport:
    """Compose the realized-yield report from already-loaded events and prices.

    Parameters
    ----------
    pool_events, backstop_events : Iterable[Event]
        All events of the user; irrelevant action types are ignored.
    prices : PriceTable
        Must cover `yield_price_pairs(...)`; unresolved pairs price at 0.
    """
    meta = pools or {}
    report = YieldReport(gaps=list(prices.gaps))
    txs: list[YieldTransaction] = []

    for source, events in (("pool", pool_events), ("backstop", backstop_events)):
        for ev in events:
            c = _classify(ev, source)
            if c is None:
                continue
            kind, token, amount = c
            on = local_date_of(ev.ledger_closed_at, tz)
            pool = meta.get(ev.pool_id)
            tx = YieldTransaction(
                date=on,
                timestamp=ev.ledger_closed_at,
                type=kind,
                source=source,
                asset=token,
                amount=abs(amount),
                price_usd=prices.price(token, on),
                tx_hash=ev.tx_hash,
                pool_id=ev.pool_id,
                pool_name=pool.label if pool else None,
            )
            txs.append(tx)

            if kind == "claim":
                if token == BLND_TOKEN_ADDRESS:
                    report.emissions.blnd_claimed += tx.amount
                else:
                    report.emissions.lp_claimed += tx.amount
                report.emissions.usd_value += tx.value_usd
                continue
            bucket = report.pools if source == "pool" else report.backstop
            if kind == "deposit":
                bucket.deposited += tx.value_usd
            else:
                bucket.withdrawn += tx.value_usd

    if txs:
        report.first_activity = min(t.date for t in txs)
        report.last_activity = max(t.date for t in txs)
    report.days_active = days_between(report.first_activity, report.last_activity)
    report.cumulative_series = cumulative_series(txs)
    report.transactions = sorted(txs, key=lambda t: t.timestamp, reverse=True)
    return report
