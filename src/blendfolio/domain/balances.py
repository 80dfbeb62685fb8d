"""Daily balance reconstruction from the lending event log.

This module provides:
- `reconstruct_balance_history`: replay supply / withdraw / borrow / repay
  events into gap-free daily `BalanceSnapshot`s, one per pool per local day.
- `detect_position_changes`: deposit / withdrawal days vs. pure accrual.
- `calculate_earnings_stats`: per-pool and combined interest / APY stats.
- `daily_totals`: per-day total, principal and yield series.

Design notes
------------
- Counters are index units (bTokens for supply and collateral, dTokens for
  liabilities). An event's `index_units` are used when recorded; otherwise
  the token amount is divided by the rate valid on the event's local day.
- A pool is reported from the local date of its first event onward; the
  latest counters at or before each day are carried forward.
- A single `$0` baseline day is added just before the first event, but only
  when that event is the user's first-ever event for the asset.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from typing import Any
from zoneinfo import ZoneInfo

from blendfolio.constants import (
    BALANCE_ACTIONS,
    BORROW,
    POSITION_CHANGE_THRESHOLD,
    REPAY,
    SUPPLY,
    SUPPLY_COLLATERAL,
    WITHDRAW,
    WITHDRAW_COLLATERAL,
)
from blendfolio.core.errors import DataGapWarning
from blendfolio.core.models import Event, RateIndex, RateSource, num, to_jsonable
from blendfolio.domain.rates import RateIndexResolver
from blendfolio.domain.timezones import iter_days, local_date_of

logger = logging.getLogger(__name__)

# action → (counter, sign)
_COUNTER_DELTAS: dict[str, tuple[str, int]] = {
    SUPPLY: ("supply", 1),
    WITHDRAW: ("supply", -1),
    SUPPLY_COLLATERAL: ("collateral", 1),
    WITHDRAW_COLLATERAL: ("collateral", -1),
    BORROW: ("liabilities", 1),
    REPAY: ("liabilities", -1),
}


# === Records ===


@dataclass(slots=True, frozen=True)
class BalanceSnapshot:
    """End-of-day position of one user in one pool for one asset."""

    pool_id: str
    asset_address: str
    date: date
    supply_btokens: float
    collateral_btokens: float
    liabilities_dtokens: float
    b_rate: float = 1.0
    d_rate: float = 1.0
    rate_source: RateSource = "identity"
    is_live: bool = False
    is_baseline: bool = False

    @property
    def supply_balance(self) -> float:
        return self.supply_btokens * self.b_rate

    @property
    def collateral_balance(self) -> float:
        return self.collateral_btokens * self.b_rate

    @property
    def debt_balance(self) -> float:
        return self.liabilities_dtokens * self.d_rate

    @property
    def net_balance(self) -> float:
        return (self.supply_btokens + self.collateral_btokens) * self.b_rate - self.liabilities_dtokens * self.d_rate

    def to_dict(self) -> dict[str, Any]:
        d = to_jsonable(self)
        d.update(
            supply_balance=self.supply_balance,
            collateral_balance=self.collateral_balance,
            debt_balance=self.debt_balance,
            net_balance=self.net_balance,
        )
        return d


@dataclass(slots=True, frozen=True)
class LivePosition:
    """Position read live from the chain, used to override today's slot."""

    supply_btokens: float
    collateral_btokens: float
    liabilities_dtokens: float
    b_rate: float
    d_rate: float


@dataclass(slots=True, frozen=True)
class PositionChange:
    index: int
    date: date
    supply_change: float
    collateral_change: float
    debt_change: float
    net_change: float


@dataclass(slots=True, frozen=True)
class PoolEarnings:
    total_interest: float
    current_apy: float
    avg_daily_interest: float
    projected_annual: float
    avg_position: float


@dataclass(slots=True, frozen=True)
class EarningsStats:
    total_interest: float = 0.0
    current_apy: float = 0.0
    avg_daily_interest: float = 0.0
    projected_annual: float = 0.0
    day_count: int = 0
    avg_position: float = 0.0
    per_pool: dict[str, PoolEarnings] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class DailyTotal:
    date: date
    total: float
    deposit: float
    yield_amount: float
    by_pool: dict[str, float]


@dataclass(slots=True)
class BalanceHistory:
    """Reconstructed history for one (user, asset) across pools."""

    user_address: str
    asset_address: str
    start: date
    end: date
    timezone: str
    snapshots: list[BalanceSnapshot] = field(default_factory=list)
    first_event_date: date | None = None
    position_changes: list[PositionChange] = field(default_factory=list)
    earnings: EarningsStats = field(default_factory=EarningsStats)
    gaps: list[DataGapWarning] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.snapshots)

    def pools(self) -> list[str]:
        return sorted({s.pool_id for s in self.snapshots})

    def for_pool(self, pool_id: str) -> list[BalanceSnapshot]:
        return [s for s in self.snapshots if s.pool_id == pool_id]

    def by_date(self) -> dict[date, list[BalanceSnapshot]]:
        out: dict[date, list[BalanceSnapshot]] = defaultdict(list)
        for s in self.snapshots:
            out[s.date].append(s)
        return dict(sorted(out.items()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_address": self.user_address,
            "asset_address": self.asset_address,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "timezone": self.timezone,
            "first_event_date": self.first_event_date.isoformat() if self.first_event_date else None,
            "snapshots": [s.to_dict() for s in self.snapshots],
            "position_changes": to_jsonable(self.position_changes),
            "earnings": to_jsonable(self.earnings),
            "gaps": [g.to_dict() for g in self.gaps],
        }


# === Event replay ===


@dataclass(slots=True)
class _Counters:
    supply: float = 0.0
    collateral: float = 0.0
    liabilities: float = 0.0

    def copy(self) -> _Counters:
        return _Counters(self.supply, self.collateral, self.liabilities)


def _index_units(event: Event, resolver: RateIndexResolver, asset: str, tz: str | ZoneInfo) -> float:
    """bTokens / dTokens moved by one event."""
    if event.index_units is not None:
        return abs(float(event.index_units))
    amount = abs(num(event.amount_tokens))
    if amount == 0.0:
        return 0.0
    rate = resolver.resolve(event.pool_id, asset, local_date_of(event.ledger_closed_at, tz), tz)
    divisor = rate.d_rate if event.action_type in (BORROW, REPAY) else rate.b_rate
    return amount / divisor if divisor else amount


def replay_events(
    events: Iterable[Event],
    resolver: RateIndexResolver,
    asset_address: str,
    tz: str | ZoneInfo,
) -> dict[str, dict[date, _Counters]]:
    """End-of-day counters per pool, only on local dates that had events."""
    per_pool: dict[str, dict[date, _Counters]] = defaultdict(dict)
    running: dict[str, _Counters] = defaultdict(_Counters)

    for ev in sorted(events, key=lambda e: e.sort_key):
        delta = _COUNTER_DELTAS.get(ev.action_type)
        if delta is None:
            continue
        name, sign = delta
        counters = running[ev.pool_id]
        units = _index_units(ev, resolver, asset_address, tz)
        setattr(counters, name, getattr(counters, name) + sign * units)
        per_pool[ev.pool_id][local_date_of(ev.ledger_closed_at, tz)] = counters.copy()

    return dict(per_pool)


def _carry_forward(end_of_days: Mapping[date, _Counters], days: Sequence[date]) -> list[_Counters]:
    """Latest counters at or before each day (LOCF)."""
    event_days = sorted(end_of_days)
    out: list[_Counters] = []
    i = -1
    for d in days:
        while i + 1 < len(event_days) and event_days[i + 1] <= d:
            i += 1
        out.append(end_of_days[event_days[i]] if i >= 0 else _Counters())
    return out


def reconstruct_balance_history(
    events: Iterable[Event],
    rates: Iterable[RateIndex],
    *,
    user_address: str,
    asset_address: str,
    start: date,
    end: date,
    tz: str | ZoneInfo = "UTC",
    first_event_date: date | None = None,
    live_positions: Mapping[str, LivePosition] | None = None,
    today: date | None = None,
    include_baseline: bool = True,
    position_change_threshold: float = POSITION_CHANGE_THRESHOLD,
) -> BalanceHistory:
    """Replay `events` into daily snapshots for `[start, end]`.

    Parameters
    ----------
    events : Iterable[Event]
        Lending events of the user for the asset (all pools, any order).
        Non-balance actions and other assets are ignored.
    rates : Iterable[RateIndex]
        Daily rate rows for the asset, covering at least up to `end`.
    first_event_date : date | None
        The user's global first event date for the asset. When omitted it is
        taken from `events`, which is only correct if they are unfiltered.
    live_positions : Mapping[str, LivePosition] | None
        pool_id → live position; overrides the `today` slot when in range.
    """
    tz_name = str(tz)
    history = BalanceHistory(
        user_address=user_address,
        asset_address=asset_address,
        start=start,
        end=end,
        timezone=tz_name,
    )
    relevant = [
        e
        for e in events
        if e.action_type in BALANCE_ACTIONS and (e.asset_address is None or e.asset_address == asset_address)
    ]
    if not relevant or start > end:
        return history

    resolver = RateIndexResolver(rates)
    per_pool = replay_events(relevant, resolver, asset_address, tz)
    pool_first = {pool: min(days) for pool, days in per_pool.items() if days}
    if not pool_first:
        return history

    global_first = first_event_date or min(pool_first.values())
    history.first_event_date = global_first
    live = live_positions or {}

    snapshots: list[BalanceSnapshot] = []
    for pool_id in sorted(per_pool):
        first_day = max(start, pool_first[pool_id])
        if first_day > end:
            continue
        days = list(iter_days(first_day, end))
        for d, counters in zip(days, _carry_forward(per_pool[pool_id], days)):
            rate = resolver.resolve(pool_id, asset_address, d, tz)
            if rate.source != "exact":
                history.gaps.append(DataGapWarning("rate", f"{pool_id}:{asset_address}", d, rate.source))
            snapshots.append(
                BalanceSnapshot(
                    pool_id=pool_id,
                    asset_address=asset_address,
                    date=d,
                    supply_btokens=counters.supply,
                    collateral_btokens=counters.collateral,
                    liabilities_dtokens=counters.liabilities,
                    b_rate=rate.b_rate,
                    d_rate=rate.d_rate,
                    rate_source=rate.source,
                )
            )

        if include_baseline and days[0] == global_first and pool_first[pool_id] == global_first:
            snapshots.append(
                BalanceSnapshot(
                    pool_id=pool_id,
                    asset_address=asset_address,
                    date=global_first - timedelta(days=1),
                    supply_btokens=0.0,
                    collateral_btokens=0.0,
                    liabilities_dtokens=0.0,
                    is_baseline=True,
                )
            )

    if today is not None and live:
        snapshots = [_apply_live(s, live) if s.date == today else s for s in snapshots]

    snapshots.sort(key=lambda s: (s.date, s.pool_id))
    history.snapshots = snapshots
    observed = [s for s in snapshots if not s.is_baseline]
    history.position_changes = detect_position_changes(observed, position_change_threshold)
    history.earnings = calculate_earnings_stats(observed)
    if history.gaps:
        logger.debug(
            "%d rate gaps filled for %s/%s between %s and %s",
            len(history.gaps), user_address, asset_address, start, end,
        )
    return history


def _apply_live(snapshot: BalanceSnapshot, live: Mapping[str, LivePosition]) -> BalanceSnapshot:
    pos = live.get(snapshot.pool_id)
    if pos is None:
        return snapshot
    return replace(
        snapshot,
        supply_btokens=pos.supply_btokens,
        collateral_btokens=pos.collateral_btokens,
        liabilities_dtokens=pos.liabilities_dtokens,
        b_rate=pos.b_rate,
        d_rate=pos.d_rate,
        rate_source="exact",
        is_live=True,
    )


# === Derived statistics ===


def detect_position_changes(
    snapshots: Iterable[BalanceSnapshot],
    threshold: float = POSITION_CHANGE_THRESHOLD,
) -> list[PositionChange]:
    """Days whose summed supply / collateral / debt moved beyond `threshold`."""
    by_date: dict[date, list[BalanceSnapshot]] = defaultdict(list)
    for s in snapshots:
        by_date[s.date].append(s)
    dates = sorted(by_date)
    if len(dates) <= 1:
        return []

    def sums(rows: list[BalanceSnapshot]) -> tuple[float, float, float, float]:
        return (
            sum(r.supply_btokens for r in rows),
            sum(r.collateral_btokens for r in rows),
            sum(r.liabilities_dtokens for r in rows),
            sum(r.net_balance for r in rows),
        )

    changes: list[PositionChange] = []
    for i in range(1, len(dates)):
        p_supply, p_coll, p_debt, p_net = sums(by_date[dates[i - 1]])
        c_supply, c_coll, c_debt, c_net = sums(by_date[dates[i]])
        ds, dc, dd = c_supply - p_supply, c_coll - p_coll, c_debt - p_debt
        if abs(ds) > threshold or abs(dc) > threshold or abs(dd) > threshold:
            changes.append(
                PositionChange(
                    index=i,
                    date=dates[i],
                    supply_change=ds,
                    collateral_change=dc,
                    debt_change=dd,
                    net_change=c_net - p_net,
                )
            )
    return changes


def calculate_earnings_stats(snapshots: Iterable[BalanceSnapshot]) -> EarningsStats:
    """Interest and APY per pool and combined.

    Every day-over-day balance delta is counted as interest, deposits and
    withdrawals included; see `detect_position_changes` to tell them apart.
    """
    by_date: dict[date, dict[str, float]] = defaultdict(dict)
    for s in snapshots:
        by_date[s.date][s.pool_id] = by_date[s.date].get(s.pool_id, 0.0) + s.net_balance
    dates = sorted(by_date)
    if len(dates) <= 1:
        return EarningsStats()

    day_count = len(dates) - 1
    pool_ids = sorted({p for pools in by_date.values() for p in pools})
    latest = by_date[dates[-1]]
    per_pool: dict[str, PoolEarnings] = {}

    for pool_id in pool_ids:
        interest = 0.0
        position = 0.0
        points = 0
        for prev, curr in zip(dates, dates[1:]):
            if pool_id in by_date[prev] and pool_id in by_date[curr]:
                interest += by_date[curr][pool_id] - by_date[prev][pool_id]
                position += by_date[curr][pool_id]
                points += 1
        avg_position = position / points if points else 0.0
        apy = (interest / avg_position) * (365 / day_count) * 100 if avg_position > 0 else 0.0
        per_pool[pool_id] = PoolEarnings(
            total_interest=interest,
            current_apy=apy,
            avg_daily_interest=interest / day_count,
            projected_annual=latest.get(pool_id, 0.0) * apy / 100,
            avg_position=avg_position,
        )

    total_interest = sum(p.total_interest for p in per_pool.values())
    total_position = sum(p.avg_position for p in per_pool.values())
    combined_apy = (total_interest / total_position) * (365 / day_count) * 100 if total_position > 0 else 0.0
    return EarningsStats(
        total_interest=total_interest,
        current_apy=combined_apy,
        avg_daily_interest=total_interest / day_count,
        projected_annual=sum(latest.values()) * combined_apy / 100,
        day_count=day_count,
        avg_position=total_position,
        per_pool=per_pool,
    )


def daily_totals(snapshots: Iterable[BalanceSnapshot], tolerance: float = 0.0001) -> list[DailyTotal]:
    """Per-day total balance split into principal and accrued yield.

    Principal per pool is the tracked bToken count times the b_rate at the
    day it last changed, so pure accrual shows up as yield.
    """
    by_date: dict[date, list[BalanceSnapshot]] = defaultdict(list)
    for s in snapshots:
        by_date[s.date].append(s)

    tracked_units: dict[str, float] = {}
    entry_rate: dict[str, float] = {}
    out: list[DailyTotal] = []
    for d in sorted(by_date):
        total = 0.0
        deposit = 0.0
        by_pool: dict[str, float] = {}
        for s in by_date[d]:
            units = s.supply_btokens + s.collateral_btokens
            if s.pool_id not in tracked_units or abs(units - tracked_units[s.pool_id]) > tolerance:
                tracked_units[s.pool_id] = units
                entry_rate[s.pool_id] = s.b_rate
            deposit += tracked_units[s.pool_id] * entry_rate[s.pool_id]
            by_pool[s.pool_id] = s.net_balance
            total += s.net_balance
        out.append(DailyTotal(date=d, total=total, deposit=deposit, yield_amount=total - deposit, by_pool=by_pool))
    return out
