"""Backstop queue-for-withdrawal (Q4W) aggregation.

A Q4W entry is opened by `queue_withdrawal`, cancelled by
`dequeue_withdrawal` and fulfilled by `withdraw`. Entries are keyed by
`(user, pool, q4w_exp)`; a key stays active while its net shares exceed
`epsilon`. Active keys are then folded per `(user, pool)` into locked
(expiry in the future) and unlocked (expiry reached) shares.

Design notes
------------
- Listing and counting share one filter function (`filter_positions`), so a
  page and its `total_count` always agree.
- Share → LP conversion uses the pool's cumulative LP / shares ratio and
  falls back to `DEFAULT_SHARE_RATE` when the pool holds no net shares.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from blendfolio.constants import (
    DEFAULT_SHARE_RATE,
    DEPOSIT,
    DEQUEUE_WITHDRAWAL,
    DONATE,
    DRAW,
    Q4W_EPSILON,
    QUEUE_WITHDRAWAL,
    WITHDRAW,
)
from blendfolio.core.errors import ValidationError
from blendfolio.core.models import Event, Pool, num, to_jsonable

Q4WStatus = Literal["all", "unlocked", "locked"]
Q4WOrderBy = Literal["unlock_time", "lp_tokens"]
OrderDir = Literal["asc", "desc"]

STATUS_VALUES = ("all", "unlocked", "locked")
ORDER_BY_VALUES = ("unlock_time", "lp_tokens")
ORDER_DIR_VALUES = ("asc", "desc")


@dataclass(slots=True, frozen=True)
class Q4WPosition:
    user_address: str
    pool_id: str
    locked_shares: float
    unlocked_shares: float
    earliest_unlock: int | None  # unix seconds of the next locked expiry
    has_unlocked: bool
    share_rate: float = DEFAULT_SHARE_RATE
    lp_price: float = 0.0
    pool_name: str | None = None
    pool_short_name: str | None = None

    @property
    def total_shares(self) -> float:
        return self.locked_shares + self.unlocked_shares

    @property
    def locked_lp_tokens(self) -> float:
        return self.locked_shares * self.share_rate

    @property
    def unlocked_lp_tokens(self) -> float:
        return self.unlocked_shares * self.share_rate

    @property
    def total_lp_tokens(self) -> float:
        return self.total_shares * self.share_rate

    def to_dict(self) -> dict[str, Any]:
        d = to_jsonable(self)
        d.update(
            total_shares=self.total_shares,
            locked_lp_tokens=self.locked_lp_tokens,
            locked_lp_tokens_usd=self.locked_lp_tokens * self.lp_price,
            unlocked_lp_tokens=self.unlocked_lp_tokens,
            unlocked_lp_tokens_usd=self.unlocked_lp_tokens * self.lp_price,
            total_lp_tokens=self.total_lp_tokens,
            total_lp_tokens_usd=self.total_lp_tokens * self.lp_price,
        )
        return d


@dataclass(slots=True, frozen=True)
class Q4WSummary:
    total_users: int = 0
    total_locked_lp: float = 0.0
    total_unlocked_lp: float = 0.0
    lp_price: float = 0.0

    @property
    def total_lp(self) -> float:
        return self.total_locked_lp + self.total_unlocked_lp

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_users": self.total_users,
            "total_locked": self.total_locked_lp,
            "total_unlocked": self.total_unlocked_lp,
            "total": self.total_lp,
            "total_locked_usd": self.total_locked_lp * self.lp_price,
            "total_unlocked_usd": self.total_unlocked_lp * self.lp_price,
            "total_usd": self.total_lp * self.lp_price,
        }


@dataclass(slots=True)
class Q4WReport:
    positions: list[Q4WPosition] = field(default_factory=list)
    summary: Q4WSummary = field(default_factory=Q4WSummary)
    total_count: int = 0
    as_of: int = 0  # unix seconds

    def to_dict(self) -> dict[str, Any]:
        return {
            "positions": [p.to_dict() for p in self.positions],
            "summary": self.summary.to_dict(),
            "total_count": self.total_count,
            "as_of": self.as_of,
        }


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def net_q4w_shares(events: Iterable[Event], epsilon: float = Q4W_EPSILON) -> dict[tuple[str, str, int], float]:
    """Active `(user, pool, q4w_exp) → net shares`, dropping keys at or below `epsilon`."""
    net: dict[tuple[str, str, int], float] = defaultdict(float)
    for ev in events:
        if ev.q4w_exp is None or not ev.pool_id:
            continue
        if ev.action_type == QUEUE_WITHDRAWAL:
            sign = 1.0
        elif ev.action_type in (DEQUEUE_WITHDRAWAL, WITHDRAW):
            sign = -1.0
        else:
            continue
        net[(ev.user_address, ev.pool_id, int(ev.q4w_exp))] += sign * num(ev.shares)
    return {k: v for k, v in net.items() if v > epsilon}


def share_rates(events: Iterable[Event], default: float = DEFAULT_SHARE_RATE) -> dict[str, float]:
    """LP tokens per backstop share, per pool."""
    lp: dict[str, float] = defaultdict(float)
    shares: dict[str, float] = defaultdict(float)
    for ev in events:
        if not ev.pool_id:
            continue
        if ev.action_type in (DEPOSIT, DONATE):
            lp[ev.pool_id] += num(ev.lp_tokens)
        elif ev.action_type in (WITHDRAW, DRAW):
            lp[ev.pool_id] -= num(ev.lp_tokens)
        if ev.action_type == DEPOSIT:
            shares[ev.pool_id] += num(ev.shares)
        elif ev.action_type == WITHDRAW:
            shares[ev.pool_id] -= num(ev.shares)
    pools = set(lp) | set(shares)
    return {p: lp[p] / shares[p] if shares[p] > 0 else default for p in pools}


def aggregate_positions(
    events: Iterable[Event],
    now: int,
    *,
    pools: Mapping[str, Pool] | None = None,
    lp_price: float = 0.0,
    epsilon: float = Q4W_EPSILON,
    default_share_rate: float = DEFAULT_SHARE_RATE,
) -> list[Q4WPosition]:
    """Fold active Q4W keys per `(user, pool)` as of unix time `now`.

    `events` must include the pool's deposit / withdraw / donate / draw
    events as well, so that share rates can be derived.
    """
    rows = list(events)
    rates = share_rates(rows, default_share_rate)
    meta = pools or {}

    locked: dict[tuple[str, str], float] = defaultdict(float)
    unlocked: dict[tuple[str, str], float] = defaultdict(float)
    earliest: dict[tuple[str, str], int] = {}
    has_unlocked: dict[tuple[str, str], bool] = defaultdict(bool)

    for (user, pool_id, exp), shares in net_q4w_shares(rows, epsilon).items():
        key = (user, pool_id)
        if exp > now:
            locked[key] += shares
            earliest[key] = min(exp, earliest.get(key, exp))
        else:
            unlocked[key] += shares
            has_unlocked[key] = True

    out: list[Q4WPosition] = []
    for key in sorted(set(locked) | set(unlocked)):
        user, pool_id = key
        pool = meta.get(pool_id)
        out.append(
            Q4WPosition(
                user_address=user,
                pool_id=pool_id,
                locked_shares=locked.get(key, 0.0),
                unlocked_shares=unlocked.get(key, 0.0),
                earliest_unlock=earliest.get(key),
                has_unlocked=has_unlocked[key],
                share_rate=rates.get(pool_id, default_share_rate),
                lp_price=lp_price,
                pool_name=pool.name if pool else None,
                pool_short_name=pool.short_name if pool else None,
            )
        )
    return out


# ---------------------------------------------------------------------------
# Filtering / listing
# ---------------------------------------------------------------------------


def _check(value: str, allowed: tuple[str, ...], name: str) -> None:
    if value not in allowed:
        raise ValidationError(f"{name} must be one of {', '.join(allowed)}", name)


def filter_positions(
    positions: Iterable[Q4WPosition],
    status: Q4WStatus = "all",
    epsilon: float = Q4W_EPSILON,
) -> list[Q4WPosition]:
    """The one predicate used for both the page and its total count."""
    _check(status, STATUS_VALUES, "status")
    if status == "unlocked":
        return [p for p in positions if p.has_unlocked and p.unlocked_shares > epsilon]
    if status == "locked":
        return [p for p in positions if p.locked_shares > epsilon]
    return list(positions)


def sort_positions(
    positions: Iterable[Q4WPosition],
    order_by: Q4WOrderBy = "unlock_time",
    order_dir: OrderDir = "asc",
    epsilon: float = Q4W_EPSILON,
) -> list[Q4WPosition]:
    """Unlocked first, then earliest unlock (nulls last) or total shares."""
    _check(order_by, ORDER_BY_VALUES, "order_by")
    _check(order_dir, ORDER_DIR_VALUES, "order_dir")
    rows = list(positions)
    reverse = order_dir == "desc"
    # Stable multi-pass sort: innermost key first.
    if order_by == "lp_tokens":
        ordered = sorted(rows, key=lambda p: p.total_shares, reverse=reverse)
        return sorted(ordered, key=lambda p: 0 if p.unlocked_shares > epsilon else 1)

    with_unlock = sorted((p for p in rows if p.earliest_unlock is not None),
                         key=lambda p: p.earliest_unlock, reverse=reverse)
    without_unlock = [p for p in rows if p.earliest_unlock is None]
    ordered = with_unlock + without_unlock
    return sorted(ordered, key=lambda p: 0 if p.unlocked_shares > epsilon else 1)


def summarize(positions: Iterable[Q4WPosition], lp_price: float = 0.0) -> Q4WSummary:
    rows = list(positions)
    return Q4WSummary(
        total_users=len({p.user_address for p in rows}),
        total_locked_lp=sum(p.locked_lp_tokens for p in rows),
        total_unlocked_lp=sum(p.unlocked_lp_tokens for p in rows),
        lp_price=lp_price,
    )


def build_q4w_report(
    events: Iterable[Event],
    now: int | datetime,
    *,
    pool_id: str | None = None,
    status: Q4WStatus = "all",
    order_by: Q4WOrderBy = "unlock_time",
    order_dir: OrderDir = "asc",
    limit: int = 50,
    offset: int = 0,
    lp_price: float = 0.0,
    pools: Mapping[str, Pool] | None = None,
    epsilon: float = Q4W_EPSILON,
    default_share_rate: float = DEFAULT_SHARE_RATE,
) -> Q4WReport:
    """List one page of Q4W positions plus the pool-wide summary.

    The summary honours the pool filter but not the status filter.
    """
    if limit < 0 or offset < 0:
        raise ValidationError("limit and offset must be non-negative", "limit")
    as_of = int(now.timestamp()) if isinstance(now, datetime) else int(now)

    rows = list(events)
    # Share rates need every backstop event of the pool, so filter after rating.
    positions = aggregate_positions(
        rows,
        as_of,
        pools=pools,
        lp_price=lp_price,
        epsilon=epsilon,
        default_share_rate=default_share_rate,
    )
    if pool_id:
        positions = [p for p in positions if p.pool_id == pool_id]

    filtered = filter_positions(positions, status, epsilon)
    ordered = sort_positions(filtered, order_by, order_dir, epsilon)
    return Q4WReport(
        positions=ordered[offset : offset + limit],
        summary=summarize(positions, lp_price),
        total_count=len(filtered),
        as_of=as_of,
    )
