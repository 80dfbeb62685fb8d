"""Core records read from the relational store.

This module defines:
- `Event`: one immutable protocol event (lending pool or backstop).
- `RateIndex`: per-day b_rate / d_rate accrual multipliers.
- `PriceObservation`: per-day USD price of a token.
- `Pool` / `Token`: metadata used for labelling.

Design notes
------------
- Every timestamp is a *naive UTC* `datetime`; local-day bucketing happens
  only through `blendfolio.domain.timezones`.
- Amounts are token units (raw 7-decimal integers already divided by
  `SCALAR_7`). Missing numeric fields are `None` and read as 0 by the
  arithmetic helpers, never as an error.
- Backstop events store their pool in `pool_id` as well, so every consumer
  keys pools the same way.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Literal

RateSource = Literal["exact", "forward_fill", "identity"]
PriceSource = Literal["exact", "forward_fill", "live_fallback"]
EventSource = Literal["pool", "backstop"]


@dataclass(slots=True, frozen=True)
class Event:
    """One protocol event as synced from the ledger."""

    action_type: str
    user_address: str
    pool_id: str
    ledger_closed_at: datetime  # naive UTC
    asset_address: str | None = None
    amount_tokens: float | None = None
    index_units: float | None = None  # bTokens/dTokens minted or burned
    shares: float | None = None
    lp_tokens: float | None = None
    q4w_exp: int | None = None  # unix seconds
    event_id: int = 0
    tx_hash: str = ""
    ledger_sequence: int = 0

    @property
    def sort_key(self) -> tuple[datetime, int, int]:
        return (self.ledger_closed_at, self.ledger_sequence, self.event_id)


@dataclass(slots=True, frozen=True)
class RateIndex:
    """Accrual multipliers observed for one (pool, asset) on one UTC day."""

    pool_id: str
    asset_address: str
    rate_date: date
    b_rate: float | None
    d_rate: float | None


@dataclass(slots=True, frozen=True)
class PriceObservation:
    """USD price of a token on one day; `price_id` is insertion order."""

    token_address: str
    price_date: date
    usd_price: float
    price_id: int = 0


@dataclass(slots=True, frozen=True)
class Pool:
    pool_id: str
    name: str | None = None
    short_name: str | None = None

    @property
    def label(self) -> str:
        return self.short_name or self.name or self.pool_id[:8] + "..."


@dataclass(slots=True, frozen=True)
class Token:
    asset_address: str
    symbol: str
    decimals: int = 7


def num(value: float | int | None) -> float:
    """Read a possibly-missing numeric field as a float (missing → 0)."""
    if value is None:
        return 0.0
    return float(value)


def to_jsonable(value: Any) -> Any:
    """Recursively convert dataclasses / dates / enums into JSON-safe values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


@dataclass(slots=True, frozen=True)
class EventPage:
    """One page of events plus the total matching the same filters."""

    events: list[Event]
    total_count: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.events) < self.total_count
