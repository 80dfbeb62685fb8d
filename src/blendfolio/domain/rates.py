"""Rate index resolution and APY history.

- `RateIndexResolver`: forward-filled `(b_rate, d_rate)` at the end of a
  local day, identity `(1.0, 1.0)` before the first observed rate.
- `apy_history`: APY series from consecutive b_rates.
"""

from __future__ import annotations

import bisect
import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date
from zoneinfo import ZoneInfo

from blendfolio.constants import IDENTITY_RATE
from blendfolio.core.models import RateIndex, RateSource
from blendfolio.domain.timezones import rate_lookup_date

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RateLookup:
    """Rates valid at the end of a local day, with provenance."""

    b_rate: float
    d_rate: float
    source: RateSource
    rate_date: date | None = None

    @property
    def is_identity(self) -> bool:
        return self.source == "identity"


IDENTITY = RateLookup(b_rate=IDENTITY_RATE, d_rate=IDENTITY_RATE, source="identity")


class RateIndexResolver:
    """In-memory forward-fill lookup over daily rate rows.

    Rows are indexed per `(pool_id, asset_address)` and sorted by
    `rate_date`. With several rows on the same date the first one given wins,
    matching the store's `rate_id` (insert) order. A row whose b_rate / d_rate
    is missing reads that side as identity.
    """

    def __init__(self, rows: Iterable[RateIndex]) -> None:
        by_key: dict[tuple[str, str], dict[date, RateIndex]] = defaultdict(dict)
        for r in rows:
            by_key[(r.pool_id, r.asset_address)].setdefault(r.rate_date, r)
        self._dates: dict[tuple[str, str], list[date]] = {}
        self._rows: dict[tuple[str, str], list[RateIndex]] = {}
        for key, per_day in by_key.items():
            ordered = sorted(per_day)
            self._dates[key] = ordered
            self._rows[key] = [per_day[d] for d in ordered]

    def __len__(self) -> int:
        return sum(len(v) for v in self._rows.values())

    def lookup_utc(self, pool_id: str, asset_address: str, utc_date: date) -> RateLookup:
        """Latest row with `rate_date <= utc_date`, or identity."""
        key = (pool_id, asset_address)
        dates = self._dates.get(key)
        if not dates:
            return IDENTITY
        i = bisect.bisect_right(dates, utc_date)
        if i == 0:
            return IDENTITY
        row = self._rows[key][i - 1]
        return RateLookup(
            b_rate=row.b_rate if row.b_rate else IDENTITY_RATE,
            d_rate=row.d_rate if row.d_rate else IDENTITY_RATE,
            source="exact" if row.rate_date == utc_date else "forward_fill",
            rate_date=row.rate_date,
        )

    def resolve(
        self,
        pool_id: str,
        asset_address: str,
        target_date: date,
        tz: str | ZoneInfo | None = None,
    ) -> RateLookup:
        """Rates valid at the end of local `target_date` in `tz`."""
        return self.lookup_utc(pool_id, asset_address, rate_lookup_date(target_date, tz))


def resolve_rate_index(
    rows: Iterable[RateIndex],
    pool_id: str,
    asset_address: str,
    target_date: date,
    tz: str | ZoneInfo | None = None,
) -> RateLookup:
    """One-shot convenience wrapper around `RateIndexResolver.resolve`."""
    return RateIndexResolver(rows).resolve(pool_id, asset_address, target_date, tz)


# ---------------------------------------------------------------------------
# APY history
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ApyPoint:
    date: date
    apy: float


def daily_apy(rate_today: float, rate_yesterday: float) -> float:
    """Annualize one day of index growth: `((today/yesterday)^365 - 1) * 100`."""
    return ((rate_today / rate_yesterday) ** 365 - 1) * 100


def apy_history(rows: Iterable[RateIndex], *, clamp_negative: bool = True) -> list[ApyPoint]:
    """APY per day from consecutive b_rates (first row only seeds the series).

    Supply-side APY is clamped to be non-negative. When either side of a
    pair is missing or non-positive, the previous APY is carried forward.
    """
    ordered = sorted(rows, key=lambda r: r.rate_date)
    out: list[ApyPoint] = []
    last_apy = 0.0
    for prev, curr in zip(ordered, ordered[1:]):
        if prev.b_rate and curr.b_rate and prev.b_rate > 0 and curr.b_rate > 0:
            apy = daily_apy(curr.b_rate, prev.b_rate)
            last_apy = max(0.0, apy) if clamp_negative else apy
            out.append(ApyPoint(date=curr.rate_date, apy=last_apy))
        else:
            logger.debug("carrying APY forward on %s (missing rate)", curr.rate_date)
            out.append(ApyPoint(date=curr.rate_date, apy=last_apy))
    return out
