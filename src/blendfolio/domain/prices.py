"""Historical USD price resolution with a fallback chain.

Resolution order for each `(token, date)` pair:

1. exact row for that date,
2. forward-fill: latest row dated on or before the target,
3. live fallback price supplied by the caller, else 0.

All rows for all requested tokens up to `max(requested dates)` are expected
to come from one batch query; resolution is then done in memory.
"""

from __future__ import annotations

import bisect
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date

from blendfolio.core.errors import DataGapWarning
from blendfolio.core.models import PriceObservation, PriceSource

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ResolvedPrice:
    token_address: str
    date: date
    price: float
    source: PriceSource


@dataclass(slots=True)
class PriceTable:
    """Resolved prices keyed by `(token, date)` plus the gaps that were filled."""

    prices: dict[tuple[str, date], ResolvedPrice] = field(default_factory=dict)
    gaps: list[DataGapWarning] = field(default_factory=list)

    def get(self, token: str, on: date) -> ResolvedPrice | None:
        return self.prices.get((token, on))

    def price(self, token: str, on: date) -> float:
        """Resolved price, 0 when the pair was never requested."""
        hit = self.prices.get((token, on))
        return hit.price if hit else 0.0

    def by_token(self) -> dict[str, dict[str, ResolvedPrice]]:
        """Nested `token -> ISO date -> ResolvedPrice` view."""
        out: dict[str, dict[str, ResolvedPrice]] = {}
        for (token, on), rp in sorted(self.prices.items()):
            out.setdefault(token, {})[on.isoformat()] = rp
        return out


def max_requested_date(pairs: Iterable[tuple[str, date]]) -> date | None:
    return max((d for _, d in pairs), default=None)


def _authoritative(rows: Iterable[PriceObservation]) -> dict[str, tuple[list[date], list[float]]]:
    """Per token, ascending dates with one price each (first inserted wins)."""
    chosen: dict[tuple[str, date], PriceObservation] = {}
    for row in rows:
        key = (row.token_address, row.price_date)
        current = chosen.get(key)
        if current is None or row.price_id < current.price_id:
            chosen[key] = row
    per_token: dict[str, dict[date, float]] = {}
    for (token, d), row in chosen.items():
        per_token.setdefault(token, {})[d] = float(row.usd_price)
    out: dict[str, tuple[list[date], list[float]]] = {}
    for token, prices in per_token.items():
        dates = sorted(prices)
        out[token] = (dates, [prices[d] for d in dates])
    return out


def resolve_prices(
    rows: Iterable[PriceObservation],
    pairs: Iterable[tuple[str, date]],
    live_prices: Mapping[str, float] | None = None,
) -> PriceTable:
    """Resolve every requested `(token, date)` pair against `rows`.

    Parameters
    ----------
    rows : Iterable[PriceObservation]
        Batch-loaded price rows (any order). Duplicate `(token, date)` rows
        resolve to the one with the lowest `price_id`.
    pairs : Iterable[tuple[str, date]]
        Requested pairs; duplicates are resolved once.
    live_prices : Mapping[str, float] | None
        Current price per token, used only when no row is on or before the
        target date.

    Returns
    -------
    PriceTable
        One `ResolvedPrice` per distinct pair; fallbacks are recorded as
        `DataGapWarning`s.
    """
    live = live_prices or {}
    index = _authoritative(rows)
    table = PriceTable()

    for token, on in sorted(set(pairs)):
        dates, prices = index.get(token, ([], []))
        i = bisect.bisect_right(dates, on)
        if i > 0 and dates[i - 1] == on:
            resolved = ResolvedPrice(token, on, prices[i - 1], "exact")
        elif i > 0:
            resolved = ResolvedPrice(token, on, prices[i - 1], "forward_fill")
        else:
            resolved = ResolvedPrice(token, on, float(live.get(token) or 0.0), "live_fallback")
            table.gaps.append(DataGapWarning("price", token, on, "live_fallback"))
            logger.warning("no price on or before %s for %s, using live fallback %.6f", on, token, resolved.price)
        table.prices[(token, on)] = resolved

    return table
