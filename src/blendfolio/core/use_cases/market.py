"""Market data use cases: APY history, historical prices and rate lookup."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from blendfolio.core.config import EngineConfig
from blendfolio.core.errors import ValidationError, require_identifier
from blendfolio.core.interfaces import IPricesRepository, IRatesRepository
from blendfolio.core.models import to_jsonable
from blendfolio.core.use_cases.concurrency import read
from blendfolio.domain.prices import PriceTable, resolve_prices
from blendfolio.domain.rates import ApyPoint, RateIndexResolver, RateLookup, apy_history
from blendfolio.domain.timezones import history_window, iter_days, local_today, resolve_timezone

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ApyHistory:
    pool_id: str
    asset_address: str
    points: list[ApyPoint] = field(default_factory=list)

    def to_dict(self) -> dict:
        return to_jsonable(self)


async def get_apy_history(
    pool_id: str,
    asset_address: str,
    *,
    rates: IRatesRepository,
    days: int | None = None,
    timezone: str | None = None,
    config: EngineConfig | None = None,
    now: datetime | None = None,
) -> ApyHistory:
    """Supply APY per day over the last `days` days (default `EngineConfig.apy_days`)."""
    cfg = config or EngineConfig()
    pool = require_identifier(pool_id, "pool")
    asset = require_identifier(asset_address, "asset")
    tz = resolve_timezone(timezone or cfg.default_timezone)
    start, end = history_window(cfg.apy_days if days is None else days, tz, now)

    # One extra day so the first requested day has a predecessor.
    rows = await read(rates.rates, asset, pool_id=pool, start=start - timedelta(days=1), end=end)
    points = [p for p in apy_history(rows) if start <= p.date <= end]
    return ApyHistory(pool_id=pool, asset_address=asset, points=points)


async def get_historical_prices(
    tokens: Iterable[str],
    *,
    prices: IPricesRepository,
    days: int = 30,
    timezone: str | None = None,
    live_prices: Mapping[str, float] | None = None,
    config: EngineConfig | None = None,
    now: datetime | None = None,
) -> PriceTable:
    """Resolved daily price of each token for every day of the window."""
    cfg = config or EngineConfig()
    wanted = sorted({require_identifier(t, "token") for t in tokens})
    if not wanted:
        raise ValidationError("at least one token is required", "token")
    tz = resolve_timezone(timezone or cfg.default_timezone)
    start, end = history_window(days, tz, now)

    rows = await read(prices.prices, wanted, end)
    pairs = [(t, d) for t in wanted for d in iter_days(start, end)]
    return resolve_prices(rows, pairs, live_prices)


async def get_rate(
    pool_id: str,
    asset_address: str,
    on: date | None = None,
    *,
    rates: IRatesRepository,
    timezone: str | None = None,
    config: EngineConfig | None = None,
    now: datetime | None = None,
) -> RateLookup:
    """`(b_rate, d_rate)` valid at the end of local day `on` (default today)."""
    cfg = config or EngineConfig()
    pool = require_identifier(pool_id, "pool")
    asset = require_identifier(asset_address, "asset")
    tz = resolve_timezone(timezone or cfg.default_timezone)
    target = on or local_today(tz, now)

    rows = await read(rates.rates, asset, pool_id=pool, end=target + timedelta(days=1))
    return RateIndexResolver(rows).resolve(pool, asset, target, tz)
