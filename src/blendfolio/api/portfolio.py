from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path

from blendfolio.caching import ICache, TTLCache, cache_key, get_or_set
from blendfolio.clients.dune import DuneClient, ingest_query
from blendfolio.core.config import CacheConfig, DuneConfig, EngineConfig, StoreConfig
from blendfolio.core.errors import ValidationError, require_identifier
from blendfolio.core.models import EventPage, Pool
from blendfolio.core.use_cases.balance_history import BalanceHistoryQuery, get_balance_history
from blendfolio.core.use_cases.cost_basis import CostBasisQuery, get_cost_basis
from blendfolio.core.use_cases.market import ApyHistory, get_apy_history, get_historical_prices, get_rate
from blendfolio.core.use_cases.q4w import Q4WQuery, get_q4w_positions, list_q4w_pools
from blendfolio.core.use_cases.yield_report import YieldQuery, get_yield_report
from blendfolio.domain.balances import BalanceHistory, LivePosition
from blendfolio.domain.cost_basis import CostBasisReport
from blendfolio.domain.prices import PriceTable
from blendfolio.domain.q4w import Q4WReport
from blendfolio.domain.rates import RateLookup
from blendfolio.domain.timezones import local_today
from blendfolio.domain.yield_report import YieldReport
from blendfolio.storage.database import Database
from blendfolio.storage.repositories import (
    EventsRepository,
    PoolsRepository,
    PricesRepository,
    RatesRepository,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Live provider
# ---------------------------------------------------------------------------


@dataclass
class StaticLiveProvider:
    """Live view built from values supplied by the caller (e.g. CLI flags)."""

    live_prices: dict[str, float] = field(default_factory=dict)
    live_positions: dict[tuple[str, str], dict[str, LivePosition]] = field(default_factory=dict)

    async def positions(self, user_address: str, asset_address: str) -> Mapping[str, LivePosition]:
        return self.live_positions.get((user_address, asset_address), {})

    async def prices(self, tokens: Iterable[str]) -> Mapping[str, float]:
        return {t: self.live_prices[t] for t in tokens if t in self.live_prices}


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class Portfolio:
    """
    Entry point wiring the DuckDB repositories into the use cases.

    Reports are memoized in the injected cache under keys that include the
    caller's local "today", so nothing survives a day rollover. Pass
    `cache=None` to disable memoization.
    """

    def __init__(
        self,
        db: Database,
        *,
        engine: EngineConfig | None = None,
        cache: ICache | None = None,
        cache_config: CacheConfig | None = None,
        live: StaticLiveProvider | None = None,
    ) -> None:
        self.db = db
        self.engine = engine or EngineConfig()
        self.cache = cache
        self.ttl = cache_config or CacheConfig()
        self.live = live
        self.events = EventsRepository(db)
        self.rates = RatesRepository(db)
        self.prices = PricesRepository(db)
        self.pools = PoolsRepository(db)

    @classmethod
    def open(cls, store: StoreConfig, *, cached: bool = True, **kwargs) -> Portfolio:
        db = Database(store)
        cache_config = kwargs.pop("cache_config", None) or CacheConfig()
        cache = TTLCache(cache_config) if cached else None
        return cls(db, cache=cache, cache_config=cache_config, **kwargs)

    def close(self) -> None:
        self.db.close()

    def _tz(self, tz: str | None) -> str:
        return tz or self.engine.default_timezone

    def _today(self, tz: str | None, now: datetime | None) -> date:
        return local_today(self._tz(tz), now)

    # --- reports ----------------------------------------------------------

    async def balance_history(self, query: BalanceHistoryQuery, now: datetime | None = None) -> BalanceHistory:
        key = cache_key(
            "balance-history", query.user_address, query.asset_address, query.start, query.end,
            self._tz(query.timezone), query.use_live, self._today(query.timezone, now),
        )
        return await get_or_set(
            self.cache, key, self.ttl.medium_ttl,
            lambda: get_balance_history(
                query, events=self.events, rates=self.rates, live=self.live, config=self.engine, now=now,
            ),
        )

    async def cost_basis(self, query: CostBasisQuery, now: datetime | None = None) -> CostBasisReport:
        key = cache_key(
            "cost-basis", query.user_address, self._tz(query.timezone),
            ",".join(f"{k}={v}" for k, v in sorted(query.live_prices.items())),
            self._today(query.timezone, now),
        )
        return await get_or_set(
            self.cache, key, self.ttl.medium_ttl,
            lambda: get_cost_basis(
                query, events=self.events, prices=self.prices, rates=self.rates, live=self.live,
                config=self.engine, now=now,
            ),
        )

    async def yield_report(self, query: YieldQuery, now: datetime | None = None) -> YieldReport:
        key = cache_key(
            "yield", query.user_address, self._tz(query.timezone),
            ",".join(f"{k}={v}" for k, v in sorted(query.live_prices.items())),
            self._today(query.timezone, now),
        )
        return await get_or_set(
            self.cache, key, self.ttl.medium_ttl,
            lambda: get_yield_report(
                query, events=self.events, prices=self.prices, pools=self.pools, live=self.live,
                config=self.engine, now=now,
            ),
        )

    async def q4w(self, query: Q4WQuery, now: datetime | None = None) -> Q4WReport:
        # Lock state depends on the current instant; never cached.
        return await get_q4w_positions(
            query, events=self.events, pools=self.pools, prices=self.prices, config=self.engine,
            now=now or datetime.now(timezone.utc),
        )

    async def q4w_pools(self) -> list[Pool]:
        return await get_or_set(
            self.cache, cache_key("q4w-pools"), self.ttl.very_long_ttl,
            lambda: list_q4w_pools(events=self.events),
        )

    # --- market data ------------------------------------------------------

    async def apy_history(
        self, pool_id: str, asset_address: str, *, days: int | None = None, tz: str | None = None,
        now: datetime | None = None,
    ) -> ApyHistory:
        key = cache_key("apy", pool_id, asset_address, days, self._tz(tz), self._today(tz, now))
        return await get_or_set(
            self.cache, key, self.ttl.long_ttl,
            lambda: get_apy_history(
                pool_id, asset_address, rates=self.rates, days=days, timezone=tz, config=self.engine, now=now,
            ),
        )

    async def historical_prices(
        self, tokens: Iterable[str], *, days: int = 30, tz: str | None = None, now: datetime | None = None,
    ) -> PriceTable:
        wanted = sorted(set(tokens))
        live_prices = self.live.live_prices if self.live else None
        key = cache_key(
            "prices", ",".join(wanted), days, self._tz(tz),
            ",".join(f"{k}={v}" for k, v in sorted((live_prices or {}).items())),
            self._today(tz, now),
        )
        return await get_or_set(
            self.cache, key, self.ttl.short_ttl,
            lambda: get_historical_prices(
                wanted, prices=self.prices, days=days, timezone=tz, live_prices=live_prices, config=self.engine,
                now=now,
            ),
        )

    async def rate(
        self, pool_id: str, asset_address: str, on: date | None = None, *, tz: str | None = None,
        now: datetime | None = None,
    ) -> RateLookup:
        key = cache_key("rate", pool_id, asset_address, on, self._tz(tz), self._today(tz, now))
        return await get_or_set(
            self.cache, key, self.ttl.long_ttl,
            lambda: get_rate(
                pool_id, asset_address, on, rates=self.rates, timezone=tz, config=self.engine, now=now,
            ),
        )

    # --- store ------------------------------------------------------------

    def list_pool_events(
        self,
        user_address: str,
        *,
        asset_address: str | None = None,
        pool_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> EventPage:
        """Newest-first page of a user's lending events plus the total count."""
        user = require_identifier(user_address, "user")
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative", "limit")
        return self.events.list_pool_events(
            user, asset_address=asset_address, pool_id=pool_id, limit=limit, offset=offset,
        )

    def init_db(self) -> dict[str, int]:
        self.db.init_schema()
        return self.db.table_counts()

    def load_parquet(self, table: str, path: str | Path) -> int:
        n = self.db.load_parquet(table, path)
        self._invalidate()
        return n

    async def ingest_dune(self, config: DuneConfig, table: str, query_id: int, *, execute: bool = False) -> int:
        """Load one Dune query's rows into `table`."""
        client = DuneClient(config)
        try:
            n = await ingest_query(client, self.db, table, query_id, execute=execute)
        finally:
            await client.aclose()
        self._invalidate()
        return n

    def _invalidate(self) -> None:
        if self.cache is not None:
            self.cache.clear()
            logger.debug("cache cleared after load")
