from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from blendfolio.constants import (
    BLND_TOKEN_ADDRESS,
    CLAIM,
    DEPOSIT,
    LP_TOKEN_ADDRESS,
    POOL_DEPOSIT_ACTIONS,
    POOL_WITHDRAW_ACTIONS,
    WITHDRAW,
)
from blendfolio.core.config import EngineConfig
from blendfolio.core.errors import require_identifier
from blendfolio.core.interfaces import (
    IEventsRepository,
    ILiveBalanceProvider,
    IPoolsRepository,
    IPricesRepository,
)
from blendfolio.core.use_cases.concurrency import nothing, read, run_concurrently
from blendfolio.core.use_cases.cost_basis import merge_live_prices
from blendfolio.domain.prices import max_requested_date, resolve_prices
from blendfolio.domain.timezones import local_today, resolve_timezone
from blendfolio.domain.yield_report import YieldReport, build_yield_report, yield_price_pairs

logger = logging.getLogger(__name__)

POOL_YIELD_ACTIONS = (*POOL_DEPOSIT_ACTIONS, *POOL_WITHDRAW_ACTIONS, CLAIM)
BACKSTOP_YIELD_ACTIONS = (DEPOSIT, WITHDRAW, CLAIM)


@dataclass(frozen=True)
class YieldQuery:
    user_address: str
    timezone: str | None = None
    live_prices: Mapping[str, float] = field(default_factory=dict)


async def get_yield_report(
    query: YieldQuery,
    *,
    events: IEventsRepository,
    prices: IPricesRepository,
    pools: IPoolsRepository,
    live: ILiveBalanceProvider | None = None,
    config: EngineConfig | None = None,
    now: datetime | None = None,
) -> YieldReport:
    """
    Realized yield, ROI and annualized ROI of one user.

    Every transaction is priced from one batch price read; a missing price
    falls back to the live price, then to 0, and is reported as a gap.
    """
    cfg = config or EngineConfig()
    user = require_identifier(query.user_address, "user")
    tz = resolve_timezone(query.timezone or cfg.default_timezone)

    pool_events, backstop_events, pool_meta = await run_concurrently(
        read(events.pool_events, user, action_types=POOL_YIELD_ACTIONS),
        read(events.backstop_events, user_address=user, action_types=BACKSTOP_YIELD_ACTIONS),
        read(pools.pools),
    )

    pairs = yield_price_pairs(pool_events, backstop_events, tz)
    tokens = sorted({t for t, _ in pairs} | {BLND_TOKEN_ADDRESS, LP_TOKEN_ADDRESS})
    up_to = max_requested_date(pairs) or local_today(tz, now)

    price_rows, stored_latest, provider_prices = await run_concurrently(
        read(prices.prices, tokens, up_to),
        read(prices.latest_prices, tokens),
        live.prices(tokens) if live is not None else nothing(),
    )
    live_prices = merge_live_prices(query.live_prices, provider_prices, stored_latest)

    report = build_yield_report(
        pool_events,
        backstop_events,
        resolve_prices(price_rows, pairs, live_prices),
        tz=tz,
        pools=pool_meta,
    )
    logger.info(
        "yield %s: %d transactions, realized %.2f USD over %d days",
        user, len(report.transactions), report.realized_pnl, report.days_active,
    )
    return report
