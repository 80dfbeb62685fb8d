from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from blendfolio.constants import LP_TOKEN_ADDRESS
from blendfolio.core.config import EngineConfig
from blendfolio.core.interfaces import IEventsRepository, IPoolsRepository, IPricesRepository
from blendfolio.core.models import Pool
from blendfolio.core.use_cases.concurrency import nothing, read, run_concurrently
from blendfolio.domain.q4w import OrderDir, Q4WOrderBy, Q4WReport, Q4WStatus, build_q4w_report

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Q4WQuery:
    """
    Listing parameters for backstop withdrawal-queue positions.

    `lp_price` of None means: use the latest stored LP token price.
    `limit` of None means: `EngineConfig.q4w_page_size`.
    """

    pool_id: str | None = None
    status: Q4WStatus = "all"
    order_by: Q4WOrderBy = "unlock_time"
    order_dir: OrderDir = "asc"
    limit: int | None = None
    offset: int = 0
    lp_price: float | None = None


async def get_q4w_positions(
    query: Q4WQuery,
    *,
    events: IEventsRepository,
    pools: IPoolsRepository,
    prices: IPricesRepository,
    config: EngineConfig | None = None,
    now: datetime | None = None,
) -> Q4WReport:
    """
    Active Q4W positions per (user, pool) with locked / unlocked split.

    Every backstop event of the selected pool(s) is read, since share
    rates depend on deposits and withdrawals of all users.
    """
    cfg = config or EngineConfig()
    as_of = now or datetime.now(timezone.utc)
    pool_id = query.pool_id.strip() if query.pool_id else None

    backstop_events, pool_meta, latest = await run_concurrently(
        read(events.backstop_events, pool_id=pool_id),
        read(pools.pools),
        read(prices.latest_prices, [LP_TOKEN_ADDRESS]) if query.lp_price is None else nothing(),
    )
    lp_price = query.lp_price if query.lp_price is not None else (latest or {}).get(LP_TOKEN_ADDRESS, 0.0)

    report = build_q4w_report(
        backstop_events,
        as_of,
        pool_id=pool_id,
        status=query.status,
        order_by=query.order_by,
        order_dir=query.order_dir,
        limit=query.limit if query.limit is not None else cfg.q4w_page_size,
        offset=query.offset,
        lp_price=lp_price,
        pools=pool_meta,
        epsilon=cfg.q4w_epsilon,
        default_share_rate=cfg.default_share_rate,
    )
    logger.info(
        "q4w pool=%s status=%s: %d of %d positions", pool_id or "*", query.status,
        len(report.positions), report.total_count,
    )
    return report


async def list_q4w_pools(*, events: IEventsRepository) -> list[Pool]:
    """Pools with any withdrawal-queue activity."""
    return await read(events.q4w_pools)
