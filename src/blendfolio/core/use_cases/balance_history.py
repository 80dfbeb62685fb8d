from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from blendfolio.constants import BALANCE_ACTIONS
from blendfolio.core.config import EngineConfig
from blendfolio.core.errors import ValidationError, require_identifier
from blendfolio.core.interfaces import IEventsRepository, ILiveBalanceProvider, IRatesRepository
from blendfolio.core.use_cases.concurrency import nothing, read, run_concurrently
from blendfolio.domain.balances import BalanceHistory, reconstruct_balance_history
from blendfolio.domain.timezones import local_today, resolve_timezone

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BalanceHistoryQuery:
    """
    Inputs of one balance history reconstruction.

    `start` / `end` are local dates in `timezone` (default
    `EngineConfig.default_timezone`); when `start` is omitted
    the window is the last `EngineConfig.history_days` days up to `end`
    (default: local today).
    """

    user_address: str
    asset_address: str
    start: date | None = None
    end: date | None = None
    timezone: str | None = None
    use_live: bool = True


# ---------------------------------------------------------------------------
# Use case
# ---------------------------------------------------------------------------


async def get_balance_history(
    query: BalanceHistoryQuery,
    *,
    events: IEventsRepository,
    rates: IRatesRepository,
    live: ILiveBalanceProvider | None = None,
    config: EngineConfig | None = None,
    now: datetime | None = None,
) -> BalanceHistory:
    """
    Reconstruct daily balances of one user for one asset across pools.

    The event log, the rate table and (optionally) the live positions are
    read concurrently; the whole call fails if any of them fails.

    Raises
    ------
    ValidationError
        Missing user / asset, unknown timezone, or start after end.
    UnavailableError
        The store or the live provider failed.
    """
    cfg = config or EngineConfig()
    user = require_identifier(query.user_address, "user")
    asset = require_identifier(query.asset_address, "asset")
    tz = resolve_timezone(query.timezone or cfg.default_timezone)

    today = local_today(tz, now)
    end = query.end or today
    start = query.start or end - timedelta(days=cfg.history_days)
    if start > end:
        raise ValidationError("start must not be after end", "start")

    t0 = time.perf_counter()
    fetch_live = live is not None and query.use_live and start <= today <= end
    # One extra rate day so lookups that land on end + 1 (zones west of UTC) resolve exactly.
    user_events, rate_rows, live_positions = await run_concurrently(
        read(events.pool_events, user, asset_address=asset, action_types=BALANCE_ACTIONS),
        read(rates.rates, asset, end=end + timedelta(days=1)),
        live.positions(user, asset) if fetch_live else nothing(),
    )

    history = reconstruct_balance_history(
        user_events,
        rate_rows,
        user_address=user,
        asset_address=asset,
        start=start,
        end=end,
        tz=tz,
        live_positions=live_positions,
        today=today,
        position_change_threshold=cfg.position_change_threshold,
    )
    logger.info(
        "balance history %s/%s %s..%s: %d snapshots, %d gaps in %.1f ms",
        user, asset, start, end, len(history.snapshots), len(history.gaps),
        (time.perf_counter() - t0) * 1000,
    )
    return history
