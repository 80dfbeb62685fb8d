from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from zoneinfo import ZoneInfo

from blendfolio.constants import BALANCE_ACTIONS, DEPOSIT, LP_TOKEN_ADDRESS, WITHDRAW
from blendfolio.core.config import EngineConfig
from blendfolio.core.errors import BlendfolioError, require_identifier
from blendfolio.core.interfaces import (
    IEventsRepository,
    ILiveBalanceProvider,
    IPricesRepository,
    IRatesRepository,
)
from blendfolio.core.models import Event, RateIndex
from blendfolio.core.use_cases.concurrency import nothing, read, run_concurrently
from blendfolio.domain.balances import reconstruct_balance_history
from blendfolio.domain.cost_basis import (
    CostBasisReport,
    PairFailure,
    asset_key,
    backstop_token,
    build_cost_basis_report,
    flow_price_pairs,
)
from blendfolio.domain.prices import max_requested_date, resolve_prices
from blendfolio.domain.timezones import local_today, resolve_timezone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CostBasisQuery:
    """
    Inputs of a cost basis report.

    `live_prices` take precedence over the live provider, which takes
    precedence over the latest stored price of each token. `timezone`
    defaults to `EngineConfig.default_timezone`.
    """

    user_address: str
    timezone: str | None = None
    live_prices: Mapping[str, float] = field(default_factory=dict)


def merge_live_prices(*sources: Mapping[str, float] | None) -> dict[str, float]:
    """First positive price per token across `sources` (highest priority first)."""
    out: dict[str, float] = {}
    for src in sources:
        for token, price in (src or {}).items():
            if token not in out and price and price > 0:
                out[token] = float(price)
    return out


def current_pool_balances(
    pool_events: list[Event],
    rates_by_asset: Mapping[str, list[RateIndex]],
    *,
    user_address: str,
    today: date,
    tz: ZoneInfo,
) -> tuple[dict[str, float], list[PairFailure]]:
    """Supply + collateral tokens held today per `pool-asset` key."""
    by_asset: dict[str, list[Event]] = defaultdict(list)
    for ev in pool_events:
        if ev.asset_address:
            by_asset[ev.asset_address].append(ev)

    balances: dict[str, float] = {}
    failures: list[PairFailure] = []
    for asset, events in sorted(by_asset.items()):
        try:
            history = reconstruct_balance_history(
                events,
                rates_by_asset.get(asset, []),
                user_address=user_address,
                asset_address=asset,
                start=today,
                end=today,
                tz=tz,
                include_baseline=False,
            )
        except BlendfolioError as e:
            logger.error("current balance failed for %s", asset, exc_info=True)
            failures.append(PairFailure(key=asset, error_type=type(e).__name__, message=str(e)))
            continue
        for snap in history.snapshots:
            balances[asset_key(snap.pool_id, asset)] = snap.supply_balance + snap.collateral_balance
    return balances, failures


async def get_cost_basis(
    query: CostBasisQuery,
    *,
    events: IEventsRepository,
    prices: IPricesRepository,
    rates: IRatesRepository,
    live: ILiveBalanceProvider | None = None,
    config: EngineConfig | None = None,
    now: datetime | None = None,
) -> CostBasisReport:
    """
    Average-cost basis and unrealized yield for every position of a user.

    Reads happen in two concurrent rounds: the user's events first, then
    prices and rates for exactly the tokens and dates those events need.
    """
    cfg = config or EngineConfig()
    user = require_identifier(query.user_address, "user")
    tz = resolve_timezone(query.timezone or cfg.default_timezone)
    today = local_today(tz, now)

    pool_events, backstop_events = await run_concurrently(
        read(events.pool_events, user, action_types=BALANCE_ACTIONS),
        read(events.backstop_events, user_address=user, action_types=(DEPOSIT, WITHDRAW)),
    )

    pairs = flow_price_pairs(pool_events, tz) | flow_price_pairs(backstop_events, tz, backstop_token)
    tokens = sorted({t for t, _ in pairs} | ({LP_TOKEN_ADDRESS} if backstop_events else set()))
    assets = sorted({e.asset_address for e in pool_events if e.asset_address})
    up_to = max_requested_date(pairs) or today

    results = await run_concurrently(
        read(prices.prices, tokens, up_to),
        read(prices.latest_prices, tokens),
        live.prices(tokens) if live is not None else nothing(),
        *(read(rates.rates, asset) for asset in assets),
    )
    price_rows, stored_latest, provider_prices = results[:3]
    rates_by_asset = dict(zip(assets, results[3:]))

    live_prices = merge_live_prices(query.live_prices, provider_prices, stored_latest)
    balances, balance_failures = current_pool_balances(
        pool_events, rates_by_asset, user_address=user, today=today, tz=tz
    )

    report = build_cost_basis_report(
        pool_events,
        backstop_events,
        resolve_prices(price_rows, pairs, live_prices),
        tz=tz,
        today=today,
        live_prices=live_prices,
        current_balances=balances,
    )
    report.failures.extend(balance_failures)
    logger.info(
        "cost basis %s: %d positions, %d failures, %d gaps",
        user, len(report.by_asset_key), len(report.failures), len(report.gaps),
    )
    return report
