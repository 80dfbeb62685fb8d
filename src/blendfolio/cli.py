import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from blendfolio.api.portfolio import Portfolio, StaticLiveProvider
from blendfolio.core.config import DuneConfig, EngineConfig, StoreConfig
from blendfolio.core.errors import BlendfolioError
from blendfolio.core.models import to_jsonable
from blendfolio.core.use_cases.balance_history import BalanceHistoryQuery
from blendfolio.core.use_cases.cost_basis import CostBasisQuery
from blendfolio.core.use_cases.q4w import Q4WQuery
from blendfolio.core.use_cases.yield_report import YieldQuery
from blendfolio.domain.q4w import ORDER_BY_VALUES, ORDER_DIR_VALUES, STATUS_VALUES
from blendfolio.clients.dune import ROW_MODELS
from blendfolio.storage.sql_queries import LOADABLE_TABLES

console = Console()
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _parse_prices(ctx: click.Context, param: click.Parameter, values: tuple[str, ...]) -> dict[str, float]:
    out: dict[str, float] = {}
    for raw in values:
        token, sep, price = raw.partition("=")
        try:
            if not sep or not token:
                raise ValueError(raw)
            out[token.strip()] = float(price)
        except ValueError as e:
            raise click.BadParameter(f"expected TOKEN=PRICE, got {raw!r}") from e
    return out


def _portfolio(ctx: click.Context, live_prices: dict[str, float] | None = None) -> Portfolio:
    obj = ctx.obj
    if live_prices:
        obj["portfolio"].live = StaticLiveProvider(live_prices=dict(live_prices))
    return obj["portfolio"]


def _run(fn: Callable[[], Awaitable[T] | T]) -> T:
    """Run a (possibly async) call and surface engine errors as CLI errors."""
    try:
        result = fn()
        if asyncio.iscoroutine(result):
            result = asyncio.run(result)
        return result
    except BlendfolioError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e


def _emit_json(payload: Any) -> None:
    console.print_json(json.dumps(to_jsonable(payload)))


def _fmt(value: float | None, digits: int = 4) -> str:
    return "-" if value is None else f"{value:,.{digits}f}"


def _print_gaps(gaps: list) -> None:
    if gaps:
        console.print(f"[yellow]{len(gaps)} data gap(s) filled[/] (use --json for details)")


json_option = click.option("--json", "as_json", is_flag=True, help="Print the full report as JSON")
tz_option = click.option("--tz", "tz", default=None, help="IANA timezone for local days [default: --default-tz]")


# ---------------------------------------------------------------------------
# Group
# ---------------------------------------------------------------------------


@click.group()
@click.option("--db", envvar="BLENDFOLIO_DB", default="blendfolio.duckdb", show_default=True, help="DuckDB file")
@click.option(
    "--default-tz", envvar="BLENDFOLIO_TZ", default="UTC", show_default=True, help="Timezone when --tz is omitted"
)
@click.option("--no-cache", is_flag=True, help="Disable report memoization")
@click.option("-v", "--verbose", count=True, help="-v for INFO, -vv for DEBUG logs")
@click.pass_context
def cli(ctx: click.Context, db: str, default_tz: str, no_cache: bool, verbose: int) -> None:
    """Blendfolio: portfolio analytics for Blend lending pools and backstops."""
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbose, logging.DEBUG)
    logging.basicConfig(level=level, format="%(message)s", handlers=[RichHandler(console=console, show_path=False)])
    portfolio = Portfolio.open(
        StoreConfig(database=db), cached=not no_cache, engine=EngineConfig(default_timezone=default_tz)
    )
    ctx.obj = {"portfolio": portfolio}
    ctx.call_on_close(portfolio.close)


# ---------------------------------------------------------------------------
# Store management
# ---------------------------------------------------------------------------


@cli.command("init-db")
@click.pass_context
def init_db_cmd(ctx: click.Context) -> None:
    """Create the schema (idempotent) and print row counts."""
    counts = _run(_portfolio(ctx).init_db)
    table = Table(title="tables")
    table.add_column("table")
    table.add_column("rows", justify="right")
    for name, n in counts.items():
        table.add_row(name, f"{n:,}")
    console.print(table)


@cli.command("load-parquet")
@click.argument("table", type=click.Choice(sorted(LOADABLE_TABLES)))
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def load_parquet_cmd(ctx: click.Context, table: str, path: str) -> None:
    """Append a parquet file to TABLE."""
    n = _run(lambda: _portfolio(ctx).load_parquet(table, path))
    console.print(f"[bold]loaded[/]: {n:,} rows into {table}")


@cli.command("ingest-dune")
@click.argument("table", type=click.Choice(sorted(ROW_MODELS)))
@click.argument("query_id", type=int)
@click.option("--api-key", envvar="DUNE_API_KEY", default="", help="Dune API key (or DUNE_API_KEY)")
@click.option("--execute/--latest", default=False, show_default=True, help="Run the query or read its latest result")
@click.pass_context
def ingest_dune_cmd(ctx: click.Context, table: str, query_id: int, api_key: str, execute: bool) -> None:
    """Load the rows of a Dune query into TABLE."""
    portfolio = _portfolio(ctx)
    n = _run(lambda: portfolio.ingest_dune(DuneConfig(api_key=api_key), table, query_id, execute=execute))
    console.print(f"[bold]ingested[/]: {n:,} rows from query {query_id} into {table}")


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@cli.command("events")
@click.argument("user")
@click.option("--asset", default=None, help="Filter by asset address")
@click.option("--pool", default=None, help="Filter by pool id")
@click.option("--limit", type=int, default=50, show_default=True)
@click.option("--offset", type=int, default=0, show_default=True)
@json_option
@click.pass_context
def events_cmd(
    ctx: click.Context, user: str, asset: str | None, pool: str | None, limit: int, offset: int, as_json: bool
) -> None:
    """Newest-first lending events of USER."""
    page = _run(
        lambda: _portfolio(ctx).list_pool_events(user, asset_address=asset, pool_id=pool, limit=limit, offset=offset)
    )
    if as_json:
        _emit_json(page)
        return
    table = Table(title=f"events {offset + 1}-{offset + len(page.events)} of {page.total_count}")
    for col in ("time (UTC)", "action", "pool", "asset", "amount", "tx"):
        table.add_column(col)
    for ev in page.events:
        table.add_row(
            ev.ledger_closed_at.isoformat(sep=" "), ev.action_type, ev.pool_id[:8], (ev.asset_address or "")[:8],
            _fmt(ev.amount_tokens), ev.tx_hash[:10],
        )
    console.print(table)


@cli.command("balance-history")
@click.argument("user")
@click.argument("asset")
@click.option("--start", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="First local day")
@click.option("--end", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="Last local day")
@tz_option
@json_option
@click.pass_context
def balance_history_cmd(ctx: click.Context, user: str, asset: str, start, end, tz: str | None, as_json: bool) -> None:
    """Daily supply / collateral / debt of USER for ASSET in every pool."""
    query = BalanceHistoryQuery(
        user_address=user,
        asset_address=asset,
        start=start.date() if start else None,
        end=end.date() if end else None,
        timezone=tz,
    )
    history = _run(lambda: _portfolio(ctx).balance_history(query))
    if as_json:
        _emit_json(history.to_dict())
        return

    table = Table(title=f"{asset[:8]} balances {history.start} → {history.end} ({history.timezone})")
    for col in ("date", "pool", "supply", "collateral", "debt", "net", "rates"):
        table.add_column(col, justify="right" if col not in ("date", "pool", "rates") else "left")
    for s in history.snapshots:
        table.add_row(
            s.date.isoformat(), s.pool_id[:8], _fmt(s.supply_balance), _fmt(s.collateral_balance),
            _fmt(s.debt_balance), _fmt(s.net_balance), "live" if s.is_live else s.rate_source,
        )
    console.print(table)
    e = history.earnings
    console.print(
        f"[bold]earnings[/]: interest={_fmt(e.total_interest)}  apy={_fmt(e.current_apy, 2)}%  "
        f"projected/yr={_fmt(e.projected_annual)}  days={e.day_count}"
    )
    _print_gaps(history.gaps)


@cli.command("cost-basis")
@click.argument("user")
@click.option("--price", "prices", multiple=True, callback=_parse_prices, help="Live price TOKEN=USD; repeatable")
@tz_option
@json_option
@click.pass_context
def cost_basis_cmd(ctx: click.Context, user: str, prices: dict[str, float], tz: str | None, as_json: bool) -> None:
    """Average-cost basis and unrealized yield of USER."""
    query = CostBasisQuery(user_address=user, timezone=tz, live_prices=prices)
    report = _run(lambda: _portfolio(ctx).cost_basis(query))
    if as_json:
        _emit_json(report.to_dict())
        return

    table = Table(title=f"cost basis {user[:8]}")
    for col in ("position", "source", "cost basis", "avg price", "net tokens", "value", "yield", "price Δ", "earned %"):
        table.add_column(col)
    for key, rec in sorted(report.by_asset_key.items()):
        b = report.breakdowns.get(key)
        table.add_row(
            key[:20], rec.source, _fmt(rec.cost_basis, 2), _fmt(rec.weighted_avg_deposit_price),
            _fmt(rec.net_tokens), _fmt(b.current_value_usd if b else None, 2),
            _fmt(b.protocol_yield_usd if b else None, 2), _fmt(b.price_change_usd if b else None, 2),
            _fmt(b.total_earned_percent if b else None, 2),
        )
    console.print(table)
    t = report.totals
    console.print(
        f"[bold]totals[/]: cost={_fmt(t['cost_basis'], 2)}  value={_fmt(t['current_value_usd'], 2)}  "
        f"earned={_fmt(t['total_earned_usd'], 2)}"
    )
    for f in report.failures:
        console.print(f"[red]failed[/] {f.key}: {f.error_type}: {f.message}")
    _print_gaps(report.gaps)


@cli.command("yield")
@click.argument("user")
@click.option("--price", "prices", multiple=True, callback=_parse_prices, help="Live price TOKEN=USD; repeatable")
@tz_option
@json_option
@click.pass_context
def yield_cmd(ctx: click.Context, user: str, prices: dict[str, float], tz: str | None, as_json: bool) -> None:
    """Realized PnL, ROI and annualized ROI of USER."""
    report = _run(lambda: _portfolio(ctx).yield_report(YieldQuery(user_address=user, timezone=tz, live_prices=prices)))
    if as_json:
        _emit_json(report.to_dict())
        return

    table = Table(title=f"realized yield {user[:8]}")
    for col in ("source", "deposited", "withdrawn", "realized"):
        table.add_column(col, justify="right" if col != "source" else "left")
    for name, totals in (("pools", report.pools), ("backstop", report.backstop)):
        table.add_row(name, _fmt(totals.deposited, 2), _fmt(totals.withdrawn, 2), _fmt(totals.realized, 2))
    table.add_row("emissions", "-", _fmt(report.emissions.usd_value, 2), _fmt(report.emissions.usd_value, 2))
    console.print(table)
    console.print(
        f"[bold]pnl[/]={_fmt(report.realized_pnl, 2)}  roi={_fmt(report.roi, 2)}%  "
        f"annualized={_fmt(report.annualized_roi, 2)}%  days_active={report.days_active}"
    )
    _print_gaps(report.gaps)


@cli.command("q4w")
@click.option("--pool", default=None, help="Restrict to one pool")
@click.option("--status", type=click.Choice(STATUS_VALUES), default="all", show_default=True)
@click.option("--order-by", type=click.Choice(ORDER_BY_VALUES), default="unlock_time", show_default=True)
@click.option("--order-dir", type=click.Choice(ORDER_DIR_VALUES), default="asc", show_default=True)
@click.option("--limit", type=int, default=None, help="Page size")
@click.option("--offset", type=int, default=0, show_default=True)
@click.option("--lp-price", type=float, default=None, help="USD per LP token (default: latest stored)")
@json_option
@click.pass_context
def q4w_cmd(
    ctx: click.Context, pool, status, order_by, order_dir, limit, offset, lp_price, as_json: bool
) -> None:
    """Backstop withdrawal-queue positions, locked vs unlocked."""
    query = Q4WQuery(
        pool_id=pool, status=status, order_by=order_by, order_dir=order_dir, limit=limit, offset=offset,
        lp_price=lp_price,
    )
    report = _run(lambda: _portfolio(ctx).q4w(query))
    if as_json:
        _emit_json(report.to_dict())
        return

    table = Table(title=f"q4w positions ({len(report.positions)} of {report.total_count})")
    for col in ("user", "pool", "locked LP", "unlocked LP", "next unlock"):
        table.add_column(col)
    for p in report.positions:
        unlock = datetime.fromtimestamp(p.earliest_unlock, timezone.utc).isoformat(sep=" ") if p.earliest_unlock else "-"
        table.add_row(
            p.user_address[:8], p.pool_short_name or p.pool_id[:8], _fmt(p.locked_lp_tokens),
            _fmt(p.unlocked_lp_tokens), unlock,
        )
    console.print(table)
    s = report.summary
    console.print(
        f"[bold]summary[/]: users={s.total_users}  locked={_fmt(s.total_locked_lp)}  "
        f"unlocked={_fmt(s.total_unlocked_lp)}  lp_price={_fmt(s.lp_price)}"
    )


@cli.command("q4w-pools")
@json_option
@click.pass_context
def q4w_pools_cmd(ctx: click.Context, as_json: bool) -> None:
    """Pools with any withdrawal-queue activity."""
    pools = _run(lambda: _portfolio(ctx).q4w_pools())
    if as_json:
        _emit_json(pools)
        return
    for p in pools:
        console.print(f"{p.pool_id}  {p.label}")


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------


@cli.command("apy")
@click.argument("pool")
@click.argument("asset")
@click.option("--days", type=int, default=None, help="Window length (default 180)")
@tz_option
@json_option
@click.pass_context
def apy_cmd(ctx: click.Context, pool: str, asset: str, days: int | None, tz: str | None, as_json: bool) -> None:
    """Daily supply APY of ASSET in POOL."""
    history = _run(lambda: _portfolio(ctx).apy_history(pool, asset, days=days, tz=tz))
    if as_json:
        _emit_json(history.to_dict())
        return
    table = Table(title=f"supply APY {asset[:8]} in {pool[:8]}")
    table.add_column("date")
    table.add_column("apy %", justify="right")
    for p in history.points:
        table.add_row(p.date.isoformat(), _fmt(p.apy, 2))
    console.print(table)


@cli.command("prices")
@click.argument("tokens", nargs=-1, required=True)
@click.option("--days", type=int, default=30, show_default=True)
@click.option("--price", "live", multiple=True, callback=_parse_prices, help="Live price TOKEN=USD; repeatable")
@tz_option
@json_option
@click.pass_context
def prices_cmd(ctx: click.Context, tokens, days: int, live: dict[str, float], tz: str | None, as_json: bool) -> None:
    """Resolved daily USD prices of TOKENS."""
    resolved = _run(lambda: _portfolio(ctx, live).historical_prices(tokens, days=days, tz=tz))
    if as_json:
        _emit_json({"prices": resolved.by_token(), "gaps": [g.to_dict() for g in resolved.gaps]})
        return
    table = Table(title="prices")
    for col in ("token", "date", "usd", "source"):
        table.add_column(col)
    for token, per_day in resolved.by_token().items():
        for day, rp in per_day.items():
            table.add_row(token[:8], day, _fmt(rp.price, 6), rp.source)
    console.print(table)
    _print_gaps(resolved.gaps)


@cli.command("rate")
@click.argument("pool")
@click.argument("asset")
@click.option("--on", type=click.DateTime(formats=["%Y-%m-%d"]), default=None, help="Local day (default today)")
@tz_option
@json_option
@click.pass_context
def rate_cmd(ctx: click.Context, pool: str, asset: str, on, tz: str | None, as_json: bool) -> None:
    """b_rate / d_rate of ASSET in POOL at the end of a local day."""
    lookup = _run(lambda: _portfolio(ctx).rate(pool, asset, on.date() if on else None, tz=tz))
    if as_json:
        _emit_json(lookup)
        return
    console.print(
        f"b_rate={lookup.b_rate:.9f}  d_rate={lookup.d_rate:.9f}  "
        f"source={lookup.source}  row={lookup.rate_date or '-'}"
    )


if __name__ == "__main__":
    cli()
