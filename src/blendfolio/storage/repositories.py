"""
repositories.py
---------------

DuckDB implementations of the repository Protocols in
`blendfolio.core.interfaces`.

Each method composes a `Query`, runs it on its own cursor, pulls the result
into pandas with `.df()` and maps rows to domain dataclasses. NULLs come
back from pandas as NaN / NaT / pd.NA and are mapped to None here.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from typing import Any

import pandas as pd

from blendfolio.core.models import Event, EventPage, Pool, PriceObservation, RateIndex, Token
from blendfolio.storage import sql_queries
from blendfolio.storage.database import Database
from blendfolio.storage.query_builder import Query, expand_in

logger = logging.getLogger(__name__)


# =====================================================================
# Row conversion helpers
# =====================================================================

def _missing(value: Any) -> bool:
    # Nullable BIGINT columns come back as pd.NA, timestamps as NaT, doubles as NaN.
    return value is None or (pd.api.types.is_scalar(value) and bool(pd.isna(value)))


def _opt_float(value: Any) -> float | None:
    return None if _missing(value) else float(value)


def _opt_int(value: Any) -> int | None:
    return None if _missing(value) else int(value)


def _opt_str(value: Any) -> str | None:
    return None if _missing(value) else str(value)


def _to_datetime(value: Any) -> datetime:
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime().replace(tzinfo=None)
    return value


def _to_date(value: Any) -> date:
    if isinstance(value, pd.Timestamp):
        return value.date()
    if isinstance(value, datetime):
        return value.date()
    return value


def _row_to_event(row: Any) -> Event:
    return Event(
        action_type=str(row.action_type),
        user_address=str(row.user_address),
        pool_id=_opt_str(row.pool_id) or "",
        ledger_closed_at=_to_datetime(row.ledger_closed_at),
        asset_address=_opt_str(getattr(row, "asset_address", None)),
        amount_tokens=_opt_float(getattr(row, "amount_tokens", None)),
        index_units=_opt_float(getattr(row, "index_units", None)),
        shares=_opt_float(getattr(row, "shares", None)),
        lp_tokens=_opt_float(getattr(row, "lp_tokens", None)),
        q4w_exp=_opt_int(getattr(row, "q4w_exp", None)),
        event_id=int(row.event_id),
        tx_hash=_opt_str(row.tx_hash) or "",
        ledger_sequence=_opt_int(row.ledger_sequence) or 0,
    )


class _Repository:
    def __init__(self, db: Database) -> None:
        self.db = db

    def _df(self, sql: str, params: dict[str, Any] | None = None) -> pd.DataFrame:
        t0 = time.perf_counter()
        with self.db.cursor() as cur:
            df = (cur.execute(sql, params) if params else cur.execute(sql)).df()
        logger.debug("%s: %d rows in %.1f ms", type(self).__name__, len(df), (time.perf_counter() - t0) * 1000)
        return df


# =====================================================================
# Events
# =====================================================================

class EventsRepository(_Repository):
    """Lending (`parsed_events`) and backstop (`backstop_events`) reads."""

    @staticmethod
    def _pool_query(
        user_address: str,
        asset_address: str | None,
        pool_id: str | None,
        action_types: Sequence[str] | None,
    ) -> Query:
        return (
            Query("parsed_events")
            .where_eq("user_address", "user_address", user_address)
            .where_eq("asset_address", "asset_address", asset_address)
            .where_eq("pool_id", "pool_id", pool_id)
            .where_in("action_type", "action", list(action_types) if action_types is not None else None)
        )

    def pool_events(
        self,
        user_address: str,
        *,
        asset_address: str | None = None,
        pool_id: str | None = None,
        action_types: Sequence[str] | None = None,
    ) -> list[Event]:
        q = self._pool_query(user_address, asset_address, pool_id, action_types)
        sql, params = q.order_by(*sql_queries.EVENT_ORDER).select(sql_queries.POOL_EVENT_COLUMNS)
        return [_row_to_event(r) for r in self._df(sql, params).itertuples(index=False)]

    def list_pool_events(
        self,
        user_address: str,
        *,
        asset_address: str | None = None,
        pool_id: str | None = None,
        action_types: Sequence[str] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> EventPage:
        q = self._pool_query(user_address, asset_address, pool_id, action_types)
        page_sql, page_params = q.order_by(*sql_queries.EVENT_ORDER_DESC).page(
            limit, offset, sql_queries.POOL_EVENT_COLUMNS
        )
        count_sql, count_params = q.count()
        events = [_row_to_event(r) for r in self._df(page_sql, page_params).itertuples(index=False)]
        total = int(self._df(count_sql, count_params)["total"].iloc[0])
        return EventPage(events=events, total_count=total, limit=limit, offset=offset)

    def backstop_events(
        self,
        *,
        user_address: str | None = None,
        pool_id: str | None = None,
        action_types: Sequence[str] | None = None,
    ) -> list[Event]:
        q = (
            Query("backstop_events")
            .where("pool_address IS NOT NULL")
            .where_eq("user_address", "user_address", user_address)
            .where_eq("pool_address", "pool_id", pool_id)
            .where_in("action_type", "action", list(action_types) if action_types is not None else None)
        )
        sql, params = q.order_by(*sql_queries.EVENT_ORDER).select(sql_queries.BACKSTOP_EVENT_COLUMNS)
        return [_row_to_event(r) for r in self._df(sql, params).itertuples(index=False)]

    def q4w_pools(self) -> list[Pool]:
        df = self._df(sql_queries.Q4W_POOLS_QUERY)
        return [Pool(str(r.pool_id), _opt_str(r.name), _opt_str(r.short_name)) for r in df.itertuples(index=False)]


# =====================================================================
# Rates
# =====================================================================

class RatesRepository(_Repository):
    def rates(
        self,
        asset_address: str,
        *,
        pool_id: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[RateIndex]:
        q = (
            Query("daily_rates")
            .where_eq("asset_address", "asset_address", asset_address)
            .where_eq("pool_id", "pool_id", pool_id)
            .where_range("rate_date", "rate_date", start, end)
            .order_by("pool_id", "rate_date", "rate_id")
        )
        sql, params = q.select(sql_queries.RATE_COLUMNS)
        return [
            RateIndex(
                pool_id=str(r.pool_id),
                asset_address=str(r.asset_address),
                rate_date=_to_date(r.rate_date),
                b_rate=_opt_float(r.b_rate),
                d_rate=_opt_float(r.d_rate),
            )
            for r in self._df(sql, params).itertuples(index=False)
        ]


# =====================================================================
# Prices
# =====================================================================

class PricesRepository(_Repository):
    def prices(self, tokens: Iterable[str], up_to: date) -> list[PriceObservation]:
        q = (
            Query("daily_token_prices")
            .where_in("token_address", "token", sorted(set(tokens)))
            .where_range("price_date", "price_date", None, up_to)
            .order_by("token_address", "price_date", "price_id")
        )
        sql, params = q.select(sql_queries.PRICE_COLUMNS)
        return [
            PriceObservation(
                token_address=str(r.token_address),
                price_date=_to_date(r.price_date),
                usd_price=float(r.usd_price),
                price_id=int(r.price_id),
            )
            for r in self._df(sql, params).itertuples(index=False)
        ]

    def latest_prices(self, tokens: Iterable[str]) -> dict[str, float]:
        wanted = sorted(set(tokens))
        if not wanted:
            return {}
        fragment, params = expand_in("token", wanted)
        sql = sql_queries.LATEST_PRICES_QUERY.format(tokens=fragment[1:-1])
        df = self._df(sql, params)
        return {str(r.token_address): float(r.usd_price) for r in df.itertuples(index=False)}


# =====================================================================
# Pools / tokens
# =====================================================================

class PoolsRepository(_Repository):
    def pools(self) -> dict[str, Pool]:
        df = self._df(sql_queries.POOLS_QUERY)
        return {
            str(r.pool_id): Pool(str(r.pool_id), _opt_str(r.name), _opt_str(r.short_name))
            for r in df.itertuples(index=False)
        }

    def tokens(self) -> dict[str, Token]:
        df = self._df(sql_queries.TOKENS_QUERY)
        return {
            str(r.asset_address): Token(str(r.asset_address), str(r.symbol), _opt_int(r.decimals) or 7)
            for r in df.itertuples(index=False)
        }
