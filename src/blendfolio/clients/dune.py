"""Async client for the Dune Analytics results API.

This module provides:
- `DuneClient`: an async httpx client that pages `/query/{id}/results`
  or executes a query and polls `/execution/{id}/results`.
- Row models (pydantic) that validate Dune rows for each store table and
  scale raw 7-decimal integers into token units.
- `rows_to_arrow` / `ingest_query`: validated rows → Arrow table → DuckDB.

Pagination and polling are bounded by `DuneConfig.max_pages` and
`DuneConfig.max_poll_attempts`. Hitting either bound raises
`UnavailableError` rather than handing back a truncated result.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import date, datetime
from typing import Any

import httpx
import pyarrow as pa
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from blendfolio.constants import SCALAR_7
from blendfolio.core.config import DuneConfig
from blendfolio.core.errors import UnavailableError, ValidationError
from blendfolio.domain.timezones import naive_utc
from blendfolio.storage.database import Database

logger = logging.getLogger(__name__)

STATE_COMPLETED = "QUERY_STATE_COMPLETED"
STATE_FAILED = ("QUERY_STATE_FAILED", "QUERY_STATE_CANCELLED", "QUERY_STATE_EXPIRED")


# ---------------------------------------------------------------------------
# API envelopes
# ---------------------------------------------------------------------------


class DuneResultMetadata(BaseModel):
    column_names: list[str] = Field(default_factory=list)
    row_count: int = 0
    total_row_count: int = 0


class DuneResultSet(BaseModel):
    rows: list[dict[str, Any]] = Field(default_factory=list)
    metadata: DuneResultMetadata | None = None


class DuneResponse(BaseModel):
    execution_id: str | None = None
    query_id: int | None = None
    state: str = ""
    result: DuneResultSet | None = None
    next_offset: int | None = None


# ---------------------------------------------------------------------------
# Row models
# ---------------------------------------------------------------------------


def _scale(raw: float | int | None) -> float | None:
    return None if raw is None else float(raw) / SCALAR_7


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore")

    @field_validator("ledger_closed_at", mode="before", check_fields=False)
    @classmethod
    def _strip_utc_suffix(cls, v: Any) -> Any:
        # Dune renders timestamps as "2024-01-01 00:00:00.000 UTC"
        if isinstance(v, str) and v.endswith(" UTC"):
            return v[:-4] + "+00:00"
        return v

    @field_validator("ledger_closed_at", mode="after", check_fields=False)
    @classmethod
    def _naive_utc(cls, v: datetime) -> datetime:
        return naive_utc(v)

    def to_record(self) -> dict[str, Any]:
        return self.model_dump()


class PoolEventRow(_Row):
    """One lending pool event; amounts are raw 7-decimal integers."""

    action_type: str
    user_address: str
    pool_id: str
    asset_address: str | None = None
    amount: float | None = None
    b_tokens: float | None = None
    ledger_closed_at: datetime
    ledger_sequence: int = 0
    tx_hash: str = ""

    def to_record(self) -> dict[str, Any]:
        return {
            "action_type": self.action_type,
            "user_address": self.user_address,
            "pool_id": self.pool_id,
            "asset_address": self.asset_address,
            "amount_tokens": _scale(self.amount),
            "index_units": _scale(self.b_tokens),
            "ledger_closed_at": self.ledger_closed_at,
            "ledger_sequence": self.ledger_sequence,
            "tx_hash": self.tx_hash,
        }


class BackstopEventRow(_Row):
    action_type: str
    user_address: str
    pool_address: str | None = None
    shares: float | None = None
    lp_tokens: float | None = None
    q4w_exp: int | None = None
    ledger_closed_at: datetime
    ledger_sequence: int = 0
    tx_hash: str = ""

    def to_record(self) -> dict[str, Any]:
        record = self.model_dump()
        record["shares"] = _scale(self.shares)
        record["lp_tokens"] = _scale(self.lp_tokens)
        return record


class RateRow(_Row):
    pool_id: str
    asset_address: str
    rate_date: date
    b_rate: float | None = None
    d_rate: float | None = None


class PriceRow(_Row):
    token_address: str
    price_date: date
    usd_price: float


ROW_MODELS: dict[str, type[_Row]] = {
    "parsed_events": PoolEventRow,
    "backstop_events": BackstopEventRow,
    "daily_rates": RateRow,
    "daily_token_prices": PriceRow,
}


def rows_to_arrow(table: str, rows: Iterable[dict[str, Any]]) -> pa.Table:
    """Validate Dune rows for `table` and build an Arrow table of store columns."""
    model = ROW_MODELS.get(table)
    if model is None:
        raise ValidationError(f"no Dune row model for table {table}", "table")
    records: list[dict[str, Any]] = []
    for i, row in enumerate(rows):
        try:
            records.append(model.model_validate(row).to_record())
        except PydanticValidationError as e:
            raise ValidationError(f"row {i} is not a valid {table} row: {e}", "row") from e
    return pa.Table.from_pylist(records)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class DuneClient:
    """Minimal async Dune API client.

    Parameters
    ----------
    config : DuneConfig
        API key, base URL, timeout and page / poll ceilings.
    transport : httpx.AsyncBaseTransport | None
        Injected transport (e.g. `httpx.MockTransport` in tests).
    sleep : Callable[[float], Awaitable[None]]
        Delay between polls; replaced in tests.
    """

    def __init__(
        self,
        config: DuneConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not config.api_key:
            raise ValidationError("Dune API key not found", "api_key")
        self.config = config
        self._sleep = sleep
        t = config.timeout_s
        self.client = httpx.AsyncClient(
            base_url=config.base_url,
            headers={"X-Dune-API-Key": config.api_key},
            timeout=httpx.Timeout(connect=t, read=t, write=t, pool=max(30, t * 3)),
            limits=httpx.Limits(max_connections=8, max_keepalive_connections=4),
            transport=transport,
        )

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> DuneResponse:
        return await self._request("GET", path, params)

    async def _request(self, method: str, path: str, params: dict[str, Any] | None = None) -> DuneResponse:
        try:
            r = await self.client.request(method, path, params=params)
            r.raise_for_status()
            return DuneResponse.model_validate(r.json())
        except httpx.HTTPStatusError as e:
            raise UnavailableError(f"Dune API error ({e.response.status_code}): {e.response.text}") from e
        except httpx.HTTPError as e:
            raise UnavailableError(f"Dune API unreachable: {e}") from e
        except (ValueError, PydanticValidationError) as e:
            raise UnavailableError(f"unexpected Dune response for {path}: {e}") from e

    async def _paginate(self, path: str, first: DuneResponse | None = None) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        page = first
        offset = 0
        for n in range(self.config.max_pages):
            if page is None:
                page = await self._get(path, {"limit": self.config.page_size, "offset": offset})
            batch = page.result.rows if page.result else []
            rows.extend(batch)
            logger.debug("dune %s page %d: %d rows", path, n + 1, len(batch))
            if page.next_offset is None or not batch:
                return rows
            offset = page.next_offset
            page = None
        raise UnavailableError(
            f"Dune results for {path} still paginating after max_pages={self.config.max_pages} ({len(rows)} rows)"
        )

    async def fetch_results(self, query_id: int) -> list[dict[str, Any]]:
        """All rows of the latest stored result of a query."""
        return await self._paginate(f"/query/{int(query_id)}/results")

    async def execute_and_wait(self, query_id: int) -> list[dict[str, Any]]:
        """Execute a query, poll until it completes, then page its rows."""
        started = await self._request("POST", f"/query/{int(query_id)}/execute")
        if not started.execution_id:
            raise UnavailableError(f"Dune did not return an execution id for query {query_id}")
        path = f"/execution/{started.execution_id}/results"

        for attempt in range(self.config.max_poll_attempts):
            status = await self._get(path, {"limit": self.config.page_size, "offset": 0})
            if status.state == STATE_COMPLETED:
                return await self._paginate(path, first=status)
            if status.state in STATE_FAILED:
                raise UnavailableError(f"Dune query {query_id} ended in {status.state}")
            logger.debug("dune execution %s: %s (attempt %d)", started.execution_id, status.state, attempt + 1)
            await self._sleep(self.config.poll_interval_s)
        raise UnavailableError(f"Dune query {query_id} did not complete after {self.config.max_poll_attempts} polls")

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.aclose()


async def ingest_query(
    client: DuneClient,
    db: Database,
    table: str,
    query_id: int,
    *,
    execute: bool = False,
) -> int:
    """Fetch a Dune query's rows and load them into `table`; returns rows loaded."""
    rows = await (client.execute_and_wait(query_id) if execute else client.fetch_results(query_id))
    data = rows_to_arrow(table, rows)
    return await asyncio.to_thread(db.load_arrow, table, data)
