"""Tests for the Dune results client against an httpx MockTransport."""

from datetime import datetime

import httpx
import pytest

from blendfolio.clients.dune import DuneClient, ingest_query, rows_to_arrow
from blendfolio.core.config import DuneConfig
from blendfolio.core.errors import UnavailableError, ValidationError


def _rows(start: int, n: int) -> list[dict]:
    return [
        {
            "action_type": "supply",
            "user_address": f"G{i}",
            "pool_id": "CPOOL1",
            "asset_address": "CUSDC",
            "amount": 10_000_000 * (i + 1),
            "b_tokens": 10_000_000,
            "ledger_closed_at": "2024-01-01 10:00:00.000 UTC",
            "ledger_sequence": i,
            "tx_hash": f"tx{i}",
            "extra_column": "ignored",
        }
        for i in range(start, start + n)
    ]


async def _no_sleep(_: float) -> None:
    return None


def _client(handler, **overrides) -> DuneClient:
    config = DuneConfig(api_key="test-key", page_size=2, max_pages=3, max_poll_attempts=3, **overrides)
    return DuneClient(config, transport=httpx.MockTransport(handler), sleep=_no_sleep)


class TestPagination:
    @pytest.mark.asyncio
    async def test_follows_next_offset(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            offset = int(request.url.params.get("offset", 0))
            nxt = offset + 2 if offset == 0 else None
            return httpx.Response(200, json={"result": {"rows": _rows(offset, 2 if offset == 0 else 1)},
                                             "next_offset": nxt})

        client = _client(handler)
        try:
            rows = await client.fetch_results(42)
        finally:
            await client.aclose()
        assert len(rows) == 3
        assert seen[0].url.path.endswith("/query/42/results")
        assert seen[0].headers["X-Dune-API-Key"] == "test-key"

    @pytest.mark.asyncio
    async def test_page_ceiling_raises_instead_of_truncating(self):
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            offset = int(request.url.params.get("offset", 0))
            return httpx.Response(200, json={"result": {"rows": _rows(offset, 2)}, "next_offset": offset + 2})

        client = _client(handler)
        try:
            with pytest.raises(UnavailableError, match="max_pages=3"):
                await client.fetch_results(1)
        finally:
            await client.aclose()
        assert calls == 3

    @pytest.mark.asyncio
    async def test_http_error_is_unavailable(self):
        client = _client(lambda request: httpx.Response(500, text="boom"))
        try:
            with pytest.raises(UnavailableError, match="500"):
                await client.fetch_results(1)
        finally:
            await client.aclose()


class TestExecution:
    @pytest.mark.asyncio
    async def test_polls_until_complete(self):
        states = iter(["QUERY_STATE_PENDING", "QUERY_STATE_EXECUTING", "QUERY_STATE_COMPLETED"])

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                assert request.url.path.endswith("/query/7/execute")
                return httpx.Response(200, json={"execution_id": "01EXEC", "state": "QUERY_STATE_PENDING"})
            assert "/execution/01EXEC/results" in request.url.path
            state = next(states)
            body = {"execution_id": "01EXEC", "state": state}
            if state == "QUERY_STATE_COMPLETED":
                body["result"] = {"rows": _rows(0, 1)}
            return httpx.Response(200, json=body)

        client = _client(handler)
        try:
            rows = await client.execute_and_wait(7)
        finally:
            await client.aclose()
        assert len(rows) == 1

    @pytest.mark.asyncio
    async def test_poll_ceiling(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"execution_id": "01EXEC", "state": "QUERY_STATE_EXECUTING"})

        client = _client(handler)
        try:
            with pytest.raises(UnavailableError, match="did not complete"):
                await client.execute_and_wait(7)
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_failed_state(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"execution_id": "01EXEC", "state": "QUERY_STATE_FAILED"})

        client = _client(handler)
        try:
            with pytest.raises(UnavailableError, match="QUERY_STATE_FAILED"):
                await client.execute_and_wait(7)
        finally:
            await client.aclose()


class TestRows:
    def test_missing_api_key(self):
        with pytest.raises(ValidationError):
            DuneClient(DuneConfig(api_key=""))

    def test_pool_rows_scaled(self):
        table = rows_to_arrow("parsed_events", _rows(0, 2))
        records = table.to_pylist()
        assert records[1]["amount_tokens"] == 2.0
        assert records[0]["index_units"] == 1.0
        assert records[0]["ledger_closed_at"] == datetime(2024, 1, 1, 10)
        assert "extra_column" not in table.column_names

    def test_invalid_row(self):
        with pytest.raises(ValidationError):
            rows_to_arrow("parsed_events", [{"action_type": "supply"}])

    def test_unknown_table(self):
        with pytest.raises(ValidationError):
            rows_to_arrow("pools", [])

    @pytest.mark.asyncio
    async def test_ingest_into_store(self, db):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"result": {"rows": _rows(0, 2)}, "next_offset": None})

        client = _client(handler)
        try:
            n = await ingest_query(client, db, "parsed_events", 5)
        finally:
            await client.aclose()
        assert n == 2
        assert db.table_counts()["parsed_events"] == 2
