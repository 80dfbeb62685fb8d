"""DuckDB repository tests against the seeded in-memory store."""

from datetime import date, datetime

import pandas as pd
import pytest

from blendfolio.constants import LP_TOKEN_ADDRESS
from blendfolio.core.errors import ValidationError
from blendfolio.domain.rates import RateIndexResolver
from blendfolio.storage.repositories import (
    EventsRepository,
    PoolsRepository,
    PricesRepository,
    RatesRepository,
    _opt_float,
    _opt_int,
)

USER = "GUSER1"
OTHER_USER = "GUSER2"
POOL = "CPOOL1"
USDC = "CUSDC"


class TestEventsRepository:
    def test_pool_events_oldest_first(self, seeded_db):
        events = EventsRepository(seeded_db).pool_events(USER)
        assert [e.action_type for e in events] == ["supply", "withdraw"]
        assert events[0].ledger_closed_at == datetime(2024, 1, 1, 10)
        assert events[1].index_units == 400.0
        assert events[0].event_id < events[1].event_id

    def test_pool_events_action_filter(self, seeded_db):
        repo = EventsRepository(seeded_db)
        assert [e.action_type for e in repo.pool_events(USER, action_types=["withdraw"])] == ["withdraw"]
        assert repo.pool_events(USER, action_types=[]) == []
        assert repo.pool_events(USER, asset_address="COTHER") == []

    def test_list_pool_events_page_and_count(self, seeded_db):
        repo = EventsRepository(seeded_db)
        page = repo.list_pool_events(USER, limit=1, offset=0)
        assert page.total_count == 2
        assert [e.action_type for e in page.events] == ["withdraw"]
        rest = repo.list_pool_events(USER, limit=1, offset=1)
        assert [e.action_type for e in rest.events] == ["supply"]
        assert repo.list_pool_events(OTHER_USER).total_count == 1

    def test_backstop_pool_address_mapped(self, seeded_db):
        events = EventsRepository(seeded_db).backstop_events(user_address=USER)
        assert {e.pool_id for e in events} == {POOL}
        deposit, queued = events
        assert deposit.q4w_exp is None
        assert queued.q4w_exp == 1_800_000_000
        assert queued.lp_tokens is None

    def test_q4w_pools_joined_with_metadata(self, seeded_db):
        (pool,) = EventsRepository(seeded_db).q4w_pools()
        assert (pool.pool_id, pool.short_name) == (POOL, "Fixed")

    def test_all_null_columns_read_as_none(self, db):
        # A deposit-only backstop batch has no q4w_exp at all; claims carry no index_units.
        backstop = pd.DataFrame(
            [dict(action_type="deposit", user_address=USER, pool_address=POOL, shares=10.0,
                  lp_tokens=20.0, q4w_exp=None, ledger_closed_at=datetime(2024, 2, 1, 8))]
        )
        backstop["q4w_exp"] = backstop["q4w_exp"].astype("Int64")
        db.load_dataframe("backstop_events", backstop)
        db.load_dataframe(
            "parsed_events",
            pd.DataFrame(
                [dict(action_type="claim", user_address=USER, pool_id=POOL, asset_address=None,
                      amount_tokens=5.0, index_units=None, ledger_closed_at=datetime(2024, 2, 1, 9))]
            ),
        )
        repo = EventsRepository(db)

        (deposit,) = repo.backstop_events(user_address=USER)
        assert deposit.q4w_exp is None
        assert deposit.shares == 10.0
        assert deposit.tx_hash == ""
        assert deposit.ledger_sequence == 0

        (claim,) = repo.pool_events(USER)
        assert claim.index_units is None
        assert claim.asset_address is None
        assert claim.amount_tokens == 5.0

    def test_pandas_missing_scalars_map_to_none(self):
        assert _opt_int(pd.NA) is None
        assert _opt_int(float("nan")) is None
        assert _opt_float(pd.NaT) is None
        assert _opt_int(7) == 7


class TestRatesRepository:
    def test_range(self, seeded_db):
        rows = RatesRepository(seeded_db).rates(USDC, pool_id=POOL, start=date(2024, 1, 2))
        assert [r.rate_date for r in rows] == [date(2024, 1, 2), date(2024, 1, 3)]
        assert rows[-1].d_rate == 1.04

    def test_unknown_asset(self, seeded_db):
        assert RatesRepository(seeded_db).rates("CNONE") == []

    def test_same_day_duplicates_resolve_to_first_inserted(self, db):
        day = date(2024, 3, 1)
        db.load_dataframe(
            "daily_rates",
            pd.DataFrame([dict(pool_id=POOL, asset_address=USDC, rate_date=day, b_rate=1.10, d_rate=1.20)]),
        )
        db.load_dataframe(
            "daily_rates",
            pd.DataFrame(
                [
                    dict(pool_id=POOL, asset_address=USDC, rate_date=day, b_rate=1.05, d_rate=1.06),
                    dict(pool_id=POOL, asset_address=USDC, rate_date=day, b_rate=None, d_rate=1.30),
                ]
            ),
        )
        rows = RatesRepository(db).rates(USDC, pool_id=POOL)
        assert [r.b_rate for r in rows] == [1.10, 1.05, None]

        lookup = RateIndexResolver(rows).lookup_utc(POOL, USDC, day)
        assert (lookup.b_rate, lookup.d_rate, lookup.source) == (1.10, 1.20, "exact")


class TestPricesRepository:
    def test_duplicates_returned_in_insert_order(self, seeded_db):
        rows = PricesRepository(seeded_db).prices([USDC], date(2024, 1, 3))
        dupes = [r for r in rows if r.price_date == date(2024, 1, 3)]
        assert [r.usd_price for r in dupes] == [1.10, 9.99]
        assert dupes[0].price_id < dupes[1].price_id

    def test_up_to_bound(self, seeded_db):
        rows = PricesRepository(seeded_db).prices([USDC], date(2024, 1, 2))
        assert [r.price_date for r in rows] == [date(2024, 1, 1)]

    def test_latest_prices_prefers_first_inserted_duplicate(self, seeded_db):
        latest = PricesRepository(seeded_db).latest_prices([USDC, LP_TOKEN_ADDRESS, "CNONE"])
        assert latest == {USDC: 1.10, LP_TOKEN_ADDRESS: 0.50}
        assert PricesRepository(seeded_db).latest_prices([]) == {}


class TestPoolsRepository:
    def test_pools_and_tokens(self, seeded_db):
        repo = PoolsRepository(seeded_db)
        assert repo.pools()[POOL].name == "Fixed XLM-USDC"
        assert repo.tokens()[USDC].symbol == "USDC"


class TestLoaders:
    def test_parquet_roundtrip_into_store(self, db, tmp_path):
        path = tmp_path / "pools.parquet"
        pd.DataFrame([dict(pool_id="CPOOL9", name="Yieldblox", short_name="YBX")]).to_parquet(path)
        assert db.load_parquet("pools", path) == 1
        assert db.table_counts()["pools"] == 1

    def test_reloading_same_rows_is_a_no_op(self, db):
        events = pd.DataFrame(
            [
                dict(action_type="supply", user_address=USER, pool_id=POOL, asset_address=USDC,
                     amount_tokens=10.0, index_units=10.0, ledger_closed_at=datetime(2024, 1, 1, 10),
                     ledger_sequence=1, tx_hash="tx1"),
                dict(action_type="borrow", user_address=USER, pool_id=POOL, asset_address=USDC,
                     amount_tokens=4.0, index_units=None, ledger_closed_at=datetime(2024, 1, 2, 10),
                     ledger_sequence=2, tx_hash="tx2"),
            ]
        )
        assert db.load_dataframe("parsed_events", events) == 2
        assert db.load_dataframe("parsed_events", events) == 0
        assert db.table_counts()["parsed_events"] == 2

        first, second = EventsRepository(db).pool_events(USER)
        assert (first.tx_hash, second.tx_hash) == ("tx1", "tx2")
        assert first.event_id < second.event_id

    def test_duplicates_within_one_batch_collapse(self, db):
        pools = pd.DataFrame(
            [
                dict(pool_id="CPOOL9", name="Yieldblox", short_name="YBX"),
                dict(pool_id="CPOOL9", name="Yieldblox v2", short_name="YBX2"),
            ]
        )
        assert db.load_dataframe("pools", pools) == 1
        assert PoolsRepository(db).pools()["CPOOL9"].name == "Yieldblox"
        assert db.load_dataframe("pools", pools) == 0

    def test_missing_columns_rejected(self, db, tmp_path):
        path = tmp_path / "prices.parquet"
        pd.DataFrame([dict(token_address=USDC, usd_price=1.0)]).to_parquet(path)
        with pytest.raises(ValidationError, match="price_date"):
            db.load_parquet("daily_token_prices", path)

    def test_unknown_table(self, db):
        with pytest.raises(ValidationError):
            db.load_dataframe("secrets", pd.DataFrame([dict(a=1)]))

    def test_unreadable_file(self, db, tmp_path):
        path = tmp_path / "broken.parquet"
        path.write_text("not parquet")
        with pytest.raises(ValidationError):
            db.load_parquet("pools", path)
