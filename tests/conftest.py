from datetime import date, datetime
from unittest.mock import AsyncMock

import pandas as pd
import pytest

from blendfolio.constants import LP_TOKEN_ADDRESS
from blendfolio.core.config import StoreConfig
from blendfolio.storage.database import Database

USER = "GUSER1"
OTHER_USER = "GUSER2"
POOL = "CPOOL1"
POOL_2 = "CPOOL2"
USDC = "CUSDC"


def _nullable_ints(df: pd.DataFrame) -> pd.DataFrame:
    df["q4w_exp"] = df["q4w_exp"].astype("Int64")
    return df


@pytest.fixture
def db():
    database = Database(StoreConfig(database=":memory:", threads=1))
    database.init_schema()
    yield database
    database.close()


@pytest.fixture
def seeded_db(db):
    """Small store: one USDC position, one backstop position and a Q4W entry."""
    db.load_dataframe(
        "parsed_events",
        pd.DataFrame(
            [
                dict(action_type="supply", user_address=USER, pool_id=POOL, asset_address=USDC,
                     amount_tokens=1000.0, index_units=1000.0, ledger_closed_at=datetime(2024, 1, 1, 10),
                     ledger_sequence=1, tx_hash="tx1"),
                dict(action_type="withdraw", user_address=USER, pool_id=POOL, asset_address=USDC,
                     amount_tokens=408.0, index_units=400.0, ledger_closed_at=datetime(2024, 1, 3, 10),
                     ledger_sequence=2, tx_hash="tx2"),
                dict(action_type="supply", user_address=OTHER_USER, pool_id=POOL, asset_address=USDC,
                     amount_tokens=50.0, index_units=50.0, ledger_closed_at=datetime(2024, 1, 2, 9),
                     ledger_sequence=3, tx_hash="tx3"),
            ]
        ),
    )
    db.load_dataframe(
        "backstop_events",
        _nullable_ints(pd.DataFrame(
            [
                dict(action_type="deposit", user_address=USER, pool_address=POOL, shares=100.0,
                     lp_tokens=200.0, q4w_exp=None, ledger_closed_at=datetime(2024, 1, 1, 12),
                     ledger_sequence=4, tx_hash="tx4"),
                dict(action_type="queue_withdrawal", user_address=USER, pool_address=POOL, shares=40.0,
                     lp_tokens=None, q4w_exp=1_800_000_000, ledger_closed_at=datetime(2024, 1, 2, 12),
                     ledger_sequence=5, tx_hash="tx5"),
            ]
        )),
    )
    db.load_dataframe(
        "daily_rates",
        pd.DataFrame(
            [
                dict(pool_id=POOL, asset_address=USDC, rate_date=date(2024, 1, 1), b_rate=1.00, d_rate=1.00),
                dict(pool_id=POOL, asset_address=USDC, rate_date=date(2024, 1, 2), b_rate=1.01, d_rate=1.02),
                dict(pool_id=POOL, asset_address=USDC, rate_date=date(2024, 1, 3), b_rate=1.02, d_rate=1.04),
            ]
        ),
    )
    db.load_dataframe(
        "daily_token_prices",
        pd.DataFrame(
            [
                dict(token_address=USDC, price_date=date(2024, 1, 1), usd_price=1.00),
                dict(token_address=USDC, price_date=date(2024, 1, 3), usd_price=1.10),
                dict(token_address=USDC, price_date=date(2024, 1, 3), usd_price=9.99),  # later duplicate
                dict(token_address=LP_TOKEN_ADDRESS, price_date=date(2024, 1, 1), usd_price=0.50),
            ]
        ),
    )
    db.load_dataframe("pools", pd.DataFrame([dict(pool_id=POOL, name="Fixed XLM-USDC", short_name="Fixed")]))
    db.load_dataframe("tokens", pd.DataFrame([dict(asset_address=USDC, symbol="USDC", decimals=7)]))
    return db


@pytest.fixture
def mock_live():
    live = AsyncMock()
    live.positions = AsyncMock(return_value={})
    live.prices = AsyncMock(return_value={})
    return live
