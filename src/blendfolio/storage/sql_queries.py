"""
sql_queries.py
--------------

Centralized SQL for the blendfolio DuckDB store.

Schema DDL and the fixed queries live here; filtered event / rate / price
reads are composed with `blendfolio.storage.query_builder.Query` so their
bind parameters stay named.

All timestamps are naive UTC `TIMESTAMP`s. Local-day bucketing never
happens in SQL.
"""

# =====================================================================
# SCHEMA
# =====================================================================

SCHEMA_DDL = """
CREATE SEQUENCE IF NOT EXISTS parsed_events_seq START 1;
CREATE TABLE IF NOT EXISTS parsed_events (
    event_id          BIGINT PRIMARY KEY DEFAULT nextval('parsed_events_seq'),
    action_type       VARCHAR NOT NULL,
    user_address      VARCHAR NOT NULL,
    pool_id           VARCHAR NOT NULL,
    asset_address     VARCHAR,
    amount_tokens     DOUBLE,
    index_units       DOUBLE,
    ledger_closed_at  TIMESTAMP NOT NULL,
    ledger_sequence   BIGINT DEFAULT 0,
    tx_hash           VARCHAR DEFAULT ''
);

CREATE SEQUENCE IF NOT EXISTS backstop_events_seq START 1;
CREATE TABLE IF NOT EXISTS backstop_events (
    event_id          BIGINT PRIMARY KEY DEFAULT nextval('backstop_events_seq'),
    action_type       VARCHAR NOT NULL,
    user_address      VARCHAR NOT NULL,
    pool_address      VARCHAR,
    shares            DOUBLE,
    lp_tokens         DOUBLE,
    q4w_exp           BIGINT,
    ledger_closed_at  TIMESTAMP NOT NULL,
    ledger_sequence   BIGINT DEFAULT 0,
    tx_hash           VARCHAR DEFAULT ''
);

CREATE SEQUENCE IF NOT EXISTS daily_rates_seq START 1;
CREATE TABLE IF NOT EXISTS daily_rates (
    rate_id        BIGINT PRIMARY KEY DEFAULT nextval('daily_rates_seq'),
    pool_id        VARCHAR NOT NULL,
    asset_address  VARCHAR NOT NULL,
    rate_date      DATE NOT NULL,
    b_rate         DOUBLE,
    d_rate         DOUBLE
);

CREATE SEQUENCE IF NOT EXISTS daily_token_prices_seq START 1;
CREATE TABLE IF NOT EXISTS daily_token_prices (
    price_id       BIGINT PRIMARY KEY DEFAULT nextval('daily_token_prices_seq'),
    token_address  VARCHAR NOT NULL,
    price_date     DATE NOT NULL,
    usd_price      DOUBLE NOT NULL
);

CREATE TABLE IF NOT EXISTS pools (
    pool_id     VARCHAR PRIMARY KEY,
    name        VARCHAR,
    short_name  VARCHAR
);

CREATE TABLE IF NOT EXISTS tokens (
    asset_address  VARCHAR PRIMARY KEY,
    symbol         VARCHAR NOT NULL,
    decimals       INTEGER DEFAULT 7
);
"""

# Tables the loaders may write to, with the columns every input must carry.
LOADABLE_TABLES: dict[str, tuple[str, ...]] = {
    "parsed_events": ("action_type", "user_address", "pool_id", "ledger_closed_at"),
    "backstop_events": ("action_type", "user_address", "ledger_closed_at"),
    "daily_rates": ("pool_id", "asset_address", "rate_date"),
    "daily_token_prices": ("token_address", "price_date", "usd_price"),
    "pools": ("pool_id",),
    "tokens": ("asset_address", "symbol"),
}

# Columns identifying a row across loads. Re-loading a row whose key already
# exists (or repeats within the batch) is a no-op. NULLs compare equal.
NATURAL_KEYS: dict[str, tuple[str, ...]] = {
    "parsed_events": (
        "tx_hash", "ledger_sequence", "ledger_closed_at", "action_type", "user_address",
        "pool_id", "asset_address", "amount_tokens", "index_units",
    ),
    "backstop_events": (
        "tx_hash", "ledger_sequence", "ledger_closed_at", "action_type", "user_address",
        "pool_address", "shares", "lp_tokens", "q4w_exp",
    ),
    "daily_rates": ("pool_id", "asset_address", "rate_date", "b_rate", "d_rate"),
    "daily_token_prices": ("token_address", "price_date", "usd_price"),
    "pools": ("pool_id",),
    "tokens": ("asset_address",),
}

# `load_ordinal` is appended by the loader so first occurrence wins and
# sequence ids follow input order.
DEDUPED_INSERT = """
INSERT INTO {table} BY NAME
SELECT * EXCLUDE (load_ordinal)
FROM incoming_rows AS i
WHERE NOT EXISTS (
    SELECT 1 FROM {table} AS t
    WHERE {match}
)
QUALIFY ROW_NUMBER() OVER (PARTITION BY {keys} ORDER BY load_ordinal) = 1
ORDER BY load_ordinal;
"""


# =====================================================================
# EVENT COLUMNS
# =====================================================================

POOL_EVENT_COLUMNS = """
    event_id,
    action_type,
    user_address,
    pool_id,
    asset_address,
    amount_tokens,
    index_units,
    ledger_closed_at,
    ledger_sequence,
    tx_hash
"""

BACKSTOP_EVENT_COLUMNS = """
    event_id,
    action_type,
    user_address,
    pool_address AS pool_id,
    shares,
    lp_tokens,
    q4w_exp,
    ledger_closed_at,
    ledger_sequence,
    tx_hash
"""

EVENT_ORDER = ("ledger_closed_at", "ledger_sequence", "event_id")
EVENT_ORDER_DESC = ("ledger_closed_at DESC", "ledger_sequence DESC", "event_id DESC")


# =====================================================================
# RATES / PRICES
# =====================================================================

RATE_COLUMNS = "pool_id, asset_address, rate_date, b_rate, d_rate"

PRICE_COLUMNS = "price_id, token_address, price_date, usd_price"

LATEST_PRICES_QUERY = """
SELECT token_address, usd_price
FROM (
    SELECT
        token_address,
        usd_price,
        ROW_NUMBER() OVER (
            PARTITION BY token_address
            ORDER BY price_date DESC, price_id ASC
        ) AS rn
    FROM daily_token_prices
    WHERE token_address IN ({tokens})
)
WHERE rn = 1;
"""


# =====================================================================
# METADATA
# =====================================================================

POOLS_QUERY = "SELECT pool_id, name, short_name FROM pools ORDER BY pool_id;"

TOKENS_QUERY = "SELECT asset_address, symbol, decimals FROM tokens ORDER BY symbol;"

Q4W_POOLS_QUERY = """
SELECT DISTINCT
    be.pool_address AS pool_id,
    p.name,
    p.short_name
FROM backstop_events be
LEFT JOIN pools p ON be.pool_address = p.pool_id
WHERE be.action_type = 'queue_withdrawal'
  AND be.pool_address IS NOT NULL
ORDER BY p.name NULLS LAST, pool_id;
"""

TABLE_COUNTS_QUERY = """
SELECT 'parsed_events' AS table_name, COUNT(*) AS row_count FROM parsed_events
UNION ALL SELECT 'backstop_events', COUNT(*) FROM backstop_events
UNION ALL SELECT 'daily_rates', COUNT(*) FROM daily_rates
UNION ALL SELECT 'daily_token_prices', COUNT(*) FROM daily_token_prices
UNION ALL SELECT 'pools', COUNT(*) FROM pools
UNION ALL SELECT 'tokens', COUNT(*) FROM tokens;
"""
