"""
database.py
-----------

DuckDB connection ownership, schema creation and bulk loading.

- `get_connection`: short-lived connection with performance PRAGMAs.
- `Database`: long-lived handle used by the repositories; hands out
  per-call cursors so blocking reads can run in worker threads.
- Loaders: parquet files (schema-checked with pyarrow), Arrow tables and
  pandas DataFrames, all inserted `BY NAME` so omitted columns take their
  defaults.

Every `duckdb.Error` leaving this module is re-raised as `UnavailableError`.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import duckdb
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from blendfolio.core.config import StoreConfig
from blendfolio.core.errors import UnavailableError, ValidationError
from blendfolio.storage import sql_queries

logger = logging.getLogger(__name__)


# =====================================================================
# Connection setup
# =====================================================================

def _apply_pragmas(con: duckdb.DuckDBPyConnection, config: StoreConfig) -> None:
    con.execute(f"PRAGMA threads={int(config.threads)}")
    con.execute(f"PRAGMA memory_limit='{config.memory_limit}'")
    con.execute("PRAGMA enable_object_cache=true")


@contextmanager
def get_connection(config: StoreConfig | None = None) -> Iterator[duckdb.DuckDBPyConnection]:
    """Context manager for a DuckDB connection with optimized PRAGMAs.

    Args:
        config: Store configuration (database path, threads, memory limit).

    Yields:
        Configured DuckDB connection, closed on exit.
    """
    cfg = config or StoreConfig()
    try:
        con = duckdb.connect(str(cfg.database), read_only=cfg.read_only)
    except duckdb.Error as e:
        raise UnavailableError(f"cannot open database {cfg.database}: {e}") from e
    try:
        _apply_pragmas(con, cfg)
        yield con
    finally:
        con.close()


# =====================================================================
# Database handle
# =====================================================================

class Database:
    """Long-lived DuckDB handle shared by the repositories.

    The connection is opened lazily. Each repository call takes its own
    cursor, which DuckDB allows to be used from another thread.
    """

    def __init__(self, config: StoreConfig | None = None) -> None:
        self.config = config or StoreConfig()
        self._con: duckdb.DuckDBPyConnection | None = None
        self._lock = threading.Lock()

    def connect(self) -> duckdb.DuckDBPyConnection:
        with self._lock:
            if self._con is None:
                try:
                    con = duckdb.connect(str(self.config.database), read_only=self.config.read_only)
                    _apply_pragmas(con, self.config)
                except duckdb.Error as e:
                    raise UnavailableError(f"cannot open database {self.config.database}: {e}") from e
                logger.debug("opened duckdb database %s", self.config.database)
                self._con = con
            return self._con

    @contextmanager
    def cursor(self) -> Iterator[duckdb.DuckDBPyConnection]:
        cur = self.connect().cursor()
        try:
            yield cur
        except duckdb.Error as e:
            raise UnavailableError(f"query failed: {e}") from e
        finally:
            cur.close()

    def close(self) -> None:
        with self._lock:
            if self._con is not None:
                self._con.close()
                self._con = None

    def __enter__(self) -> Database:
        self.connect()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -----------------------------------------------------------------
    # Schema
    # -----------------------------------------------------------------

    def init_schema(self) -> None:
        """Create every table and sequence if missing (idempotent)."""
        with self.cursor() as cur:
            cur.execute(sql_queries.SCHEMA_DDL)
        logger.info("schema ready in %s", self.config.database)

    def table_counts(self) -> dict[str, int]:
        with self.cursor() as cur:
            df = cur.execute(sql_queries.TABLE_COUNTS_QUERY).df()
        return {str(r.table_name): int(r.row_count) for r in df.itertuples(index=False)}

    # -----------------------------------------------------------------
    # Loaders
    # -----------------------------------------------------------------

    @staticmethod
    def _check_columns(table: str, columns: list[str]) -> None:
        required = sql_queries.LOADABLE_TABLES.get(table)
        if required is None:
            raise ValidationError(f"unknown table: {table}", "table")
        missing = [c for c in required if c not in columns]
        if missing:
            raise ValidationError(f"{table} input is missing columns: {', '.join(missing)}", "columns")

    def load_arrow(self, table: str, data: pa.Table) -> int:
        """Insert an Arrow table into `table` by column name; returns rows inserted.

        Rows whose natural key is already stored, or repeats earlier in the
        batch, are skipped, so loading the same file twice is idempotent.
        """
        if data.num_rows == 0:
            return 0
        self._check_columns(table, list(data.column_names))
        keys = [c for c in sql_queries.NATURAL_KEYS[table] if c in data.column_names]
        sql = sql_queries.DEDUPED_INSERT.format(
            table=table,
            match=" AND ".join(f"t.{c} IS NOT DISTINCT FROM i.{c}" for c in keys),
            keys=", ".join(keys),
        )
        data = data.append_column("load_ordinal", pa.array(range(data.num_rows), type=pa.int64()))
        with self.cursor() as cur:
            cur.register("incoming_rows", data)
            try:
                inserted = int(cur.execute(sql).fetchone()[0])
            finally:
                cur.unregister("incoming_rows")
        skipped = data.num_rows - inserted
        if skipped:
            logger.info("skipped %d already-loaded rows for %s", skipped, table)
        logger.info("loaded %d rows into %s", inserted, table)
        return inserted

    def load_dataframe(self, table: str, df: pd.DataFrame) -> int:
        return self.load_arrow(table, pa.Table.from_pandas(df, preserve_index=False))

    def load_parquet(self, table: str, path: str | Path) -> int:
        """Insert a parquet file into `table` after checking its schema."""
        try:
            schema = pq.read_schema(str(path))
        except (OSError, pa.ArrowInvalid) as e:
            raise ValidationError(f"cannot read parquet file {path}: {e}", "path") from e
        self._check_columns(table, list(schema.names))
        return self.load_arrow(table, pq.read_table(str(path)))
