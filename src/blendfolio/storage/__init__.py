"""DuckDB storage: schema, loaders and read repositories.

This package provides:
- Database: lazily-opened DuckDB handle with schema setup and bulk loaders
- Repositories: parameterized reads of events, rates, prices and pools
"""

from blendfolio.storage.database import Database, get_connection
from blendfolio.storage.repositories import (
    EventsRepository,
    PoolsRepository,
    PricesRepository,
    RatesRepository,
)

__all__ = [
    "Database",
    "get_connection",
    "EventsRepository",
    "PoolsRepository",
    "PricesRepository",
    "RatesRepository",
]
