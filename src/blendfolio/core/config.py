from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from blendfolio.constants import (
    DEFAULT_SHARE_RATE,
    DEFAULT_TIMEZONE,
    POSITION_CHANGE_THRESHOLD,
    Q4W_EPSILON,
)


@dataclass(frozen=True)
class StoreConfig:
    """Configuration for the DuckDB-backed relational store."""

    database: Path | str = ":memory:"
    read_only: bool = False
    threads: int = 4
    memory_limit: str = "2GB"


@dataclass(frozen=True)
class EngineConfig:
    """Numeric knobs of the reconstruction engine."""

    default_timezone: str = DEFAULT_TIMEZONE
    position_change_threshold: float = POSITION_CHANGE_THRESHOLD
    q4w_epsilon: float = Q4W_EPSILON
    default_share_rate: float = DEFAULT_SHARE_RATE
    history_days: int = 30
    apy_days: int = 180
    q4w_page_size: int = 50


@dataclass(frozen=True)
class CacheConfig:
    """TTL tiers (seconds) used by the Portfolio facade."""

    short_ttl: int = 60  # prices
    medium_ttl: int = 300  # user-specific computed reports
    long_ttl: int = 900  # rates / APY history
    very_long_ttl: int = 3600  # pool metadata
    max_entries: int = 1_024


@dataclass(frozen=True)
class DuneConfig:
    """Configuration for the Dune Analytics results loader."""

    api_key: str
    base_url: str = "https://api.dune.com/api/v1"
    timeout_s: int = 30
    page_size: int = 1_000
    max_pages: int = 100  # hard ceiling on result pagination
    poll_interval_s: float = 2.0
    max_poll_attempts: int = 60  # 60 x 2s = 2 minutes
