from __future__ import annotations

from .api.portfolio import Portfolio, StaticLiveProvider
from .core.config import CacheConfig, DuneConfig, EngineConfig, StoreConfig
from .core.errors import BlendfolioError, DataGapWarning, UnavailableError, ValidationError
from .core.models import Event, Pool, PriceObservation, RateIndex

__version__ = "0.1.0"

__all__ = [
    "Portfolio",
    "StaticLiveProvider",
    "StoreConfig",
    "EngineConfig",
    "CacheConfig",
    "DuneConfig",
    "BlendfolioError",
    "ValidationError",
    "UnavailableError",
    "DataGapWarning",
    "Event",
    "RateIndex",
    "PriceObservation",
    "Pool",
]
