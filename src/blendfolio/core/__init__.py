"""Core data models, configurations and errors.

This package provides:
- Data models (Event, RateIndex, PriceObservation, Pool, Token)
- Configuration classes (StoreConfig, EngineConfig, CacheConfig, DuneConfig)
- Error taxonomy (ValidationError, UnavailableError) and data-gap warnings
"""

from blendfolio.core.config import CacheConfig, DuneConfig, EngineConfig, StoreConfig
from blendfolio.core.errors import BlendfolioError, DataGapWarning, UnavailableError, ValidationError
from blendfolio.core.models import Event, EventPage, Pool, PriceObservation, RateIndex, Token

__all__ = [
    "CacheConfig",
    "DuneConfig",
    "EngineConfig",
    "StoreConfig",
    "BlendfolioError",
    "DataGapWarning",
    "UnavailableError",
    "ValidationError",
    "Event",
    "EventPage",
    "Pool",
    "PriceObservation",
    "RateIndex",
    "Token",
]
