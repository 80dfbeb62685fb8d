"""Error taxonomy shared by the engine, the store adapter and the CLI.

- `ValidationError`: a required identifier (user / asset / pool / timezone)
  is missing or malformed. Raised before any query runs.
- `UnavailableError`: the relational store or an upstream API failed.
  Callers must surface it; zeros are never fabricated in its place.
- `DataGapWarning`: a non-fatal gap (missing rate or price for a date) that
  was resolved by forward-fill or fallback. Collected into reports.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Literal


class BlendfolioError(Exception):
    """Base class for every error raised by blendfolio."""


class ValidationError(BlendfolioError, ValueError):
    """A required identifier is missing or malformed."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field
        self.code = f"INVALID_{field.upper()}" if field else "VALIDATION_ERROR"


class UnavailableError(BlendfolioError, RuntimeError):
    """The underlying store or upstream service could not be reached."""


@dataclass(frozen=True, slots=True)
class DataGapWarning:
    """A missing rate or price that was filled in rather than raised."""

    kind: Literal["rate", "price"]
    subject: str  # "pool:asset" for rates, token address for prices
    on: date
    resolved_by: str  # provenance tag of the substituted value

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["on"] = self.on.isoformat()
        return d


def require_identifier(value: str | None, field: str) -> str:
    """Return a stripped identifier or raise ValidationError."""
    if value is None or not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing required parameter: {field}", field)
    cleaned = value.strip()
    if any(ch.isspace() for ch in cleaned):
        raise ValidationError(f"{field} must not contain whitespace", field)
    return cleaned
