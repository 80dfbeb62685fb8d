from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from datetime import date
from typing import Protocol, runtime_checkable

from blendfolio.core.models import Event, EventPage, Pool, PriceObservation, RateIndex, Token
from blendfolio.domain.balances import LivePosition


# ---------------------------------------------------------------------------
# IEventsRepository
# ---------------------------------------------------------------------------

@runtime_checkable
class IEventsRepository(Protocol):
    """
    Read-only access to the append-only event log.

    Domain expectations:
    - Events come back as `Event` dataclasses ordered by
      `(ledger_closed_at, ledger_sequence, event_id)`.
    - Date bounds are naive UTC instants; local-day conversion is the
      caller's job.
    - Store failures are raised as `UnavailableError`.
    """

    def pool_events(
        self,
        user_address: str,
        *,
        asset_address: str | None = None,
        pool_id: str | None = None,
        action_types: Sequence[str] | None = None,
    ) -> list[Event]:
        """
        Lending pool events of one user.

        Implementations:
        - DuckDB-backed `EventsRepository`
        - In-memory fake for testing
        """
        ...

    def backstop_events(
        self,
        *,
        user_address: str | None = None,
        pool_id: str | None = None,
        action_types: Sequence[str] | None = None,
    ) -> list[Event]:
        """
        Backstop events, optionally restricted to one user and / or pool.

        Q4W aggregation calls this without a user so that pool share rates
        see every deposit and withdrawal.
        """
        ...

    def list_pool_events(
        self,
        user_address: str,
        *,
        asset_address: str | None = None,
        pool_id: str | None = None,
        action_types: Sequence[str] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> EventPage:
        """
        One page of a user's lending events, newest first, with the total
        count computed from the same filters.
        """
        ...

    def q4w_pools(self) -> list[Pool]:
        """Pools with any `queue_withdrawal` activity."""
        ...


# ---------------------------------------------------------------------------
# IRatesRepository
# ---------------------------------------------------------------------------

@runtime_checkable
class IRatesRepository(Protocol):
    """
    Daily rate index rows.

    Domain expectations:
    - Rows for one asset (optionally one pool) with `rate_date` in
      `[start, end]`; either bound may be open.
    """

    def rates(
        self,
        asset_address: str,
        *,
        pool_id: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> list[RateIndex]:
        ...


# ---------------------------------------------------------------------------
# IPricesRepository
# ---------------------------------------------------------------------------

@runtime_checkable
class IPricesRepository(Protocol):
    """
    Daily token prices.

    Domain expectations:
    - A single batch call returns every row of every requested token dated
      on or before `up_to`; duplicates are left for the resolver.
    """

    def prices(self, tokens: Iterable[str], up_to: date) -> list[PriceObservation]:
        ...

    def latest_prices(self, tokens: Iterable[str]) -> dict[str, float]:
        """Most recent stored price per token (missing tokens are omitted)."""
        ...


# ---------------------------------------------------------------------------
# IPoolsRepository
# ---------------------------------------------------------------------------

@runtime_checkable
class IPoolsRepository(Protocol):
    """Pool and token metadata used for labelling."""

    def pools(self) -> dict[str, Pool]:
        ...

    def tokens(self) -> dict[str, Token]:
        ...


# ---------------------------------------------------------------------------
# ILiveBalanceProvider
# ---------------------------------------------------------------------------

@runtime_checkable
class ILiveBalanceProvider(Protocol):
    """
    Optional live view of on-chain state, used to override "today".

    Domain expectations:
    - Returns nothing rather than stale data when no live view exists.

    Implementations:
    - Static mapping supplied on the command line
    - Chain RPC reader
    """

    async def positions(self, user_address: str, asset_address: str) -> Mapping[str, LivePosition]:
        """pool_id → live position of `user_address` in `asset_address`."""
        ...

    async def prices(self, tokens: Iterable[str]) -> Mapping[str, float]:
        """Current USD price per token."""
        ...
