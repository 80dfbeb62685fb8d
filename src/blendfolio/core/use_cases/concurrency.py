"""Structured fan-out of independent read-only sub-fetches."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine, Iterator
from typing import Any, TypeVar

from blendfolio.core.errors import BlendfolioError

T = TypeVar("T")


def read(fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> Coroutine[Any, Any, T]:
    """Run a blocking repository call in a worker thread."""
    return asyncio.to_thread(fn, *args, **kwargs)


async def nothing() -> None:
    return None


def _leaves(group: BaseExceptionGroup) -> Iterator[BaseException]:
    for exc in group.exceptions:
        if isinstance(exc, BaseExceptionGroup):
            yield from _leaves(exc)
        else:
            yield exc


async def run_concurrently(*aws: Awaitable[Any]) -> list[Any]:
    """Await every coroutine inside one TaskGroup and return results in order.

    If one fails the others are cancelled and nothing partial is returned.
    A `BlendfolioError` among the failures is re-raised on its own so
    callers can handle it without unpacking an ExceptionGroup.
    """
    try:
        async with asyncio.TaskGroup() as tg:
            tasks = [tg.create_task(aw) for aw in aws]
    except BaseExceptionGroup as eg:
        for exc in _leaves(eg):
            if isinstance(exc, BlendfolioError):
                raise exc from eg
        raise
    return [t.result() for t in tasks]
