"""Cancellable consumption of backend event streams with an inactivity timeout."""

from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from parley.errors import RequestTimeoutError

T = TypeVar("T")


async def watch_stream(
    events: AsyncIterator[T],
    timeout: float,
    abort_event: asyncio.Event,
    on_event: Optional[Callable[[T], None]] = None,
    streaming: bool = True,
) -> AsyncIterator[T]:
    """Yield events until the source ends, the abort event is set, or it goes quiet.

    The timeout is an inactivity window: it restarts on every event, whatever
    its kind, so a backend that reports progress while a long tool runs is
    never timed out. Raises ``RequestTimeoutError`` when the window elapses.
    """
    iterator = events.__aiter__()
    abort_waiter = asyncio.ensure_future(abort_event.wait())
    try:
        while not abort_event.is_set():
            next_event = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait(
                {next_event, abort_waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if next_event not in done:
                next_event.cancel()
                with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                    await next_event
                if abort_waiter in done:
                    return
                raise RequestTimeoutError(timeout, streaming=streaming)
            try:
                event = next_event.result()
            except StopAsyncIteration:
                return
            if on_event is not None:
                on_event(event)
            yield event
    finally:
        abort_waiter.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await abort_waiter
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


async def race_abort(awaitable: Awaitable[T], abort_event: asyncio.Event) -> Optional[T]:
    """Await *awaitable* unless the abort event fires first; returns None on abort."""
    task = asyncio.ensure_future(awaitable)
    abort_waiter = asyncio.ensure_future(abort_event.wait())
    try:
        done, _ = await asyncio.wait({task, abort_waiter}, return_when=asyncio.FIRST_COMPLETED)
        if task in done:
            return task.result()
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        return None
    finally:
        abort_waiter.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await abort_waiter
