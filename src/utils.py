"""Shared utility functions for the prompt-forge application."""

import asyncio
import re
from datetime import datetime
from typing import Awaitable, TypeVar

from backend_errors import OperationCancelled

T = TypeVar("T")


async def run_until_cancelled(awaitable: Awaitable[T], cancel_event: asyncio.Event | None) -> T:
    """Await a backend call, abandoning it as soon as cancel_event is set.

    The call runs in its own task so that cancelling it also closes any
    in-flight HTTP request instead of waiting for the response.

    Args:
        awaitable: The backend call to run
        cancel_event: Signal that aborts the call (None means not cancellable)

    Returns:
        The result of the awaitable

    Raises:
        OperationCancelled: If cancel_event fired before the call finished
    """
    if cancel_event is None:
        return await awaitable
    if cancel_event.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise OperationCancelled("Operation cancelled before it started")

    call = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        call.cancel()
        waiter.cancel()
        raise

    if call.done():
        waiter.cancel()
        return call.result()

    call.cancel()
    try:
        await call
    except (asyncio.CancelledError, Exception):
        # The result of an abandoned call is irrelevant
        pass
    raise OperationCancelled("Operation cancelled by user")


def truncate(text: str, limit: int = 200) -> str:
    """Shorten text for log lines and error messages."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def short_id(identifier: str) -> str:
    """First 8 characters of an id, used to tag log lines."""
    return identifier[:8]


def timestamp_slug(moment: datetime | None = None) -> str:
    """Filesystem-friendly timestamp (YYYYMMDD_HHMMSS)."""
    return (moment or datetime.now()).strftime("%Y%m%d_%H%M%S")


def slugify(text: str, max_length: int = 40) -> str:
    """Lowercase, dash-separated slug used in artifact filenames."""
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-") or "image"
