"""Tests for utility functions."""

import asyncio
from datetime import datetime

import pytest

from backend_errors import OperationCancelled
from utils import run_until_cancelled, short_id, slugify, timestamp_slug, truncate


class TestUtils:
    """Tests for utility functions."""

    def test_truncate(self):
        assert truncate("short") == "short"
        assert truncate("x" * 10, 4) == "xxxx..."

    def test_short_id(self):
        assert short_id("0123456789abcdef") == "01234567"

    def test_timestamp_slug(self):
        assert timestamp_slug(datetime(2024, 1, 15, 14, 30, 22)) == "20240115_143022"

    def test_slugify(self):
        assert slugify("A Cat on a Throne!") == "a-cat-on-a-throne"
        assert slugify("***") == "image"
        assert len(slugify("word " * 50)) <= 40


class TestRunUntilCancelled:
    """Tests for run_until_cancelled."""

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work():
            return 42

        assert await run_until_cancelled(work(), asyncio.Event()) == 42

    @pytest.mark.asyncio
    async def test_no_event_awaits_directly(self):
        async def work():
            return "done"

        assert await run_until_cancelled(work(), None) == "done"

    @pytest.mark.asyncio
    async def test_propagates_errors(self):
        async def work():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            await run_until_cancelled(work(), asyncio.Event())

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        started = []

        async def work():
            started.append(True)

        event = asyncio.Event()
        event.set()
        with pytest.raises(OperationCancelled):
            await run_until_cancelled(work(), event)
        assert started == []

    @pytest.mark.asyncio
    async def test_cancel_interrupts_inflight_call(self):
        finished = []
        event = asyncio.Event()

        async def slow():
            try:
                await asyncio.sleep(10)
            finally:
                finished.append("cleaned up")

        async def cancel_soon():
            await asyncio.sleep(0.01)
            event.set()

        canceller = asyncio.create_task(cancel_soon())
        with pytest.raises(OperationCancelled):
            await run_until_cancelled(slow(), event)
        await canceller

        assert finished == ["cleaned up"]
