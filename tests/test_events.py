"""Tests for the event bus and token coalescing."""

import asyncio

import pytest

from events import (
    EventBus,
    TokenCoalescer,
    JOB_ENQUEUED,
    STAGE_COMPLETE,
    STAGE_START,
    STAGE_TOKEN,
)


class TestEventBus:
    """Tests for EventBus subscriptions."""

    @pytest.mark.asyncio
    async def test_subscriber_receives_published_event(self):
        bus = EventBus()
        sub = bus.subscribe()

        bus.publish(STAGE_START, {"run_id": "r1", "stage": "ideator", "model": "m"})
        event = await sub.get(timeout=1)

        assert event.topic == STAGE_START
        assert event.data["stage"] == "ideator"

    @pytest.mark.asyncio
    async def test_topic_filter(self):
        bus = EventBus()
        sub = bus.subscribe([JOB_ENQUEUED])

        bus.publish(STAGE_START, {"stage": "ideator"})
        bus.publish(JOB_ENQUEUED, {"job_id": "j1"})

        event = await sub.get(timeout=1)
        assert event.topic == JOB_ENQUEUED
        assert sub.pending() == 0

    @pytest.mark.asyncio
    async def test_subscribers_are_independent(self):
        bus = EventBus()
        first = bus.subscribe()
        second = bus.subscribe()

        bus.publish(STAGE_START, {"stage": "ideator"})
        assert (await first.get(timeout=1)).topic == STAGE_START

        # Reading from one subscriber does not consume the other's copy
        assert second.pending() == 1

    @pytest.mark.asyncio
    async def test_get_times_out(self):
        bus = EventBus()
        sub = bus.subscribe()

        with pytest.raises(asyncio.TimeoutError):
            await sub.get(timeout=0.01)

    @pytest.mark.asyncio
    async def test_get_wakes_on_publish(self):
        bus = EventBus()
        sub = bus.subscribe()

        async def publish_later():
            await asyncio.sleep(0.01)
            bus.publish(STAGE_COMPLETE, {"stage": "judge"})

        task = asyncio.create_task(publish_later())
        event = await sub.get(timeout=1)
        await task

        assert event.topic == STAGE_COMPLETE

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self):
        bus = EventBus()
        sub = bus.subscribe()
        sub.close()

        bus.publish(STAGE_START, {})

        assert sub.pending() == 0
        assert bus.subscriber_count == 0

    @pytest.mark.asyncio
    async def test_backpressure_drops_oldest_token_event(self):
        bus = EventBus()
        sub = bus.subscribe(maxsize=3)

        for token in ("a", "b", "c"):
            bus.publish(STAGE_TOKEN, {"token": token})
        bus.publish(STAGE_COMPLETE, {"stage": "ideator"})

        received = [sub.get_nowait() for _ in range(sub.pending())]
        assert [e.data.get("token") for e in received] == ["b", "c", None]
        assert received[-1].topic == STAGE_COMPLETE
        assert sub.dropped == 1

    @pytest.mark.asyncio
    async def test_backpressure_drops_incoming_token_when_full_of_lifecycle(self):
        bus = EventBus()
        sub = bus.subscribe(maxsize=2)

        bus.publish(STAGE_START, {"stage": "ideator"})
        bus.publish(STAGE_COMPLETE, {"stage": "ideator"})
        bus.publish(STAGE_TOKEN, {"token": "late"})

        assert sub.pending() == 2
        assert sub.dropped == 1

    @pytest.mark.asyncio
    async def test_lifecycle_events_never_dropped(self):
        bus = EventBus()
        sub = bus.subscribe(maxsize=1)

        bus.publish(STAGE_START, {"stage": "ideator"})
        bus.publish(STAGE_COMPLETE, {"stage": "ideator"})

        assert sub.pending() == 2
        assert sub.dropped == 0

    def test_listener_receives_events(self):
        bus = EventBus()
        seen = []
        bus.add_listener(seen.append, [STAGE_START])

        bus.publish(STAGE_START, {"stage": "judge"})
        bus.publish(STAGE_TOKEN, {"token": "x"})

        assert [e.topic for e in seen] == [STAGE_START]

    def test_failing_listener_does_not_break_publish(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.add_listener(broken)
        bus.add_listener(seen.append)

        bus.publish(STAGE_START, {})

        assert len(seen) == 1

    def test_remove_listener(self):
        bus = EventBus()
        seen = []
        listener = seen.append
        bus.add_listener(listener)
        bus.remove_listener(listener)

        bus.publish(STAGE_START, {})

        assert seen == []


class TestTokenCoalescer:
    """Tests for TokenCoalescer."""

    def test_flush_publishes_concatenated_tokens(self):
        bus = EventBus()
        seen = []
        bus.add_listener(seen.append, [STAGE_TOKEN])
        coalescer = TokenCoalescer(bus, "run-1")

        for token in ("A ", "cat ", "on ", "a ", "throne"):
            coalescer.add("ideator", token)
        flushed = coalescer.flush()

        assert flushed == len("A cat on a throne")
        assert len(seen) == 1
        assert seen[0].data == {"run_id": "run-1", "stage": "ideator", "token": "A cat on a throne"}

    def test_flush_single_stage(self):
        bus = EventBus()
        seen = []
        bus.add_listener(seen.append, [STAGE_TOKEN])
        coalescer = TokenCoalescer(bus, "run-1")

        coalescer.add("ideator", "one")
        coalescer.add("composer", "two")
        coalescer.flush("composer")

        assert [e.data["stage"] for e in seen] == ["composer"]
        coalescer.flush()
        assert [e.data["stage"] for e in seen] == ["composer", "ideator"]

    def test_flush_empty_publishes_nothing(self):
        bus = EventBus()
        seen = []
        bus.add_listener(seen.append)
        coalescer = TokenCoalescer(bus, "run-1")

        coalescer.add("ideator", "")

        assert coalescer.flush() == 0
        assert seen == []

    def test_tokens_never_emitted_twice(self):
        bus = EventBus()
        seen = []
        bus.add_listener(seen.append, [STAGE_TOKEN])
        coalescer = TokenCoalescer(bus, "run-1")

        coalescer.add("judge", "abc")
        coalescer.flush()
        coalescer.flush()

        assert "".join(e.data["token"] for e in seen) == "abc"

    @pytest.mark.asyncio
    async def test_periodic_flush_and_stop(self):
        bus = EventBus()
        seen = []
        bus.add_listener(seen.append, [STAGE_TOKEN])
        coalescer = TokenCoalescer(bus, "run-1", interval=0.01)
        coalescer.start()

        coalescer.add("ideator", "early ")
        await asyncio.sleep(0.05)
        coalescer.add("ideator", "late")
        await coalescer.stop()

        assert "".join(e.data["token"] for e in seen) == "early late"
        assert len(seen) == 2
