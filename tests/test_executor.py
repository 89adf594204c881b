"""Tests for the queue executor."""

import asyncio
import threading

import httpx
import pytest

from artifact_store import FileArtifactStore
from config import HardwareConfig, ImageBackendConfig
from conftest import FakeImageBackend, unreachable_error
from events import EventBus, JOB_COMPLETED, JOB_ENQUEUED, JOB_FAILED, JOB_PROGRESS, JOB_STARTED
from image_backend import ImageBackendClient
from models import GenerationSettings
from server.executor import QueueExecutor
from server.models import CancelOutcome, GenerationJob, JobPriority, JobStatus
from server.queue_manager import QueueManager


class FakePowerMonitor:
    def __init__(self, over_limit: bool):
        self.over_limit = over_limit
        self.checks = 0

    async def is_over_limit(self) -> bool:
        self.checks += 1
        return self.over_limit

    async def close(self):
        pass


class SlowAcknowledgingBackend(FakeImageBackend):
    """Backend whose POST /prompt answers only when the test releases it."""

    def __init__(self):
        super().__init__()
        self.submitting = asyncio.Event()
        self.release = asyncio.Event()

    async def submit(self, workflow):
        self.submitting.set()
        await self.release.wait()
        return await super().submit(workflow)


class ThreadRecordingStore(FileArtifactStore):
    """Artifact store that remembers which thread saved each image."""

    def __init__(self, images_dir):
        super().__init__(images_dir)
        self.save_threads = []

    def save(self, data, name_hint, metadata):
        self.save_threads.append(threading.get_ident())
        return super().save(data, name_hint, metadata)


def make_job(prompt: str = "masterpiece, tabby cat on gilded throne") -> GenerationJob:
    return GenerationJob(
        positive_prompt=prompt,
        negative_prompt="blurry",
        original_idea="a cat on a throne",
        settings=GenerationSettings(steps=4, seed=1234),
    )


@pytest.fixture
def queue(queue_path):
    return QueueManager(queue_path)


@pytest.fixture
def store(temp_dir):
    return FileArtifactStore(temp_dir / "images")


def make_executor(queue, backend, store, power_monitor=None, **hardware) -> QueueExecutor:
    options = {"cooldown_seconds": 0.0, "max_consecutive_generations": 0}
    options.update(hardware)
    return QueueExecutor(
        queue,
        backend,
        store,
        hardware=HardwareConfig(**options),
        power_monitor=power_monitor,
        idle_wait=0.01,
    )


class TestJobExecution:
    """Running single jobs."""

    @pytest.mark.asyncio
    async def test_successful_job(self, queue, store, fake_backend):
        executor = make_executor(queue, fake_backend, store)
        job_id = queue.enqueue(make_job())

        await executor._tick()

        job = queue.get(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.seed_used == 1234
        assert job.progress.progress == 1.0
        assert store.path_for(job.result_artifact_id).exists()
        metadata = store.read_metadata(job.result_artifact_id)
        assert metadata["prompt"] == "masterpiece, tabby cat on gilded throne"
        assert metadata["seed"] == "1234"
        assert metadata["job_id"] == job_id
        assert executor.consecutive_runs == 1
        assert executor.current_job_id is None

    @pytest.mark.asyncio
    async def test_workflow_carries_prompts(self, queue, store, fake_backend):
        executor = make_executor(queue, fake_backend, store)
        queue.enqueue(make_job())

        await executor._tick()

        workflow = fake_backend.submitted[0]
        texts = [node["inputs"].get("text") for node in workflow.values()]
        assert "masterpiece, tabby cat on gilded throne" in texts
        assert "blurry" in texts

    @pytest.mark.asyncio
    async def test_random_seed_is_recorded(self, queue, store, fake_backend):
        executor = make_executor(queue, fake_backend, store)
        job = make_job()
        job.settings = GenerationSettings(seed=-1)
        job_id = queue.enqueue(job)

        await executor._tick()

        assert queue.get(job_id).seed_used >= 0

    @pytest.mark.asyncio
    async def test_unreachable_backend_fails_job(self, queue, store):
        backend = FakeImageBackend()
        backend.submit_error = unreachable_error("http://comfy.test:8188")
        executor = make_executor(queue, backend, store)
        job_id = queue.enqueue(make_job())

        await executor._tick()

        job = queue.get(job_id)
        assert job.status == JobStatus.FAILED
        assert "http://comfy.test:8188" in job.error
        assert queue.current_job() is None

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_next_job(self, queue, store):
        backend = FakeImageBackend()
        backend.wait_error = RuntimeError("CUDA out of memory")
        executor = make_executor(queue, backend, store)
        first = queue.enqueue(make_job("first"))
        second = queue.enqueue(make_job("second"))

        await executor._tick()
        backend.wait_error = None
        await executor._tick()

        assert queue.get(first).status == JobStatus.FAILED
        assert queue.get(second).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_image_saved_off_the_event_loop(self, queue, temp_dir, fake_backend):
        store = ThreadRecordingStore(temp_dir / "images")
        executor = make_executor(queue, fake_backend, store)
        job_id = queue.enqueue(make_job())

        await executor._tick()

        assert queue.get(job_id).status == JobStatus.COMPLETED
        assert len(store.save_threads) == 1
        assert store.save_threads[0] != threading.get_ident()

    @pytest.mark.asyncio
    async def test_empty_queue_waits(self, queue, store, fake_backend):
        executor = make_executor(queue, fake_backend, store)

        await executor._tick()

        assert fake_backend.submitted == []


class TestCancellation:
    """Cancelling queued and running jobs."""

    @pytest.mark.asyncio
    async def test_cancel_during_generation(self, queue, store):
        backend = FakeImageBackend()
        backend.block_in_wait = True
        executor = make_executor(queue, backend, store)
        job_id = queue.enqueue(make_job())

        task = asyncio.create_task(executor._tick())
        await asyncio.wait_for(backend.waiting.wait(), timeout=5)
        assert executor.current_job_id == job_id

        assert executor.cancel(job_id) == CancelOutcome.INTERRUPT_REQUESTED
        await asyncio.wait_for(task, timeout=5)

        job = queue.get(job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.result_artifact_id is None
        assert backend.interrupts == 1
        assert not store.images_dir.exists()

    @pytest.mark.asyncio
    async def test_cancel_while_submission_in_flight(self, queue, store):
        """A prompt the backend accepted after the cancel is still interrupted."""
        backend = SlowAcknowledgingBackend()
        executor = make_executor(queue, backend, store)
        job_id = queue.enqueue(make_job())

        task = asyncio.create_task(executor._tick())
        await asyncio.wait_for(backend.submitting.wait(), timeout=5)

        assert executor.cancel(job_id) == CancelOutcome.INTERRUPT_REQUESTED
        backend.release.set()
        await asyncio.wait_for(task, timeout=5)

        assert queue.get(job_id).status == JobStatus.CANCELLED
        assert len(backend.submitted) == 1
        assert backend.interrupts == 1
        assert not backend.waiting.is_set()
        # The backend took the job, so it counts towards the cooldown
        assert executor.consecutive_runs == 1

    @pytest.mark.asyncio
    async def test_cancel_before_submit(self, queue, store, fake_backend):
        executor = make_executor(queue, fake_backend, store)
        job_id = queue.enqueue(make_job())
        job = queue.claim_next()
        queue.cancel(job_id)

        await executor._execute_job(job)

        assert queue.get(job_id).status == JobStatus.CANCELLED
        assert fake_backend.submitted == []
        assert fake_backend.interrupts == 0
        assert executor.consecutive_runs == 0

    @pytest.mark.asyncio
    async def test_cancel_pending_job(self, queue, store, fake_backend):
        executor = make_executor(queue, fake_backend, store)
        job_id = queue.enqueue(make_job())

        assert executor.cancel(job_id) == CancelOutcome.CANCELLED
        await executor._tick()

        assert queue.get(job_id).status == JobStatus.CANCELLED
        assert fake_backend.submitted == []


def job_topics(events) -> list[str]:
    """Topics of the job lifecycle events after enqueueing."""
    return [
        event.topic for event in events
        if event.topic.startswith("queue:job_") and event.topic != JOB_ENQUEUED
    ]


class TestJobEvents:
    """Events published while a job runs."""

    @pytest.mark.asyncio
    async def test_successful_job_event_order(self, queue_path, store, fake_backend):
        bus = EventBus()
        events = []
        bus.add_listener(events.append)
        queue = QueueManager(queue_path, bus)
        executor = make_executor(queue, fake_backend, store)
        job_id = queue.enqueue(make_job())

        await executor._tick()

        assert job_topics(events) == [JOB_STARTED] + [JOB_PROGRESS] * 4 + [JOB_COMPLETED]
        progress = [event.data["current_step"] for event in events if event.topic == JOB_PROGRESS]
        assert progress == [1, 2, 3, 4]
        assert events[-2].data == {"job_id": job_id, "artifact_id": queue.get(job_id).result_artifact_id}

    @pytest.mark.asyncio
    async def test_unreachable_backend_event_order(self, queue_path, store):
        endpoint = "http://127.0.0.1:9"

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        backend = ImageBackendClient(
            ImageBackendConfig(endpoint=endpoint, use_websocket=False),
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)),
        )
        bus = EventBus()
        events = []
        bus.add_listener(events.append)
        queue = QueueManager(queue_path, bus)
        executor = make_executor(queue, backend, store)
        job_id = queue.enqueue(make_job())

        await executor._tick()

        assert job_topics(events) == [JOB_STARTED, JOB_FAILED]
        failed = next(event for event in events if event.topic == JOB_FAILED)
        assert failed.data["job_id"] == job_id
        assert endpoint in failed.data["error"]
        assert queue.current_job() is None


class TestHardwareProtection:
    """Cooldown, pause and power policies."""

    @pytest.mark.asyncio
    async def test_cooldown_after_consecutive_runs(self, queue, store, fake_backend):
        executor = make_executor(queue, fake_backend, store, max_consecutive_generations=2)
        ids = [queue.enqueue(make_job(f"job {i}")) for i in range(3)]

        await executor._tick()
        await executor._tick()
        assert executor.consecutive_runs == 2

        # Third tick cools down instead of claiming
        await executor._tick()
        assert fake_backend.freed == 1
        assert executor.consecutive_runs == 0
        assert queue.get(ids[2]).status == JobStatus.PENDING

        await executor._tick()
        assert queue.get(ids[2]).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cooldown_without_freeing_memory(self, queue, store, fake_backend):
        executor = make_executor(
            queue, fake_backend, store,
            max_consecutive_generations=1, free_memory_on_cooldown=False,
        )
        executor.consecutive_runs = 1

        await executor._tick()

        assert fake_backend.freed == 0
        assert executor.consecutive_runs == 0

    @pytest.mark.asyncio
    async def test_paused_queue_is_not_drained(self, queue, store, fake_backend):
        executor = make_executor(queue, fake_backend, store)
        job_id = queue.enqueue(make_job())
        queue.pause()

        await executor._tick()

        assert queue.get(job_id).status == JobStatus.PENDING
        assert fake_backend.submitted == []

    @pytest.mark.asyncio
    async def test_power_over_limit_defers(self, queue, store, fake_backend):
        monitor = FakePowerMonitor(over_limit=True)
        executor = make_executor(
            queue, fake_backend, store, monitor,
            enable_power_monitoring=True, power_recheck_seconds=0.01,
        )
        job_id = queue.enqueue(make_job())

        await executor._tick()
        assert monitor.checks == 1
        assert queue.get(job_id).status == JobStatus.PENDING

        monitor.over_limit = False
        await executor._tick()
        assert queue.get(job_id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_power_monitor_ignored_when_disabled(self, queue, store, fake_backend):
        monitor = FakePowerMonitor(over_limit=True)
        executor = make_executor(queue, fake_backend, store, monitor)
        job_id = queue.enqueue(make_job())

        await executor._tick()

        assert monitor.checks == 0
        assert queue.get(job_id).status == JobStatus.COMPLETED


class TestExecutorLoop:
    """The long-running loop."""

    @pytest.mark.asyncio
    async def test_loop_drains_queue_in_priority_order(self, queue, store, fake_backend):
        executor = make_executor(queue, fake_backend, store)
        task = asyncio.create_task(executor.run())

        low = make_job("low")
        low.priority = JobPriority.LOW
        queue.pause()
        queue.enqueue(low)
        high = make_job("high")
        high.priority = JobPriority.HIGH
        queue.enqueue(high)
        queue.resume()

        async def drained():
            while queue.counts()["completed"] < 2:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(drained(), timeout=5)
        executor.stop()
        await asyncio.wait_for(task, timeout=5)

        prompts = [workflow_text(w) for w in fake_backend.submitted]
        assert prompts == ["high", "low"]
        assert not executor.is_running

    @pytest.mark.asyncio
    async def test_stop_when_idle(self, queue, store, fake_backend):
        executor = make_executor(queue, fake_backend, store)
        task = asyncio.create_task(executor.run())
        await asyncio.sleep(0.05)
        assert executor.is_running

        executor.stop()
        await asyncio.wait_for(task, timeout=5)

        assert not executor.is_running


def workflow_text(workflow: dict) -> str:
    """Positive prompt of a submitted workflow (the first text-encode node)."""
    for node in workflow.values():
        if node.get("class_type") == "CLIPTextEncode":
            return node["inputs"]["text"]
    raise AssertionError("no text node in workflow")
