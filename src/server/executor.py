"""Background executor that drives queued jobs through the image backend."""

import asyncio
import logging

from artifact_store import ArtifactStore
from backend_errors import BackendError, OperationCancelled
from config import HardwareConfig
from image_backend import ImageBackendClient
from power_monitor import PowerMonitor
from utils import run_until_cancelled, short_id
from workflow import build_txt2img, resolve_seed

from .models import CancelOutcome, GenerationJob
from .queue_manager import QueueManager

logger = logging.getLogger(__name__)


class QueueExecutor:
    """Single long-lived loop that runs one generation job at a time.

    Between jobs it applies the GPU protection policies: a cooldown after a
    run of consecutive generations, an optional fixed gap between jobs, and an
    optional power-draw ceiling. Waiting for any of these only delays jobs.
    """

    def __init__(
        self,
        queue_manager: QueueManager,
        backend: ImageBackendClient,
        artifact_store: ArtifactStore,
        hardware: HardwareConfig | None = None,
        power_monitor: PowerMonitor | None = None,
        idle_wait: float = 5.0,
    ):
        """Initialize the executor and register it with the queue.

        Args:
            queue_manager: Queue to take jobs from
            backend: Image backend client
            artifact_store: Where finished images are saved
            hardware: Cooldown, gap and power policies
            power_monitor: Power draw source (used when power monitoring is enabled)
            idle_wait: Maximum sleep while idle before re-checking the queue
        """
        self.queue_manager = queue_manager
        self.backend = backend
        self.artifact_store = artifact_store
        self.hardware = hardware or HardwareConfig()
        self.power_monitor = power_monitor
        self.idle_wait = idle_wait

        self.consecutive_runs = 0
        self._running = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._wake_event = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._current_job_id: str | None = None
        self._job_cancel: asyncio.Event | None = None

        queue_manager.add_wake_listener(self.wake)
        queue_manager.set_interrupt_handler(self.request_interrupt)

    @property
    def current_job_id(self) -> str | None:
        return self._current_job_id

    @property
    def is_running(self) -> bool:
        return self._running

    def _call_in_loop(self, callback) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            callback()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            callback()
        else:
            loop.call_soon_threadsafe(callback)

    def wake(self) -> None:
        """Re-check the queue now. Safe to call from any thread."""
        self._call_in_loop(self._wake_event.set)

    def request_interrupt(self, job_id: str) -> None:
        """Interrupt the job if it is the one currently running. Safe to call from any thread."""
        cancel_event = self._job_cancel
        if job_id != self._current_job_id or cancel_event is None:
            return
        logger.info(f"[executor:{short_id(job_id)}] Cancel requested")
        self._call_in_loop(cancel_event.set)

    def cancel(self, job_id: str) -> CancelOutcome:
        """Cancel a job through the queue (pending: immediate, generating: interrupted)."""
        return self.queue_manager.cancel(job_id)

    async def run(self):
        """Main executor loop - processes jobs from the queue."""
        self._loop = asyncio.get_running_loop()
        self._running = True
        self._stop_event.clear()
        logger.info("Queue executor started")

        try:
            while self._running:
                try:
                    await self._tick()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.exception(f"Executor loop error: {e}")
                    await self._sleep(self.idle_wait)
        finally:
            self._running = False
            logger.info("Queue executor stopped")

    def stop(self):
        """Stop the executor after the current step."""
        self._running = False
        self._call_in_loop(self._stop_event.set)
        self.wake()

    async def _sleep(self, seconds: float) -> None:
        """Sleep that ends early when the executor is stopped."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _wait_for_wake(self) -> None:
        try:
            await asyncio.wait_for(self._wake_event.wait(), timeout=self.idle_wait)
        except asyncio.TimeoutError:
            pass

    async def _tick(self) -> None:
        # Clear before looking at the queue so a wake during the checks is not lost
        self._wake_event.clear()

        if self.queue_manager.is_paused():
            await self._wait_for_wake()
            return

        limit = self.hardware.max_consecutive_generations
        if limit > 0 and self.consecutive_runs >= limit:
            await self._cooldown()
            return

        if self.hardware.enable_power_monitoring and self.power_monitor is not None:
            if await self.power_monitor.is_over_limit():
                logger.info(f"Deferring generation, re-checking power in {self.hardware.power_recheck_seconds:.0f}s")
                await self._sleep(self.hardware.power_recheck_seconds)
                return

        job = self.queue_manager.claim_next()
        if job is None:
            await self._wait_for_wake()
            return

        await self._execute_job(job)

        if self._running and self.hardware.job_gap_seconds > 0:
            await self._sleep(self.hardware.job_gap_seconds)

    async def _cooldown(self) -> None:
        logger.info(
            f"{self.consecutive_runs} consecutive generations, "
            f"cooling down for {self.hardware.cooldown_seconds:.0f}s"
        )
        if self.hardware.free_memory_on_cooldown:
            try:
                await self.backend.free_memory()
            except BackendError as e:
                logger.warning(f"Could not free backend memory before cooldown: {e}")
        await self._sleep(self.hardware.cooldown_seconds)
        self.consecutive_runs = 0

    def _artifact_metadata(self, job: GenerationJob, seed: int) -> dict[str, str]:
        settings = job.settings
        return {
            "job_id": job.id,
            "prompt": job.positive_prompt,
            "negative_prompt": job.negative_prompt,
            "original_idea": job.original_idea or "",
            "checkpoint": settings.checkpoint,
            "seed": str(seed),
            "steps": str(settings.steps),
            "cfg": str(settings.cfg),
            "sampler": settings.sampler,
            "scheduler": settings.scheduler,
            "width": str(settings.width),
            "height": str(settings.height),
            "created_at": job.created_at.isoformat(),
        }

    async def _execute_job(self, job: GenerationJob) -> None:
        """Run a single claimed job to a terminal state.

        Args:
            job: Job returned by claim_next()
        """
        tag = f"[executor:{short_id(job.id)}]"
        cancel_event = asyncio.Event()
        self._current_job_id = job.id
        self._job_cancel = cancel_event
        accepted = False

        # A cancel may have landed between claim_next() and now
        if self.queue_manager.get(job.id).cancel_requested:
            cancel_event.set()

        try:
            seed = resolve_seed(job.settings.seed)
            workflow = build_txt2img(job.positive_prompt, job.negative_prompt, job.settings, seed)
            if cancel_event.is_set():
                raise OperationCancelled("cancelled before submission")
            logger.info(f"{tag} Submitting ({job.settings.checkpoint}, seed {seed})")

            # Submit runs to completion; a prompt the backend accepted is interrupted, never abandoned
            prompt_id = await self.backend.submit(workflow)
            accepted = True
            if cancel_event.is_set():
                raise OperationCancelled("cancelled during submission")

            images = await run_until_cancelled(
                self.backend.wait_for_completion(
                    prompt_id,
                    lambda current, total: self.queue_manager.update_progress(job.id, current, total),
                ),
                cancel_event,
            )
            data = await run_until_cancelled(self.backend.fetch_image(images[0]), cancel_event)
            # Pillow decode and encode stay off the event loop
            artifact_id = await asyncio.to_thread(
                self.artifact_store.save,
                data,
                job.original_idea or job.positive_prompt,
                self._artifact_metadata(job, seed),
            )

            if self.queue_manager.complete_job(job.id, artifact_id, seed):
                logger.info(f"{tag} Completed, artifact {artifact_id}")
            else:
                # Cancel arrived after the backend finished
                self.queue_manager.mark_cancelled(job.id)

        except OperationCancelled:
            if accepted:
                await self._interrupt_backend(tag)
            self.queue_manager.mark_cancelled(job.id)
            logger.info(f"{tag} Cancelled")

        except Exception as e:
            if cancel_event.is_set():
                # The backend reported the interrupt as an error
                self.queue_manager.mark_cancelled(job.id)
                logger.info(f"{tag} Cancelled ({e})")
            else:
                logger.warning(f"{tag} Failed: {e}")
                self.queue_manager.fail_job(job.id, str(e))

        finally:
            self._current_job_id = None
            self._job_cancel = None
            # Cancelling before the backend accepted the job costs the GPU nothing
            if accepted or not cancel_event.is_set():
                self.consecutive_runs += 1

    async def _interrupt_backend(self, tag: str) -> None:
        try:
            await self.backend.interrupt()
        except BackendError as e:
            logger.warning(f"{tag} Interrupt request failed: {e}")
