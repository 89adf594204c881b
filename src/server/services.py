"""Service container shared by the application and its routes."""

import asyncio
from dataclasses import dataclass, field

from fastapi import Request

from artifact_store import FileArtifactStore
from config import Settings, paths
from events import EventBus
from image_backend import ImageBackendClient
from llm_client import LanguageModelClient
from models import GenerationSettings, PipelineRun
from pipeline import PipelineEngine
from power_monitor import PowerMonitor

from .executor import QueueExecutor
from .queue_manager import QueueManager


@dataclass
class Services:
    """Everything the routes need, constructed once per application."""
    settings: Settings
    bus: EventBus
    queue_manager: QueueManager
    llm: LanguageModelClient
    backend: ImageBackendClient
    engine: PipelineEngine
    executor: QueueExecutor
    artifact_store: FileArtifactStore
    power_monitor: PowerMonitor | None = None
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    last_run: PipelineRun | None = None

    def default_generation_settings(self, checkpoint: str | None = None) -> GenerationSettings:
        defaults = self.settings.generation
        return GenerationSettings(
            checkpoint=checkpoint or defaults.checkpoint,
            width=defaults.width,
            height=defaults.height,
            steps=defaults.steps,
            cfg=defaults.cfg,
            sampler=defaults.sampler,
            scheduler=defaults.scheduler,
        )

    async def close(self) -> None:
        await self.llm.close()
        await self.backend.close()
        if self.power_monitor is not None:
            await self.power_monitor.close()


def build_services(settings: Settings) -> Services:
    """Construct and wire the services from settings."""
    paths.data_dir.mkdir(parents=True, exist_ok=True)

    bus = EventBus(default_maxsize=settings.server.sse_queue_size)
    queue_manager = QueueManager(paths.queue_path, bus, max_history=settings.server.max_history)
    llm = LanguageModelClient(settings.language_model)
    backend = ImageBackendClient(settings.image_backend)
    artifact_store = FileArtifactStore(paths.images_dir)
    power_monitor = PowerMonitor(settings.hardware) if settings.hardware.enable_power_monitoring else None

    engine = PipelineEngine(
        llm,
        bus,
        models=settings.models,
        stage_config=settings.pipeline,
        templates_dir=paths.templates_dir,
    )
    executor = QueueExecutor(
        queue_manager,
        backend,
        artifact_store,
        hardware=settings.hardware,
        power_monitor=power_monitor,
        idle_wait=settings.server.idle_wait,
    )
    return Services(
        settings=settings,
        bus=bus,
        queue_manager=queue_manager,
        llm=llm,
        backend=backend,
        engine=engine,
        executor=executor,
        artifact_store=artifact_store,
        power_monitor=power_monitor,
    )


def get_services(request: Request) -> Services:
    """Get the services of the application serving this request."""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError("Services not initialized")
    return services
