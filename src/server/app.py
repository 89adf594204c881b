"""FastAPI application for the orchestration server."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from config import Settings

from .routes import router
from .services import Services, build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle app startup and shutdown."""
    owns_services = app.state.services is None
    if owns_services:
        app.state.services = build_services(app.state.settings)
    services: Services = app.state.services

    executor_task = None
    if app.state.start_executor:
        executor_task = asyncio.create_task(services.executor.run())

    logger.info(f"Server ready (language model at {services.llm.endpoint}, image backend at {services.backend.endpoint})")
    yield
    logger.info("Server shutting down")

    # Shutdown: signal SSE connections to close
    services.shutdown_event.set()
    services.engine.cancel()
    await asyncio.sleep(0.5)  # Grace period for SSE connections to close

    # Stop executor; a job still generating is requeued on the next start
    if executor_task is not None:
        services.executor.stop()
        executor_task.cancel()
        try:
            await executor_task
        except asyncio.CancelledError:
            pass

    if owns_services:
        await services.close()


def create_app(
    settings: Settings | None = None,
    services: Services | None = None,
    start_executor: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Settings used to build services (defaults to the environment)
        services: Prebuilt services; the app will not close them
        start_executor: Run the queue executor for the app's lifetime
    """
    app = FastAPI(
        title="Prompt Forge",
        description="Idea-to-image orchestration: prompt refinement pipeline and generation queue",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings or (services.settings if services else Settings.from_env())
    app.state.services = services
    app.state.start_executor = start_executor

    app.include_router(router)

    return app


# Create the app instance
app = create_app()
