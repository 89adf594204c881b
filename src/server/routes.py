"""API routes for the orchestration server."""

import asyncio
import json
import logging
from dataclasses import asdict
from typing import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import FileResponse
from sse_starlette.sse import EventSourceResponse

from artifact_store import ArtifactNotFoundError
from backend_errors import BackendError
from models import Phase, PipelineRun
from pipeline import PipelineBusyError
from prompts import CheckpointContext, parse_checkpoint_context

from .models import (
    EnqueueRequest,
    GenerationJob,
    HealthResponse,
    JobResponse,
    JobStatus,
    PipelineRunRequest,
    PipelineRunResponse,
    PriorityRequest,
    QueueSnapshot,
    ReselectRequest,
    StageRunRequest,
    StatusResponse,
)
from .queue_manager import InvalidJobStateError, JobNotFoundError
from .services import Services, get_services

logger = logging.getLogger(__name__)

router = APIRouter()


def _checkpoint_context(text: str | None, checkpoint: str | None) -> CheckpointContext | None:
    if not text:
        return None
    return parse_checkpoint_context(text, checkpoint or "unknown")


# ----------------------------------------------------------------------------
# Health and discovery
# ----------------------------------------------------------------------------

@router.get("/api/health", response_model=HealthResponse)
async def get_health(services: Services = Depends(get_services)):
    """Check whether the language model server and the image backend answer."""
    language_model, image_backend = await asyncio.gather(
        services.llm.health_check(),
        services.backend.health_check(),
    )
    return HealthResponse(
        language_model=language_model,
        image_backend=image_backend,
        language_model_endpoint=services.llm.endpoint,
        image_backend_endpoint=services.backend.endpoint,
    )


@router.get("/api/models")
async def get_models(services: Services = Depends(get_services)):
    """List language models and image checkpoints available on the backends."""
    try:
        language_models = await services.llm.list_models()
        checkpoints = await services.backend.list_checkpoints()
    except BackendError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {
        "language_models": language_models,
        "checkpoints": checkpoints,
        "assignments": asdict(services.engine.models),
    }


@router.get("/api/status", response_model=StatusResponse)
async def get_status(services: Services = Depends(get_services)):
    """Get current queue and pipeline status."""
    snapshot = services.queue_manager.snapshot()
    return StatusResponse(
        paused=snapshot.paused,
        pipeline_running=services.engine.is_running,
        current_job=snapshot.current_job,
        pending_count=snapshot.counts.get(JobStatus.PENDING.value, 0),
        completed_count=snapshot.counts.get(JobStatus.COMPLETED.value, 0),
        failed_count=snapshot.counts.get(JobStatus.FAILED.value, 0),
        consecutive_runs=services.executor.consecutive_runs,
    )


@router.get("/api/events")
async def sse_events(
    request: Request,
    topics: str | None = Query(None, description="Comma-separated topics to receive (default: all)"),
    services: Services = Depends(get_services),
):
    """SSE endpoint for pipeline and queue events."""
    topic_filter = [topic.strip() for topic in topics.split(",") if topic.strip()] if topics else None
    # Subscribe BEFORE taking the initial snapshot so no change falls in between
    subscription = services.bus.subscribe(topic_filter, maxsize=services.settings.server.sse_queue_size)
    keepalive = services.settings.server.sse_timeout
    shutdown = services.shutdown_event

    async def event_generator() -> AsyncGenerator:
        try:
            snapshot = services.queue_manager.snapshot()
            yield {
                "event": "status",
                "data": json.dumps({
                    "paused": snapshot.paused,
                    "pending_count": len(snapshot.pending),
                    "current": snapshot.current_job.model_dump(mode='json') if snapshot.current_job else None,
                    "pipeline_running": services.engine.is_running,
                }),
            }

            while True:
                if shutdown.is_set():
                    break

                if await request.is_disconnected():
                    break

                try:
                    event = await subscription.get(timeout=keepalive)
                    yield {
                        "event": event.topic,
                        "data": json.dumps(event.data, default=str),
                    }
                except asyncio.TimeoutError:
                    yield {"event": "ping", "data": ""}

        finally:
            if subscription.dropped:
                logger.info(f"SSE client disconnected after {subscription.dropped} dropped events")
            subscription.close()

    return EventSourceResponse(event_generator())


# ----------------------------------------------------------------------------
# Pipeline Endpoints
# ----------------------------------------------------------------------------

@router.post("/api/pipeline/run", response_model=PipelineRunResponse)
async def run_pipeline(req: PipelineRunRequest, services: Services = Depends(get_services)):
    """Run the refinement pipeline and return its lineage.

    Stage progress streams over /api/events while the request is open. With
    auto_approve, a completed run's prompt pair is enqueued right away.
    """
    if not req.idea.strip():
        raise HTTPException(status_code=400, detail="Idea is required")

    try:
        run = await services.engine.run(
            req.idea,
            num_concepts=req.num_concepts,
            auto_approve=req.auto_approve,
            checkpoint_context=_checkpoint_context(req.checkpoint_context, req.checkpoint),
            concept_index=req.concept_index,
        )
    except PipelineBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    services.last_run = run
    job_id = None
    if run.auto_approve and run.final_prompt() is not None and run.phase == Phase.COMPLETED:
        job = GenerationJob.from_pipeline_run(
            run,
            settings=req.settings or services.default_generation_settings(req.checkpoint),
            priority=req.priority,
        )
        job_id = services.queue_manager.enqueue(job)

    return PipelineRunResponse(run=run, job_id=job_id, suggested=run.suggested_prompts())


@router.post("/api/pipeline/cancel")
async def cancel_pipeline(services: Services = Depends(get_services)):
    """Cancel the active pipeline run."""
    cancelled = services.engine.cancel()
    return {"cancelled": cancelled, "message": "Cancellation requested" if cancelled else "No run active"}


@router.post("/api/pipeline/reselect", response_model=PipelineRunResponse)
async def reselect_concept(req: ReselectRequest, services: Services = Depends(get_services)):
    """Carry a different concept of the last run into the prompt engineer."""
    last_run: PipelineRun | None = services.last_run
    if last_run is None:
        raise HTTPException(status_code=404, detail="No pipeline run to reselect from")

    try:
        run = await services.engine.reselect(
            last_run,
            req.concept_index,
            checkpoint_context=_checkpoint_context(req.checkpoint_context, req.checkpoint),
        )
    except PipelineBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    services.last_run = run
    return PipelineRunResponse(run=run, suggested=run.suggested_prompts())


@router.post("/api/pipeline/stage", response_model=PipelineRunResponse)
async def run_pipeline_stage(req: StageRunRequest, services: Services = Depends(get_services)):
    """Run a single stage on the given input.

    The result is not kept as the last run, so it cannot be reselected from.
    """
    try:
        run = await services.engine.run_stage(
            req.stage,
            req.input,
            model=req.model,
            checkpoint_context=_checkpoint_context(req.checkpoint_context, req.checkpoint),
            original_idea=req.original_idea,
            num_concepts=req.num_concepts,
        )
    except PipelineBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return PipelineRunResponse(run=run, suggested=run.suggested_prompts())


# ----------------------------------------------------------------------------
# Queue Endpoints
# ----------------------------------------------------------------------------

@router.get("/api/queue", response_model=list[GenerationJob])
async def list_queue(services: Services = Depends(get_services)):
    """List jobs: generating, then pending in run order, then finished."""
    return services.queue_manager.list_jobs()


@router.get("/api/queue/snapshot", response_model=QueueSnapshot)
async def queue_snapshot(services: Services = Depends(get_services)):
    """Paused flag, current job, pending jobs and per-status counts."""
    return services.queue_manager.snapshot()


@router.post("/api/queue", response_model=JobResponse)
async def enqueue_job(req: EnqueueRequest, services: Services = Depends(get_services)):
    """Add a generation job."""
    if not req.positive_prompt.strip():
        raise HTTPException(status_code=400, detail="Positive prompt is required")

    job = GenerationJob(
        priority=req.priority,
        positive_prompt=req.positive_prompt.strip(),
        negative_prompt=req.negative_prompt.strip(),
        settings=req.settings or services.default_generation_settings(),
        original_idea=req.original_idea,
        pipeline_log=req.pipeline_log,
    )
    job_id = services.queue_manager.enqueue(job)
    return JobResponse(job_id=job_id, message=f"Job queued ({job_id[:8]}, {req.priority.value} priority)")


@router.post("/api/queue/pause")
async def pause_queue(services: Services = Depends(get_services)):
    """Stop starting new jobs. A generating job finishes."""
    services.queue_manager.pause()
    return {"paused": True}


@router.post("/api/queue/resume")
async def resume_queue(services: Services = Depends(get_services)):
    """Resume starting jobs."""
    services.queue_manager.resume()
    return {"paused": False}


@router.get("/api/queue/paused")
async def get_paused(services: Services = Depends(get_services)):
    return {"paused": services.queue_manager.is_paused()}


@router.post("/api/queue/clear", response_model=JobResponse)
async def clear_queue(services: Services = Depends(get_services)):
    """Cancel all pending jobs."""
    count = services.queue_manager.clear_pending()
    return JobResponse(job_id="", message=f"Cleared {count} pending jobs")


@router.post("/api/queue/purge", response_model=JobResponse)
async def purge_queue(services: Services = Depends(get_services)):
    """Drop finished jobs from the history."""
    count = services.queue_manager.purge_finished()
    return JobResponse(job_id="", message=f"Removed {count} finished jobs")


@router.get("/api/queue/{job_id}", response_model=GenerationJob)
async def get_job(job_id: str, services: Services = Depends(get_services)):
    try:
        return services.queue_manager.get(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/api/queue/{job_id}/priority", response_model=GenerationJob)
async def set_priority(job_id: str, req: PriorityRequest, services: Services = Depends(get_services)):
    """Move a pending job to another priority tier."""
    try:
        return services.queue_manager.reorder(job_id, req.priority)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/api/queue/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str, services: Services = Depends(get_services)):
    """Cancel a pending job, or interrupt the generating one."""
    try:
        outcome = services.executor.cancel(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidJobStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return JobResponse(job_id=job_id, message=outcome.value)


# ----------------------------------------------------------------------------
# Artifacts
# ----------------------------------------------------------------------------

@router.get("/api/artifacts/{artifact_id}")
async def get_artifact(artifact_id: str, services: Services = Depends(get_services)):
    """Serve a generated image."""
    try:
        path = services.artifact_store.path_for(artifact_id)
    except ArtifactNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if not path.exists():
        raise HTTPException(status_code=404, detail="Artifact not found")

    return FileResponse(path, media_type="image/png")
