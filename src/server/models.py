"""Pydantic models for the generation queue and the web server API."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from models import GenerationSettings, PipelineRun, PromptPair, Stage


class JobPriority(str, Enum):
    """Priority tiers, highest first."""
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def order(self) -> int:
        return _PRIORITY_ORDER[self]


_PRIORITY_ORDER = {JobPriority.HIGH: 0, JobPriority.NORMAL: 1, JobPriority.LOW: 2}


class JobStatus(str, Enum):
    """Status of a generation job."""
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobProgress(BaseModel):
    """Sampling progress of a generating job."""
    current_step: int = 0
    total_steps: int = 0
    progress: float = 0.0


class GenerationJob(BaseModel):
    """A job in the generation queue."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    positive_prompt: str
    negative_prompt: str = ""
    settings: GenerationSettings = Field(default_factory=GenerationSettings)
    pipeline_log: dict[str, Any] | None = None
    original_idea: str | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result_artifact_id: str | None = None
    error: str | None = None
    progress: JobProgress = Field(default_factory=JobProgress)
    seed_used: int | None = None
    sequence: int = 0
    cancel_requested: bool = False

    @classmethod
    def from_pipeline_run(
        cls,
        run: PipelineRun,
        settings: GenerationSettings | None = None,
        priority: JobPriority = JobPriority.NORMAL,
        prompt: PromptPair | None = None,
    ) -> "GenerationJob":
        """Create a job from a completed run, keeping the run as lineage.

        Args:
            run: Completed pipeline run
            settings: Generation settings (defaults if None)
            priority: Queue priority
            prompt: Prompt pair to use instead of the run's final prompt

        Raises:
            ValueError: If the run produced no prompt
        """
        prompt = prompt or run.final_prompt()
        if prompt is None:
            raise ValueError(f"Pipeline run {run.id} has no prompt to enqueue")
        return cls(
            priority=priority,
            positive_prompt=prompt.positive,
            negative_prompt=prompt.negative,
            settings=settings or GenerationSettings(),
            pipeline_log=run.model_dump(mode="json"),
            original_idea=run.original_idea,
        )


class QueueFile(BaseModel):
    """Queue contents persisted to disk."""
    version: int = 1
    jobs: list[GenerationJob] = Field(default_factory=list)


class QueueSnapshot(BaseModel):
    """Point-in-time view of the queue."""
    paused: bool
    current_job: GenerationJob | None = None
    pending: list[GenerationJob] = Field(default_factory=list)
    counts: dict[str, int] = Field(default_factory=dict)


class CancelOutcome(str, Enum):
    """Result of a cancel request."""
    CANCELLED = "cancelled"
    INTERRUPT_REQUESTED = "interrupt_requested"


# API Request Models

class PipelineRunRequest(BaseModel):
    """Request to run the prompt-refinement pipeline."""
    idea: str = Field(..., min_length=1, max_length=5000)
    num_concepts: int = Field(3, ge=1, le=10)
    auto_approve: bool = False
    checkpoint_context: str | None = Field(None, max_length=20000)
    checkpoint: str | None = None
    concept_index: int = Field(0, ge=0)
    priority: JobPriority = JobPriority.NORMAL
    settings: GenerationSettings | None = None


class ReselectRequest(BaseModel):
    """Request to carry another concept of the last run into the prompt engineer."""
    concept_index: int = Field(..., ge=0)
    checkpoint_context: str | None = Field(None, max_length=20000)
    checkpoint: str | None = None


class StageRunRequest(BaseModel):
    """Request to run one pipeline stage on its own."""
    stage: Stage
    input: str = Field(..., min_length=1, max_length=20000)
    model: str | None = None
    original_idea: str | None = Field(None, max_length=5000)
    num_concepts: int = Field(5, ge=1, le=10)
    checkpoint_context: str | None = Field(None, max_length=20000)
    checkpoint: str | None = None


class EnqueueRequest(BaseModel):
    """Request to add a generation job."""
    positive_prompt: str = Field(..., min_length=1, max_length=10000)
    negative_prompt: str = Field("", max_length=10000)
    priority: JobPriority = JobPriority.NORMAL
    settings: GenerationSettings | None = None
    original_idea: str | None = None
    pipeline_log: dict[str, Any] | None = None


class PriorityRequest(BaseModel):
    """Request to move a pending job to another tier."""
    priority: JobPriority


# API Response Models

class PipelineRunResponse(BaseModel):
    """A finished pipeline run, plus the job created when auto-approved."""
    run: PipelineRun
    job_id: str | None = None
    suggested: PromptPair | None = None


class JobResponse(BaseModel):
    """Response after creating or changing a job."""
    job_id: str
    message: str


class StatusResponse(BaseModel):
    """Response for the status endpoint."""
    paused: bool
    pipeline_running: bool
    current_job: GenerationJob | None
    pending_count: int
    completed_count: int
    failed_count: int
    consecutive_runs: int


class HealthResponse(BaseModel):
    """Reachability of the external backends."""
    language_model: bool
    image_backend: bool
    language_model_endpoint: str
    image_backend_endpoint: str
