"""Pydantic models for pipeline runs and stage results."""

import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class Stage(str, Enum):
    """Pipeline stages, in execution order."""
    IDEATOR = "ideator"
    COMPOSER = "composer"
    JUDGE = "judge"
    PROMPT_ENGINEER = "prompt_engineer"
    REVIEWER = "reviewer"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)


class Phase(str, Enum):
    """Lifecycle phase of a pipeline run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


class PromptPair(BaseModel):
    """Positive and negative prompts for the image backend."""
    model_config = ConfigDict(frozen=True)

    positive: str
    negative: str


class JudgeRanking(BaseModel):
    """One judged concept. Rank 1 is the best."""
    model_config = ConfigDict(frozen=True)

    rank: int = Field(..., ge=1)
    concept_index: int = Field(..., ge=0)
    score: int = Field(..., ge=0, le=100)
    reasoning: str = ""


class ReviewerVerdict(BaseModel):
    """Advisory review of the final prompt pair."""
    model_config = ConfigDict(frozen=True)

    approved: bool
    issues: list[str] | None = None
    suggested_positive: str | None = None
    suggested_negative: str | None = None


class GenerationSettings(BaseModel):
    """Image backend settings for one generation job. A seed of -1 means random."""
    checkpoint: str = "dreamshaper_8.safetensors"
    width: int = Field(512, ge=64, le=4096)
    height: int = Field(768, ge=64, le=4096)
    steps: int = Field(25, ge=1, le=200)
    cfg: float = Field(7.5, ge=0.0, le=30.0)
    sampler: str = "dpmpp_2m"
    scheduler: str = "karras"
    seed: int = Field(-1, ge=-1)
    batch_size: int = Field(1, ge=1, le=16)


class StageResult(BaseModel):
    """Common fields of every stage result. Immutable once written."""
    model_config = ConfigDict(frozen=True)

    model: str
    duration_ms: int = 0
    tokens_in: int | None = None
    tokens_out: int | None = None


class IdeatorResult(StageResult):
    input: str
    output: list[str]


class ComposerResult(StageResult):
    input: str
    input_concept_index: int = 0
    output: str
    # One description per concept, in concept order
    descriptions: list[str] = Field(default_factory=list)


class JudgeResult(StageResult):
    input: list[str]
    output: list[JudgeRanking]


class PromptEngineerResult(StageResult):
    input: str
    checkpoint_context: str | None = None
    output: PromptPair


class ReviewerResult(StageResult):
    input: PromptPair
    original_idea: str
    output: ReviewerVerdict


class StageResults(BaseModel):
    """Per-stage results of a run. Stages that did not run stay None."""
    ideator: IdeatorResult | None = None
    composer: ComposerResult | None = None
    judge: JudgeResult | None = None
    prompt_engineer: PromptEngineerResult | None = None
    reviewer: ReviewerResult | None = None


class PipelineRun(BaseModel):
    """One execution of the five-stage refinement pass, including its lineage."""
    model_config = ConfigDict(protected_namespaces=())

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    original_idea: str
    num_concepts: int = 1
    auto_approve: bool = False
    stages_enabled: list[bool] = Field(default_factory=lambda: [True] * len(STAGE_ORDER))
    model_per_stage: dict[str, str] = Field(default_factory=dict)
    stages: StageResults = Field(default_factory=StageResults)
    phase: Phase = Phase.IDLE
    error: str | None = None
    failed_stage: Stage | None = None
    selected_concept_index: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def stage_results(self) -> dict[str, StageResult]:
        """Populated stage results keyed by stage name, in stage order."""
        results = {}
        for stage in STAGE_ORDER:
            result = getattr(self.stages, stage.value)
            if result is not None:
                results[stage.value] = result
        return results

    def is_enabled(self, stage: Stage) -> bool:
        return self.stages_enabled[STAGE_ORDER.index(stage)]

    def candidates(self) -> list[str]:
        """Texts the caller can choose from: composed descriptions, raw concepts or the idea."""
        if self.stages.composer is not None and self.stages.composer.descriptions:
            return list(self.stages.composer.descriptions)
        if self.stages.ideator is not None:
            return list(self.stages.ideator.output)
        return [self.original_idea]

    def final_prompt(self) -> PromptPair | None:
        if self.stages.prompt_engineer is None:
            return None
        return self.stages.prompt_engineer.output

    def suggested_prompts(self) -> PromptPair | None:
        """The reviewer's suggested rewrite, if it rejected the prompt and proposed one.

        Missing halves fall back to the prompt engineer's output.
        """
        final = self.final_prompt()
        review = self.stages.reviewer
        if final is None or review is None or review.output.approved:
            return None
        verdict = review.output
        if not verdict.suggested_positive and not verdict.suggested_negative:
            return None
        return PromptPair(
            positive=verdict.suggested_positive or final.positive,
            negative=verdict.suggested_negative or final.negative,
        )
