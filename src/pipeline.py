"""Pipeline engine for idea-to-prompt refinement.

Runs the five language model stages (ideator, composer, judge, prompt
engineer, reviewer) over one LanguageModelClient, publishing stage events on
the EventBus. Used by both the CLI and the web server.
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from backend_errors import BackendError, OperationCancelled
from config import ModelAssignments, PipelineStageConfig
from events import (
    EventBus,
    TokenCoalescer,
    RUN_FINISHED,
    STAGE_COMPLETE,
    STAGE_ERROR,
    STAGE_START,
)
from llm_client import ChatResponse, LanguageModelClient
from models import (
    ComposerResult,
    IdeatorResult,
    JudgeResult,
    Phase,
    PipelineRun,
    PromptEngineerResult,
    PromptPair,
    ReviewerResult,
    STAGE_ORDER,
    Stage,
)
from prompts import (
    DEFAULT_NEGATIVE_PROMPT,
    CheckpointContext,
    TemplateNotFoundError,
    composer_messages,
    ideator_messages,
    judge_messages,
    prompt_engineer_messages,
    reviewer_messages,
)
from stage_parsing import (
    StageParseError,
    parse_concepts,
    parse_description,
    parse_judge_rankings,
    parse_prompt_pair,
    parse_reviewer_verdict,
)
from utils import run_until_cancelled, short_id

logger = logging.getLogger(__name__)

MIN_CONCEPTS = 1
MAX_CONCEPTS = 10

# Concepts the ideator brainstorms when run on its own
DEFAULT_STAGE_CONCEPTS = 5

# Stages whose input is plain text that can stand in for the idea
_TEXT_INPUT_STAGES = (Stage.IDEATOR, Stage.COMPOSER, Stage.PROMPT_ENGINEER)

_DESCRIPTIONS = TypeAdapter(list[str])

# Generation caps per stage; the composer writes the longest text
MAX_TOKENS = {
    Stage.IDEATOR: 1024,
    Stage.COMPOSER: 2048,
    Stage.JUDGE: 1024,
    Stage.PROMPT_ENGINEER: 1024,
    Stage.REVIEWER: 1024,
}


class PipelineBusyError(Exception):
    """Raised when a run is started while another one is active."""
    pass


class _RunSession:
    """Per-run state: cancellation signal, token coalescer and the stage in progress."""

    def __init__(self, run: PipelineRun, coalescer: TokenCoalescer | None, model_override: str | None = None):
        self.run = run
        self.cancel_event = asyncio.Event()
        self.coalescer = coalescer
        self.model_override = model_override
        self.current_stage: Stage | None = None


class PipelineEngine:
    """Runs prompt-refinement passes, one at a time."""

    def __init__(
        self,
        llm: LanguageModelClient,
        bus: EventBus,
        models: ModelAssignments | None = None,
        stage_config: PipelineStageConfig | None = None,
        templates_dir: Path | None = None,
    ):
        """Initialize the engine.

        Args:
            llm: Language model client used by every stage
            bus: Event bus for stage events
            models: Model id per stage
            stage_config: Stage enable flags and streaming settings
            templates_dir: Override for the system prompt templates directory
        """
        self.llm = llm
        self.bus = bus
        self.models = models or ModelAssignments()
        self.stage_config = stage_config or PipelineStageConfig()
        self.templates_dir = templates_dir
        self._session: _RunSession | None = None

    @property
    def is_running(self) -> bool:
        return self._session is not None

    def cancel(self) -> bool:
        """Cancel the active run.

        Returns:
            True if a run was active and has been signalled
        """
        session = self._session
        if session is None:
            return False
        logger.info(f"[pipeline:{short_id(session.run.id)}] Cancellation requested")
        session.cancel_event.set()
        return True

    def _stages_enabled(self) -> list[bool]:
        enabled = self.stage_config.stages_enabled()
        pe_index = STAGE_ORDER.index(Stage.PROMPT_ENGINEER)
        if not enabled[pe_index]:
            logger.info("Prompt engineer cannot be disabled, running it on the raw idea")
            enabled[pe_index] = True
        return enabled

    async def run(
        self,
        idea: str,
        num_concepts: int = 3,
        auto_approve: bool = False,
        checkpoint_context: CheckpointContext | None = None,
        concept_index: int = 0,
    ) -> PipelineRun:
        """
        Run the full refinement pass for an idea.

        Stage failures and cancellation do not raise: they end the run in the
        ERROR or CANCELLED phase, keeping the results of finished stages.

        Args:
            idea: The user's idea
            num_concepts: Number of concepts to brainstorm (clamped to 1-10)
            auto_approve: Recorded on the run; the caller enqueues on completion
            checkpoint_context: Behavioral profile of the target checkpoint
            concept_index: Concept carried into the prompt engineer

        Returns:
            The finished run with its lineage

        Raises:
            PipelineBusyError: If another run is active
            ValueError: If the idea is empty
        """
        if not idea or not idea.strip():
            raise ValueError("Idea must not be empty")
        if self._session is not None:
            raise PipelineBusyError("A pipeline run is already in progress")

        enabled = self._stages_enabled()
        run = PipelineRun(
            original_idea=idea.strip(),
            num_concepts=max(MIN_CONCEPTS, min(MAX_CONCEPTS, num_concepts)),
            auto_approve=auto_approve,
            stages_enabled=enabled,
            model_per_stage={
                stage.value: self.models.for_stage(stage.value)
                for stage, on in zip(STAGE_ORDER, enabled)
                if on
            },
            selected_concept_index=max(0, concept_index),
        )
        return await self._drive(run, self._run_all_stages, checkpoint_context)

    async def reselect(
        self,
        run: PipelineRun,
        concept_index: int,
        checkpoint_context: CheckpointContext | None = None,
    ) -> PipelineRun:
        """
        Carry a different concept into the prompt engineer and reviewer.

        Ideator, composer and judge results are reused from the given run,
        which is left untouched.

        Args:
            run: A completed run
            concept_index: Index into the run's concepts
            checkpoint_context: Behavioral profile of the target checkpoint

        Returns:
            A new run sharing the earlier stages' results

        Raises:
            PipelineBusyError: If another run is active
            ValueError: If the run is not completed or the index is out of range
        """
        if run.phase != Phase.COMPLETED:
            raise ValueError(f"Only completed runs can be reselected (phase is {run.phase.value})")
        candidates = run.candidates()
        if not 0 <= concept_index < len(candidates):
            raise ValueError(f"Concept index {concept_index} out of range (0-{len(candidates) - 1})")
        if self._session is not None:
            raise PipelineBusyError("A pipeline run is already in progress")

        stages = run.stages.model_copy(update={"prompt_engineer": None, "reviewer": None})
        if stages.composer is not None:
            stages.composer = stages.composer.model_copy(update={
                "input": stages.ideator.output[concept_index] if stages.ideator else run.original_idea,
                "input_concept_index": concept_index,
                "output": stages.composer.descriptions[concept_index],
            })

        new_run = run.model_copy(deep=True, update={
            "id": str(uuid.uuid4()),
            "stages": stages,
            "phase": Phase.IDLE,
            "error": None,
            "failed_stage": None,
            "selected_concept_index": concept_index,
            "started_at": None,
            "finished_at": None,
        })
        return await self._drive(new_run, self._run_final_stages, checkpoint_context)

    async def run_stage(
        self,
        stage: Stage,
        stage_input: str,
        model: str | None = None,
        checkpoint_context: CheckpointContext | None = None,
        original_idea: str | None = None,
        num_concepts: int = DEFAULT_STAGE_CONCEPTS,
    ) -> PipelineRun:
        """
        Run one stage on its own, for iterating on a single stage.

        The input format depends on the stage: the idea for the ideator, a
        concept for the composer, a JSON array of descriptions for the judge,
        a description for the prompt engineer and a JSON object with
        positive and negative fields for the reviewer.

        Args:
            stage: Stage to run
            stage_input: Input for the stage, see above
            model: Model id to use instead of the configured one
            checkpoint_context: Behavioral profile (prompt engineer only)
            original_idea: Idea the judge and reviewer measure against
            num_concepts: Concepts to brainstorm (ideator only, clamped to 1-10)

        Returns:
            A run holding just that stage's result, or the error it failed with

        Raises:
            PipelineBusyError: If another run is active
            ValueError: If the input is empty or not in the stage's format
        """
        if not stage_input or not stage_input.strip():
            raise ValueError("Stage input must not be empty")
        stage_input = stage_input.strip()
        body = self._single_stage_body(stage, stage_input)
        if self._session is not None:
            raise PipelineBusyError("A pipeline run is already in progress")

        idea = (original_idea or "").strip() or (stage_input if stage in _TEXT_INPUT_STAGES else "")
        run = PipelineRun(
            original_idea=idea,
            num_concepts=max(MIN_CONCEPTS, min(MAX_CONCEPTS, num_concepts)),
            stages_enabled=[s == stage for s in STAGE_ORDER],
            model_per_stage={stage.value: model or self.models.for_stage(stage.value)},
        )
        return await self._drive(run, body, checkpoint_context, model_override=model)

    def _single_stage_body(self, stage: Stage, stage_input: str):
        """Parse a single stage's input up front and return the coroutine function that runs it."""
        if stage == Stage.IDEATOR:
            async def body(session, checkpoint_context):
                await self._ideate(session)
        elif stage == Stage.COMPOSER:
            async def body(session, checkpoint_context):
                await self._compose(session, [stage_input])
        elif stage == Stage.JUDGE:
            try:
                descriptions = _DESCRIPTIONS.validate_json(stage_input)
            except ValidationError as e:
                raise ValueError("Judge input must be a JSON array of strings") from e
            if not descriptions:
                raise ValueError("Judge input must contain at least one description")

            async def body(session, checkpoint_context):
                await self._judge(session, descriptions)
        elif stage == Stage.PROMPT_ENGINEER:
            async def body(session, checkpoint_context):
                await self._engineer(session, stage_input, checkpoint_context)
        elif stage == Stage.REVIEWER:
            try:
                pair = PromptPair.model_validate_json(stage_input)
            except ValidationError as e:
                raise ValueError("Reviewer input must be JSON with positive and negative fields") from e

            async def body(session, checkpoint_context):
                await self._review(session, pair)
        else:
            raise ValueError(f"Unknown pipeline stage: {stage}")
        return body

    async def _drive(
        self,
        run: PipelineRun,
        body,
        checkpoint_context: CheckpointContext | None,
        model_override: str | None = None,
    ) -> PipelineRun:
        coalescer = None
        if self.stage_config.streaming:
            coalescer = TokenCoalescer(self.bus, run.id, self.stage_config.token_flush_interval)
        session = _RunSession(run, coalescer, model_override)
        self._session = session
        tag = f"[pipeline:{short_id(run.id)}]"

        run.phase = Phase.RUNNING
        run.started_at = datetime.now()
        logger.info(f"{tag} Starting run for idea: {run.original_idea!r}")

        if coalescer is not None:
            coalescer.start()
        try:
            await body(session, checkpoint_context)
            run.phase = Phase.COMPLETED
        except OperationCancelled:
            run.phase = Phase.CANCELLED
            run.error = "Cancelled by user"
            logger.info(f"{tag} Cancelled during {self._stage_label(session)}")
        except asyncio.CancelledError:
            # The caller's task went away; record the outcome and propagate
            run.phase = Phase.CANCELLED
            run.error = "Cancelled because the caller stopped waiting"
            raise
        except StageParseError as e:
            self._fail(session, e)
            logger.warning(f"{tag} {e} ({e.payload_size} bytes of output)")
        except (BackendError, TemplateNotFoundError) as e:
            self._fail(session, e)
            logger.warning(f"{tag} {self._stage_label(session)} failed: {e}")
        except Exception as e:
            self._fail(session, e)
            logger.exception(f"{tag} Unexpected error in {self._stage_label(session)}: {e}")
        finally:
            if coalescer is not None:
                await coalescer.stop()
            run.finished_at = datetime.now()
            self._session = None
            self.bus.publish(RUN_FINISHED, {
                "run_id": run.id,
                "phase": run.phase.value,
                "error": run.error,
            })

        logger.info(f"{tag} Finished with phase {run.phase.value}")
        return run

    @staticmethod
    def _stage_label(session: _RunSession) -> str:
        return session.current_stage.value if session.current_stage else "pipeline"

    def _fail(self, session: _RunSession, error: Exception) -> None:
        run = session.run
        run.phase = Phase.ERROR
        run.failed_stage = session.current_stage
        label = self._stage_label(session)
        if isinstance(error, StageParseError) or session.current_stage is None:
            run.error = str(error)
        else:
            run.error = f"{label} stage failed: {error}"
        self.bus.publish(STAGE_ERROR, {
            "run_id": run.id,
            "stage": label,
            "error": str(error),
        })

    def _begin_stage(self, session: _RunSession, stage: Stage) -> str:
        if session.cancel_event.is_set():
            raise OperationCancelled("Operation cancelled by user")
        session.current_stage = stage
        model = session.model_override or self.models.for_stage(stage.value)
        self.bus.publish(STAGE_START, {
            "run_id": session.run.id,
            "stage": stage.value,
            "model": model,
        })
        return model

    def _complete_stage(self, session: _RunSession, stage: Stage, result) -> None:
        # Residual tokens go out before stage_complete so none are lost or reordered
        if session.coalescer is not None:
            session.coalescer.flush(stage.value)
        setattr(session.run.stages, stage.value, result)
        self.bus.publish(STAGE_COMPLETE, {
            "run_id": session.run.id,
            "stage": stage.value,
            "duration_ms": result.duration_ms,
        })
        session.current_stage = None

    async def _call(
        self,
        session: _RunSession,
        stage: Stage,
        model: str,
        messages: list[dict[str, str]],
        json_mode: bool = False,
    ) -> ChatResponse:
        on_token = None
        if session.coalescer is not None:
            coalescer = session.coalescer
            on_token = lambda token: coalescer.add(stage.value, token)  # noqa: E731
        return await run_until_cancelled(
            self.llm.chat(
                model,
                messages,
                json_mode=json_mode,
                max_tokens=MAX_TOKENS[stage],
                on_token=on_token,
            ),
            session.cancel_event,
        )

    async def _run_all_stages(self, session: _RunSession, checkpoint_context: CheckpointContext | None) -> None:
        run = session.run

        concepts = await self._ideate(session) if run.is_enabled(Stage.IDEATOR) else [run.original_idea]

        if run.is_enabled(Stage.COMPOSER):
            descriptions = await self._compose(session, concepts)
        else:
            descriptions = concepts

        if not run.selected_concept_index < len(descriptions):
            logger.warning(
                f"Concept index {run.selected_concept_index} out of range for "
                f"{len(descriptions)} concepts, using 0"
            )
            run.selected_concept_index = 0

        if run.is_enabled(Stage.JUDGE):
            await self._judge(session, descriptions)

        await self._run_final_stages(session, checkpoint_context)

    async def _run_final_stages(self, session: _RunSession, checkpoint_context: CheckpointContext | None) -> None:
        run = session.run
        if self.stage_config.enable_prompt_engineer:
            description = run.candidates()[run.selected_concept_index]
        else:
            description = run.original_idea

        pair = await self._engineer(session, description, checkpoint_context)

        if run.is_enabled(Stage.REVIEWER):
            await self._review(session, pair)

    async def _ideate(self, session: _RunSession) -> list[str]:
        run = session.run
        model = self._begin_stage(session, Stage.IDEATOR)
        started = time.monotonic()
        messages = ideator_messages(run.original_idea, run.num_concepts, self.templates_dir)
        response = await self._call(session, Stage.IDEATOR, model, messages)
        concepts = parse_concepts(response.content, run.num_concepts)
        self._complete_stage(session, Stage.IDEATOR, IdeatorResult(
            input=run.original_idea,
            output=concepts,
            model=model,
            duration_ms=_elapsed_ms(started),
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
        ))
        return concepts

    async def _compose(self, session: _RunSession, concepts: list[str]) -> list[str]:
        run = session.run
        model = self._begin_stage(session, Stage.COMPOSER)
        started = time.monotonic()
        descriptions = []
        tokens_in = tokens_out = None
        for concept in concepts:
            response = await self._call(session, Stage.COMPOSER, model, composer_messages(concept, self.templates_dir))
            descriptions.append(parse_description(response.content))
            tokens_in = _add_tokens(tokens_in, response.tokens_in)
            tokens_out = _add_tokens(tokens_out, response.tokens_out)
            if session.cancel_event.is_set():
                raise OperationCancelled("Operation cancelled by user")

        index = run.selected_concept_index if run.selected_concept_index < len(concepts) else 0
        self._complete_stage(session, Stage.COMPOSER, ComposerResult(
            input=concepts[index],
            input_concept_index=index,
            output=descriptions[index],
            descriptions=descriptions,
            model=model,
            duration_ms=_elapsed_ms(started),
            tokens_in=tokens_in,
            tokens_out=tokens_out,
        ))
        return descriptions

    async def _judge(self, session: _RunSession, descriptions: list[str]) -> None:
        run = session.run
        model = self._begin_stage(session, Stage.JUDGE)
        started = time.monotonic()
        messages = judge_messages(run.original_idea, descriptions, self.templates_dir)
        response = await self._call(session, Stage.JUDGE, model, messages, json_mode=True)
        rankings = parse_judge_rankings(response.content, len(descriptions))
        self._complete_stage(session, Stage.JUDGE, JudgeResult(
            input=descriptions,
            output=rankings,
            model=model,
            duration_ms=_elapsed_ms(started),
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
        ))

    async def _engineer(
        self,
        session: _RunSession,
        description: str,
        checkpoint_context: CheckpointContext | None,
    ) -> PromptPair:
        model = self._begin_stage(session, Stage.PROMPT_ENGINEER)
        started = time.monotonic()
        messages = prompt_engineer_messages(description, checkpoint_context, self.templates_dir)
        response = await self._call(session, Stage.PROMPT_ENGINEER, model, messages, json_mode=True)
        pair = parse_prompt_pair(response.content)
        if not pair.negative:
            pair = PromptPair(positive=pair.positive, negative=DEFAULT_NEGATIVE_PROMPT)
        self._complete_stage(session, Stage.PROMPT_ENGINEER, PromptEngineerResult(
            input=description,
            checkpoint_context=checkpoint_context.summary() if checkpoint_context else None,
            output=pair,
            model=model,
            duration_ms=_elapsed_ms(started),
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
        ))
        return pair

    async def _review(self, session: _RunSession, pair: PromptPair) -> None:
        run = session.run
        model = self._begin_stage(session, Stage.REVIEWER)
        started = time.monotonic()
        messages = reviewer_messages(run.original_idea, pair, self.templates_dir)
        response = await self._call(session, Stage.REVIEWER, model, messages, json_mode=True)
        verdict = parse_reviewer_verdict(response.content)
        if not verdict.approved:
            logger.info(f"[pipeline:{short_id(run.id)}] Reviewer flagged issues: {verdict.issues or []}")
        self._complete_stage(session, Stage.REVIEWER, ReviewerResult(
            input=pair,
            original_idea=run.original_idea,
            output=verdict,
            model=model,
            duration_ms=_elapsed_ms(started),
            tokens_in=response.tokens_in,
            tokens_out=response.tokens_out,
        ))


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _add_tokens(total: int | None, count: int | None) -> int | None:
    if count is None:
        return total
    return (total or 0) + count
