#!/usr/bin/env python3
"""CLI entry point for the prompt-forge orchestration server."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
import httpx

from backend_errors import BackendError
from config import Settings, paths
from events import Event, EventBus, STAGE_COMPLETE, STAGE_ERROR, STAGE_START, STAGE_TOKEN
from image_backend import ImageBackendClient
from llm_client import LanguageModelClient
from models import Phase, PipelineRun
from pipeline import MAX_CONCEPTS, MIN_CONCEPTS, PipelineEngine
from prompts import parse_checkpoint_context
from utils import truncate


def cli_progress(stream_tokens: bool):
    """Build a bus listener that reports stage progress on the terminal."""

    def on_event(event: Event) -> None:
        data = event.data
        if event.topic == STAGE_START:
            click.echo(f"\n[{data['stage']}] running on {data['model']}...")
        elif event.topic == STAGE_TOKEN and stream_tokens:
            click.echo(data["token"], nl=False)
        elif event.topic == STAGE_COMPLETE:
            if stream_tokens:
                click.echo()
            click.echo(f"[{data['stage']}] done in {data['duration_ms'] / 1000:.1f}s")
        elif event.topic == STAGE_ERROR:
            click.echo(f"[{data['stage']}] failed: {data['error']}", err=True)

    return on_event


def format_run(run: PipelineRun) -> str:
    """Human-readable summary of a finished run."""
    lines = [f"Run {run.id[:8]}: {run.phase.value}"]
    stages = run.stages

    if stages.ideator is not None:
        lines.append("\nConcepts:")
        lines.extend(f"  {i}. {concept}" for i, concept in enumerate(stages.ideator.output))

    if stages.judge is not None:
        lines.append("\nJudge ranking:")
        for ranking in stages.judge.output:
            reason = f" - {truncate(ranking.reasoning, 80)}" if ranking.reasoning else ""
            lines.append(f"  #{ranking.rank} concept {ranking.concept_index} ({ranking.score}){reason}")

    final = run.final_prompt()
    if final is not None:
        lines.append(f"\nPositive: {final.positive}")
        lines.append(f"Negative: {final.negative}")

    if stages.reviewer is not None:
        verdict = stages.reviewer.output
        lines.append(f"\nReviewer: {'approved' if verdict.approved else 'not approved'}")
        for issue in verdict.issues or []:
            lines.append(f"  - {issue}")
        suggested = run.suggested_prompts()
        if suggested is not None:
            lines.append(f"Suggested positive: {suggested.positive}")
            lines.append(f"Suggested negative: {suggested.negative}")

    if run.error:
        stage = run.failed_stage.value if run.failed_stage else "pipeline"
        lines.append(f"\nError in {stage}: {run.error}")

    return "\n".join(lines)


def default_server_url(settings: Settings) -> str:
    return f"http://{settings.server.host}:{settings.server.port}"


async def _run_pipeline(settings: Settings, idea: str, num_concepts: int, concept_index: int,
                        checkpoint_context, stream_tokens: bool) -> PipelineRun:
    llm = LanguageModelClient(settings.language_model)
    bus = EventBus()
    bus.add_listener(cli_progress(stream_tokens))
    engine = PipelineEngine(
        llm,
        bus,
        models=settings.models,
        stage_config=settings.pipeline,
        templates_dir=paths.templates_dir,
    )
    try:
        return await engine.run(
            idea,
            num_concepts=num_concepts,
            checkpoint_context=checkpoint_context,
            concept_index=concept_index,
        )
    finally:
        await llm.close()


def submit_job(server_url: str, run: PipelineRun, priority: str, checkpoint: str | None) -> str:
    """Enqueue a run's final prompt on a running server.

    Returns:
        The new job id
    """
    prompt = run.final_prompt()
    payload = {
        "positive_prompt": prompt.positive,
        "negative_prompt": prompt.negative,
        "priority": priority,
        "original_idea": run.original_idea,
        "pipeline_log": run.model_dump(mode="json"),
    }
    if checkpoint:
        payload["settings"] = {"checkpoint": checkpoint}
    response = httpx.post(f"{server_url.rstrip('/')}/api/queue", json=payload, timeout=10.0)
    response.raise_for_status()
    return response.json()["job_id"]


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable debug logging')
@click.pass_context
def main(ctx: click.Context, verbose: bool):
    """Turn image ideas into refined prompts and queue them on a local GPU."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = Settings.from_env()


@main.command()
@click.option('--host', default=None, help='Bind address (default: from settings)')
@click.option('--port', default=None, type=int, help='Port (default: from settings)')
@click.pass_obj
def serve(settings: Settings, host: str | None, port: int | None):
    """Start the HTTP/SSE server and the queue executor."""
    import uvicorn
    from server.app import app

    host = host or settings.server.host
    port = port or settings.server.port
    click.echo(f"Starting server at http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)


@main.command()
@click.argument('idea')
@click.option('-n', '--concepts', 'num_concepts', default=3, type=click.IntRange(MIN_CONCEPTS, MAX_CONCEPTS),
              help='Number of concepts to brainstorm (default: 3)')
@click.option('--concept-index', default=0, type=int,
              help='Concept carried into the prompt engineer (default: 0)')
@click.option('--checkpoint', default=None, help='Target checkpoint filename')
@click.option('--checkpoint-context', type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help='Text file describing the checkpoint (strengths, weaknesses, known terms)')
@click.option('--stream/--no-stream', default=False, help='Echo model tokens as they arrive')
@click.option('--json', 'as_json', is_flag=True, help='Print the full run lineage as JSON')
@click.option('--enqueue', is_flag=True, help='Queue the final prompt on a running server')
@click.option('--priority', type=click.Choice(['high', 'normal', 'low']), default='normal',
              help='Queue priority for --enqueue')
@click.option('--server', 'server_url', default=None, help='Server URL for --enqueue')
@click.pass_obj
def run(settings: Settings, idea: str, num_concepts: int, concept_index: int, checkpoint: str | None,
        checkpoint_context: Path | None, stream: bool, as_json: bool, enqueue: bool, priority: str,
        server_url: str | None):
    """
    Run the refinement pipeline for IDEA in the terminal.

    Example:
        prompt-forge run "a cat on a throne" -n 3
        prompt-forge run "a lighthouse in a storm" --enqueue --priority high
    """
    context = None
    if checkpoint_context is not None:
        context = parse_checkpoint_context(checkpoint_context.read_text(), checkpoint or "unknown")

    try:
        result = asyncio.run(
            _run_pipeline(settings, idea, num_concepts, concept_index, context, stream)
        )
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("\nCancelled", err=True)
        sys.exit(130)

    if as_json:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        click.echo()
        click.echo(format_run(result))

    if result.phase != Phase.COMPLETED:
        sys.exit(1)

    if enqueue:
        url = server_url or default_server_url(settings)
        try:
            job_id = submit_job(url, result, priority, checkpoint)
        except httpx.HTTPError as e:
            click.echo(f"Error: could not enqueue on {url}: {e}", err=True)
            sys.exit(1)
        click.echo(f"\nQueued job {job_id[:8]} ({priority} priority)")


@main.command()
@click.pass_obj
def health(settings: Settings):
    """Check that the language model server and the image backend answer."""

    async def check():
        llm = LanguageModelClient(settings.language_model)
        backend = ImageBackendClient(settings.image_backend)
        try:
            return await asyncio.gather(llm.health_check(), backend.health_check())
        finally:
            await llm.close()
            await backend.close()

    llm_ok, backend_ok = asyncio.run(check())
    click.echo(f"Language model ({settings.language_model.base_url}): {'ok' if llm_ok else 'unreachable'}")
    click.echo(f"Image backend ({settings.image_backend.endpoint}): {'ok' if backend_ok else 'unreachable'}")
    if not (llm_ok and backend_ok):
        sys.exit(1)


@main.command()
@click.pass_obj
def models(settings: Settings):
    """List available language models and checkpoints, and the model used per stage."""

    async def fetch():
        llm = LanguageModelClient(settings.language_model)
        backend = ImageBackendClient(settings.image_backend)
        try:
            return await llm.list_models(), await backend.list_checkpoints()
        finally:
            await llm.close()
            await backend.close()

    try:
        language_models, checkpoints = asyncio.run(fetch())
    except BackendError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    click.echo("Language models:")
    for name in language_models:
        click.echo(f"  {name}")
    click.echo("Checkpoints:")
    for name in checkpoints:
        click.echo(f"  {name}")
    click.echo("Stage assignments:")
    for stage in ("ideator", "composer", "judge", "prompt_engineer", "reviewer"):
        click.echo(f"  {stage}: {settings.models.for_stage(stage)}")


@main.command()
@click.option('--server', 'server_url', default=None, help='Server URL (default: from settings)')
@click.pass_obj
def queue(settings: Settings, server_url: str | None):
    """Show the jobs of a running server."""
    url = server_url or default_server_url(settings)
    try:
        response = httpx.get(f"{url.rstrip('/')}/api/queue", timeout=10.0)
        response.raise_for_status()
    except httpx.HTTPError as e:
        click.echo(f"Error: could not reach {url}: {e}", err=True)
        sys.exit(1)

    jobs = response.json()
    if not jobs:
        click.echo("Queue is empty")
        return

    for job in jobs:
        progress = job.get("progress") or {}
        detail = ""
        if job["status"] == "generating" and progress.get("total_steps"):
            detail = f" {progress['current_step']}/{progress['total_steps']}"
        elif job["status"] == "failed" and job.get("error"):
            detail = f" {truncate(job['error'], 60)}"
        click.echo(
            f"{job['id'][:8]}  {job['status']:<10} {job['priority']:<6}"
            f" {truncate(job['positive_prompt'], 50)}{detail}"
        )


if __name__ == '__main__':
    main()
