"""Defensive parsing of language model output into typed stage results.

Parsing is two-phase: the raw text is first loosely decoded into a generic
JSON value (tolerating reasoning blocks, markdown fences and chatter around
the payload), then validated into the strict stage output model. Any mismatch
raises StageParseError naming the stage and the offending field.
"""

import json
import logging
import re
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from backend_errors import MalformedResponseError
from models import JudgeRanking, PromptPair, ReviewerVerdict
from utils import truncate

logger = logging.getLogger(__name__)

_NUMBERED_ITEM = re.compile(r"^(\d+)[.)]\s+(.*)$")


class StageParseError(MalformedResponseError):
    """A stage's output could not be parsed into its expected shape."""

    def __init__(self, stage: str, message: str, raw: str = ""):
        super().__init__(f"{stage} stage returned malformed output: {message}", payload_size=len(raw))
        self.stage = stage


def clean_llm_output(text: str) -> str:
    """Strip <think> blocks and markdown code fences from a model response."""
    text = re.sub(r"<think>.*?</think>", "", text, flags=re.DOTALL)
    code_block_match = re.search(r"```(?:json)?\s*\n(.*?)```", text, flags=re.DOTALL)
    if code_block_match:
        text = code_block_match.group(1)
    return text.strip()


def extract_json(text: str, stage: str = "unknown") -> Any:
    """
    Extract a JSON value from free-form model output.

    Tries a direct parse first, then the widest [...] span, then the widest
    {...} span.

    Args:
        text: Raw model output
        stage: Stage name used in error messages

    Returns:
        The decoded JSON value

    Raises:
        StageParseError: If no valid JSON could be found
    """
    cleaned = clean_llm_output(text)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    for start_char, end_char in (("[", "]"), ("{", "}")):
        start = cleaned.find(start_char)
        end = cleaned.rfind(end_char)
        if start != -1 and end > start:
            try:
                return json.loads(cleaned[start:end + 1])
            except json.JSONDecodeError:
                continue

    raise StageParseError(stage, f"no valid JSON found in response: {truncate(text, 120)!r}", text)


def parse_numbered_list(text: str) -> list[str]:
    """
    Parse a numbered list ("1. ..." or "1) ...") into its items.

    Lines that do not start a new item are joined onto the current one, so
    items may wrap across lines. Text before the first item is ignored.
    """
    items: list[str] = []
    current: list[str] | None = None

    for line in clean_llm_output(text).splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        match = _NUMBERED_ITEM.match(stripped)
        if match:
            if current:
                items.append(" ".join(current))
            current = [match.group(2).strip()]
        elif current is not None:
            current.append(stripped)

    if current:
        items.append(" ".join(current))

    return [item for item in items if item]


def parse_concepts(text: str, num_concepts: int) -> list[str]:
    """Parse ideator output into at most num_concepts distinct concepts.

    Raises:
        StageParseError: If no concept could be parsed
    """
    concepts: list[str] = []
    seen: set[str] = set()
    for item in parse_numbered_list(text):
        key = item.casefold()
        if key in seen:
            continue
        seen.add(key)
        concepts.append(item)

    if not concepts:
        raise StageParseError("ideator", f"no numbered concepts in response: {truncate(text, 120)!r}", text)

    if len(concepts) < num_concepts:
        logger.warning(f"Ideator returned {len(concepts)} distinct concepts, {num_concepts} requested")

    return concepts[:num_concepts]


def parse_description(text: str) -> str:
    """Composer output is free text. Only emptiness is an error."""
    description = clean_llm_output(text)
    if not description:
        raise StageParseError("composer", "empty description", text)
    return description


class _RawRanking(BaseModel):
    concept_index: int = Field(..., ge=0)
    score: float = Field(..., ge=0, le=100)
    reasoning: str = ""


def parse_judge_rankings(text: str, num_concepts: int) -> list[JudgeRanking]:
    """
    Parse and normalize the judge's ranking.

    The result has exactly one entry per concept. Entries are ordered by score
    (descending), ties broken by the lower concept index, and ranks are
    reassigned 1..N from that order. Concepts the judge left out get score 0.
    A repeated concept index keeps its first entry.

    Args:
        text: Raw model output (a JSON array, or an object with a "rankings" array)
        num_concepts: Number of concepts that were judged

    Returns:
        Rankings, best first

    Raises:
        StageParseError: On missing JSON, wrong shape, or an out-of-range index
    """
    payload = extract_json(text, "judge")
    if isinstance(payload, dict):
        payload = payload.get("rankings")
    if not isinstance(payload, list):
        raise StageParseError("judge", "expected a JSON array of rankings", text)

    by_index: dict[int, _RawRanking] = {}
    for position, item in enumerate(payload):
        try:
            entry = _RawRanking.model_validate(item)
        except ValidationError as e:
            fields = ", ".join(".".join(str(part) for part in err["loc"]) or "entry" for err in e.errors())
            raise StageParseError("judge", f"ranking #{position} is invalid ({fields})", text) from e
        if entry.concept_index >= num_concepts:
            raise StageParseError(
                "judge",
                f"ranking #{position} refers to concept {entry.concept_index}, only {num_concepts} were judged",
                text,
            )
        by_index.setdefault(entry.concept_index, entry)

    missing = [index for index in range(num_concepts) if index not in by_index]
    if missing:
        logger.warning(f"Judge did not rank concepts {missing}, scoring them 0")
        for index in missing:
            by_index[index] = _RawRanking(concept_index=index, score=0, reasoning="Not ranked by the judge.")

    ordered = sorted(by_index.values(), key=lambda entry: (-entry.score, entry.concept_index))
    return [
        JudgeRanking(
            rank=rank,
            concept_index=entry.concept_index,
            score=round(entry.score),
            reasoning=entry.reasoning,
        )
        for rank, entry in enumerate(ordered, start=1)
    ]


def _validate(model: type[BaseModel], payload: Any, stage: str, text: str):
    if not isinstance(payload, dict):
        raise StageParseError(stage, "expected a JSON object", text)
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in e.errors())
        raise StageParseError(stage, f"missing or invalid field(s): {fields}", text) from e


def parse_prompt_pair(text: str) -> PromptPair:
    """Parse {"positive": ..., "negative": ...}. An empty positive prompt is an error."""
    pair = _validate(PromptPair, extract_json(text, "prompt_engineer"), "prompt_engineer", text)
    if not pair.positive.strip():
        raise StageParseError("prompt_engineer", "positive prompt is empty", text)
    return PromptPair(positive=pair.positive.strip(), negative=pair.negative.strip())


def parse_reviewer_verdict(text: str) -> ReviewerVerdict:
    """Parse the reviewer's verdict. The "approved" flag is required."""
    return _validate(ReviewerVerdict, extract_json(text, "reviewer"), "reviewer", text)
