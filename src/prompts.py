"""System and user prompts for each pipeline stage."""

from dataclasses import dataclass, asdict
from pathlib import Path

from config import paths
from models import PromptPair


DEFAULT_NEGATIVE_PROMPT = "lowres, bad anatomy, bad hands, text, watermark, blurry"


class TemplateNotFoundError(Exception):
    """Raised when a stage has no system prompt template."""
    pass


@dataclass(frozen=True)
class CheckpointContext:
    """Behavioral profile of the target checkpoint, injected into the prompt engineer."""
    checkpoint_name: str = "unknown"
    base_model: str = "SD 1.5"
    strengths: str = "general purpose"
    weaknesses: str = "text rendering, hands"
    cfg_range_low: str = "6.0"
    cfg_range_high: str = "9.0"
    preferred_sampler: str = "dpmpp_2m"
    checkpoint_notes: str = "No specific notes available."
    term_list: str = "No specific term data available."

    def summary(self) -> str:
        """One-line description stored in the stage result."""
        return (
            f"Checkpoint: {self.checkpoint_name}, Base: {self.base_model}, "
            f"Strengths: {self.strengths}, Weaknesses: {self.weaknesses}"
        )


def parse_checkpoint_context(text: str, checkpoint: str = "unknown") -> CheckpointContext:
    """Build a CheckpointContext from the line-oriented text the gallery exports.

    Recognized lines: "Checkpoint: ", "Base model: ", "Strengths: ",
    "Weaknesses: ", "Notes: ", and a "Known terms:" header followed by
    "- " term lines. Unknown lines are ignored.

    Args:
        text: Checkpoint context text
        checkpoint: Checkpoint filename used when the text does not name one

    Returns:
        Parsed context with defaults for missing fields
    """
    fields = {"checkpoint_name": checkpoint}
    terms: list[str] | None = None

    prefixes = {
        "Checkpoint: ": "checkpoint_name",
        "Base model: ": "base_model",
        "Strengths: ": "strengths",
        "Weaknesses: ": "weaknesses",
        "Notes: ": "checkpoint_notes",
    }

    for raw_line in text.splitlines():
        line = raw_line.strip()
        for prefix, name in prefixes.items():
            if line.startswith(prefix):
                fields[name] = line[len(prefix):]
                break
        else:
            if line.startswith("Known terms:"):
                terms = []
            elif line.startswith("- ") and terms is not None:
                terms.append(line)

    if terms:
        fields["term_list"] = "\n".join(terms)

    return CheckpointContext(**fields)


def get_system_prompt(stage: str, templates_dir: Path | None = None) -> str:
    """
    Load the raw system prompt template for a stage.

    Args:
        stage: Stage name (e.g. "ideator", "prompt_engineer")
        templates_dir: Override for the templates directory

    Returns:
        The template content, with str.format placeholders intact
    """
    directory = templates_dir or paths.templates_dir
    template_path = directory / f"system_prompt_{stage}.txt"
    if not template_path.exists():
        raise TemplateNotFoundError(f"No system prompt template for stage '{stage}' at {template_path}")
    return template_path.read_text()


def _messages(system: str, user: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": user},
    ]


def ideator_messages(idea: str, num_concepts: int, templates_dir: Path | None = None) -> list[dict[str, str]]:
    system = get_system_prompt("ideator", templates_dir).format(num_concepts=num_concepts)
    return _messages(system, f"User's idea: {idea}")


def composer_messages(concept: str, templates_dir: Path | None = None) -> list[dict[str, str]]:
    return _messages(get_system_prompt("composer", templates_dir), f"Concept: {concept}")


def judge_messages(
    original_idea: str,
    concepts: list[str],
    templates_dir: Path | None = None,
) -> list[dict[str, str]]:
    """Concepts are numbered from 0 so the judge's concept_index maps directly to list positions."""
    numbered = "\n".join(f"{i}. {concept}" for i, concept in enumerate(concepts))
    user = f"Original idea: {original_idea}\n\nConcepts:\n{numbered}"
    return _messages(get_system_prompt("judge", templates_dir).format(), user)


def prompt_engineer_messages(
    description: str,
    context: CheckpointContext | None = None,
    templates_dir: Path | None = None,
) -> list[dict[str, str]]:
    context = context or CheckpointContext()
    system = get_system_prompt("prompt_engineer", templates_dir).format(**asdict(context))
    return _messages(system, f"Scene description:\n{description}")


def reviewer_messages(
    original_idea: str,
    prompt: PromptPair,
    templates_dir: Path | None = None,
) -> list[dict[str, str]]:
    user = (
        f"Original idea: {original_idea}\n"
        f"Positive prompt: {prompt.positive}\n"
        f"Negative prompt: {prompt.negative}"
    )
    return _messages(get_system_prompt("reviewer", templates_dir).format(), user)
