"""Shared test fixtures for all test modules."""

import asyncio
import io
import json
import sys
import tempfile
from pathlib import Path

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from backend_errors import BackendUnreachableError  # noqa: E402
from config import ModelAssignments  # noqa: E402
from image_backend import ImageOutput  # noqa: E402
from llm_client import ChatResponse  # noqa: E402


# Distinct model per stage so the fake language model knows which stage is calling
STAGE_MODELS = ModelAssignments(
    ideator="test-ideator",
    composer="test-composer",
    judge="test-judge",
    prompt_engineer="test-engineer",
    reviewer="test-reviewer",
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def queue_path(temp_dir):
    """Create a queue file path for testing."""
    return temp_dir / "queue.json"


def png_bytes(width: int = 8, height: int = 8, color=(200, 30, 30)) -> bytes:
    """Encode a small solid-color PNG."""
    from PIL import Image

    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeLanguageModel:
    """Scripted stand-in for LanguageModelClient.

    Responses are keyed by model name. A list is consumed one item per call,
    a string is returned for every call, and an exception instance is raised.
    """

    endpoint = "http://llm.test/v1"

    def __init__(self, responses: dict, block_on: str | None = None):
        self.responses = {key: list(value) if isinstance(value, list) else value
                          for key, value in responses.items()}
        self.calls: list[dict] = []
        self.block_on = block_on
        self.blocked = asyncio.Event()
        self.healthy = True

    async def chat(self, model, messages, *, json_mode=False, max_tokens=None, temperature=None, on_token=None):
        self.calls.append({"model": model, "messages": messages, "json_mode": json_mode})
        if model == self.block_on:
            self.blocked.set()
            await asyncio.Event().wait()

        response = self.responses[model]
        if isinstance(response, list):
            response = response.pop(0)
        if isinstance(response, Exception):
            raise response

        if on_token is not None:
            for word in response.split(" "):
                on_token(word + " ")
        return ChatResponse(content=response, model=model, tokens_in=10, tokens_out=len(response.split()))

    async def list_models(self):
        return sorted(STAGE_MODELS.__dict__.values())

    async def health_check(self):
        return self.healthy

    async def close(self):
        pass


def cat_on_throne_responses() -> dict:
    """Well-formed output of every stage for the idea "a cat on a throne"."""
    return {
        "test-ideator": (
            "1. A regal tabby cat seated on a gilded throne in a candlelit hall\n"
            "2. A tiny kitten dwarfed by an enormous stone throne\n"
            "3. A sphinx cat on a futuristic chrome throne"
        ),
        "test-composer": [
            "A majestic tabby cat rests on a gilded baroque throne, warm candlelight.",
            "A small grey kitten sits on a vast weathered stone throne, cold morning light.",
            "A hairless sphinx cat lounges on a chrome throne, neon rim lighting.",
        ],
        "test-judge": json.dumps({"rankings": [
            {"concept_index": 1, "score": 92, "reasoning": "Strong scale contrast."},
            {"concept_index": 0, "score": 85, "reasoning": "Classic and rich."},
            {"concept_index": 2, "score": 70, "reasoning": "Less coherent."},
        ]}),
        "test-engineer": json.dumps({
            "positive": "masterpiece, tabby cat on gilded throne, candlelight, baroque hall",
            "negative": "blurry, lowres, extra limbs",
        }),
        "test-reviewer": json.dumps({"approved": True, "issues": []}),
    }


@pytest.fixture
def fake_llm():
    return FakeLanguageModel(cat_on_throne_responses())


class FakeImageBackend:
    """Scripted stand-in for ImageBackendClient."""

    endpoint = "http://comfy.test:8188"

    def __init__(self, image: bytes | None = None, steps: int = 4):
        self.image = image if image is not None else png_bytes()
        self.steps = steps
        self.submitted: list[dict] = []
        self.interrupts = 0
        self.freed = 0
        self.submit_error: Exception | None = None
        self.wait_error: Exception | None = None
        self.block_in_wait = False
        self.waiting = asyncio.Event()
        self.healthy = True

    async def submit(self, workflow):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(workflow)
        return f"prompt-{len(self.submitted)}"

    async def wait_for_completion(self, prompt_id, on_progress=None):
        if on_progress is not None:
            for step in range(1, self.steps + 1):
                on_progress(step, self.steps)
        self.waiting.set()
        if self.block_in_wait:
            await asyncio.Event().wait()
        if self.wait_error is not None:
            raise self.wait_error
        return [ImageOutput(filename=f"{prompt_id}.png", subfolder="", type="output")]

    async def fetch_image(self, image):
        return self.image

    async def interrupt(self):
        self.interrupts += 1

    async def free_memory(self, unload_models=True):
        self.freed += 1

    async def health_check(self):
        return self.healthy

    async def list_checkpoints(self):
        return ["dreamshaper_8.safetensors", "sdxl_base.safetensors"]

    async def close(self):
        pass


def unreachable_error(endpoint: str = "http://127.0.0.1:1") -> BackendUnreachableError:
    return BackendUnreachableError("image backend", endpoint, "ConnectError")


@pytest.fixture
def fake_backend():
    return FakeImageBackend()
