"""Builds ComfyUI txt2img workflow graphs from generation settings."""

import random

from models import GenerationSettings

# ComfyUI requires 0 <= seed < 2**64; stay well inside signed range
MAX_SEED = 2**63 - 1

FILENAME_PREFIX = "PromptForge"


def resolve_seed(seed: int) -> int:
    """Replace the random-seed marker (-1) with a concrete seed."""
    if seed < 0:
        return random.randint(0, MAX_SEED)
    return seed


def build_txt2img(
    positive_prompt: str,
    negative_prompt: str,
    settings: GenerationSettings,
    seed: int | None = None,
) -> dict:
    """
    Build a txt2img workflow (the value of the "prompt" field of POST /prompt).

    Node layout: 1 checkpoint loader, 2 empty latent, 3/4 positive/negative
    text encoders, 5 sampler, 6 VAE decode, 7 save image.

    Args:
        positive_prompt: Positive prompt text
        negative_prompt: Negative prompt text
        settings: Generation settings
        seed: Concrete seed to use (resolved from settings.seed if None)

    Returns:
        Workflow graph keyed by node id
    """
    if seed is None:
        seed = resolve_seed(settings.seed)

    return {
        "1": {
            "class_type": "CheckpointLoaderSimple",
            "inputs": {"ckpt_name": settings.checkpoint},
        },
        "2": {
            "class_type": "EmptyLatentImage",
            "inputs": {
                "width": settings.width,
                "height": settings.height,
                "batch_size": settings.batch_size,
            },
        },
        "3": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": positive_prompt, "clip": ["1", 1]},
        },
        "4": {
            "class_type": "CLIPTextEncode",
            "inputs": {"text": negative_prompt, "clip": ["1", 1]},
        },
        "5": {
            "class_type": "KSampler",
            "inputs": {
                "seed": seed,
                "steps": settings.steps,
                "cfg": settings.cfg,
                "sampler_name": settings.sampler,
                "scheduler": settings.scheduler,
                "denoise": 1.0,
                "model": ["1", 0],
                "positive": ["3", 0],
                "negative": ["4", 0],
                "latent_image": ["2", 0],
            },
        },
        "6": {
            "class_type": "VAEDecode",
            "inputs": {"samples": ["5", 0], "vae": ["1", 2]},
        },
        "7": {
            "class_type": "SaveImage",
            "inputs": {"filename_prefix": FILENAME_PREFIX, "images": ["6", 0]},
        },
    }
