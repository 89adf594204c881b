"""Centralized configuration for the prompt-forge application."""

import os
from dataclasses import dataclass, field
from pathlib import Path


ENV_PREFIX = "PROMPT_FORGE_"

STAGE_NAMES = ("ideator", "composer", "judge", "prompt_engineer", "reviewer")


def _env(name: str, default):
    return os.environ.get(f"{ENV_PREFIX}{name}", default)


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class LanguageModelConfig:
    """Configuration for the OpenAI-compatible language model server (Ollama, LM Studio)."""
    base_url: str = "http://localhost:11434/v1"
    api_key: str = "ollama"
    timeout: float = 300.0  # seconds per stage call
    health_timeout: float = 5.0
    temperature: float = 0.7


@dataclass(frozen=True)
class ImageBackendConfig:
    """Configuration for the ComfyUI-style image generation server."""
    endpoint: str = "http://localhost:8188"
    request_timeout: float = 30.0
    generation_timeout: float = 600.0  # 10 minutes per job
    poll_interval: float = 2.0
    use_websocket: bool = True
    websocket_idle_timeout: float = 30.0


@dataclass(frozen=True)
class ModelAssignments:
    """Language model used by each pipeline stage."""
    ideator: str = "mistral:7b"
    composer: str = "llama3.1:8b"
    judge: str = "qwen2.5:7b"
    prompt_engineer: str = "mistral:7b"
    reviewer: str = "qwen2.5:7b"

    def for_stage(self, stage: str) -> str:
        return getattr(self, stage)


@dataclass(frozen=True)
class PipelineStageConfig:
    """Which pipeline stages are enabled. The prompt engineer always runs."""
    enable_ideator: bool = True
    enable_composer: bool = True
    enable_judge: bool = True
    enable_prompt_engineer: bool = True
    enable_reviewer: bool = False
    streaming: bool = True
    token_flush_interval: float = 0.033  # ~30 flushes per second

    def stages_enabled(self) -> list[bool]:
        return [
            self.enable_ideator,
            self.enable_composer,
            self.enable_judge,
            self.enable_prompt_engineer,
            self.enable_reviewer,
        ]


@dataclass(frozen=True)
class HardwareConfig:
    """GPU protection policies for the queue executor."""
    cooldown_seconds: float = 30.0
    max_consecutive_generations: int = 5  # 0 disables the limit
    job_gap_seconds: float = 0.0
    free_memory_on_cooldown: bool = True
    enable_power_monitoring: bool = False
    power_monitor_url: str = "http://homeassistant.local:8123"
    power_monitor_token: str = ""
    power_entity_id: str = "sensor.gpu_power_draw"
    max_watts: float = 180.0
    power_recheck_seconds: float = 15.0


@dataclass(frozen=True)
class GenerationDefaults:
    """Default generation settings for jobs that do not specify them."""
    checkpoint: str = "dreamshaper_8.safetensors"
    width: int = 512
    height: int = 768
    steps: int = 25
    cfg: float = 7.5
    sampler: str = "dpmpp_2m"
    scheduler: str = "karras"


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the web server."""
    host: str = "127.0.0.1"
    port: int = 8000
    sse_queue_size: int = 100
    sse_timeout: float = 5.0  # seconds between keepalives
    idle_wait: float = 5.0  # executor idle wake-up interval
    max_history: int = 200  # finished jobs kept in queue.json


@dataclass(frozen=True)
class PathConfig:
    """Centralized path configuration for the application."""

    @property
    def root_dir(self) -> Path:
        """Project root directory."""
        return Path(__file__).parent.parent

    @property
    def data_dir(self) -> Path:
        """Directory for queue state and generated images."""
        override = os.environ.get(f"{ENV_PREFIX}DATA_DIR")
        if override:
            return Path(override)
        return self.root_dir / "generated"

    @property
    def images_dir(self) -> Path:
        """Directory where finished artifacts are saved."""
        return self.data_dir / "images"

    @property
    def queue_path(self) -> Path:
        """Path to the job queue JSON file."""
        return self.data_dir / "queue.json"

    @property
    def templates_dir(self) -> Path:
        """Directory for stage system prompt templates."""
        override = os.environ.get(f"{ENV_PREFIX}TEMPLATES_DIR")
        if override:
            return Path(override)
        return self.root_dir / "templates"


# Singleton path configuration instance
paths = PathConfig()


@dataclass
class Settings:
    """Application settings, can be overridden via environment variables."""
    language_model: LanguageModelConfig = field(default_factory=LanguageModelConfig)
    image_backend: ImageBackendConfig = field(default_factory=ImageBackendConfig)
    models: ModelAssignments = field(default_factory=ModelAssignments)
    pipeline: PipelineStageConfig = field(default_factory=PipelineStageConfig)
    hardware: HardwareConfig = field(default_factory=HardwareConfig)
    generation: GenerationDefaults = field(default_factory=GenerationDefaults)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables with PROMPT_FORGE_ prefix."""
        language_model = LanguageModelConfig(
            base_url=_env("LLM_URL", LanguageModelConfig.base_url),
            api_key=_env("LLM_API_KEY", LanguageModelConfig.api_key),
            timeout=float(_env("LLM_TIMEOUT", LanguageModelConfig.timeout)),
            health_timeout=float(_env("LLM_HEALTH_TIMEOUT", LanguageModelConfig.health_timeout)),
            temperature=float(_env("LLM_TEMPERATURE", LanguageModelConfig.temperature)),
        )
        image_backend = ImageBackendConfig(
            endpoint=_env("COMFYUI_URL", ImageBackendConfig.endpoint),
            request_timeout=float(_env("COMFYUI_REQUEST_TIMEOUT", ImageBackendConfig.request_timeout)),
            generation_timeout=float(_env("COMFYUI_GENERATION_TIMEOUT", ImageBackendConfig.generation_timeout)),
            poll_interval=float(_env("COMFYUI_POLL_INTERVAL", ImageBackendConfig.poll_interval)),
            use_websocket=_env_bool("COMFYUI_USE_WEBSOCKET", ImageBackendConfig.use_websocket),
            websocket_idle_timeout=float(
                _env("COMFYUI_WEBSOCKET_IDLE_TIMEOUT", ImageBackendConfig.websocket_idle_timeout)
            ),
        )
        models = ModelAssignments(
            ideator=_env("MODEL_IDEATOR", ModelAssignments.ideator),
            composer=_env("MODEL_COMPOSER", ModelAssignments.composer),
            judge=_env("MODEL_JUDGE", ModelAssignments.judge),
            prompt_engineer=_env("MODEL_PROMPT_ENGINEER", ModelAssignments.prompt_engineer),
            reviewer=_env("MODEL_REVIEWER", ModelAssignments.reviewer),
        )
        pipeline = PipelineStageConfig(
            enable_ideator=_env_bool("ENABLE_IDEATOR", PipelineStageConfig.enable_ideator),
            enable_composer=_env_bool("ENABLE_COMPOSER", PipelineStageConfig.enable_composer),
            enable_judge=_env_bool("ENABLE_JUDGE", PipelineStageConfig.enable_judge),
            enable_prompt_engineer=_env_bool(
                "ENABLE_PROMPT_ENGINEER", PipelineStageConfig.enable_prompt_engineer
            ),
            enable_reviewer=_env_bool("ENABLE_REVIEWER", PipelineStageConfig.enable_reviewer),
            streaming=_env_bool("STREAMING", PipelineStageConfig.streaming),
            token_flush_interval=float(
                _env("TOKEN_FLUSH_INTERVAL", PipelineStageConfig.token_flush_interval)
            ),
        )
        hardware = HardwareConfig(
            cooldown_seconds=float(_env("COOLDOWN_SECONDS", HardwareConfig.cooldown_seconds)),
            max_consecutive_generations=int(
                _env("MAX_CONSECUTIVE_GENERATIONS", HardwareConfig.max_consecutive_generations)
            ),
            job_gap_seconds=float(_env("JOB_GAP_SECONDS", HardwareConfig.job_gap_seconds)),
            free_memory_on_cooldown=_env_bool(
                "FREE_MEMORY_ON_COOLDOWN", HardwareConfig.free_memory_on_cooldown
            ),
            enable_power_monitoring=_env_bool(
                "ENABLE_POWER_MONITORING", HardwareConfig.enable_power_monitoring
            ),
            power_monitor_url=_env("POWER_MONITOR_URL", HardwareConfig.power_monitor_url),
            power_monitor_token=_env("POWER_MONITOR_TOKEN", HardwareConfig.power_monitor_token),
            power_entity_id=_env("POWER_ENTITY_ID", HardwareConfig.power_entity_id),
            max_watts=float(_env("MAX_WATTS", HardwareConfig.max_watts)),
            power_recheck_seconds=float(
                _env("POWER_RECHECK_SECONDS", HardwareConfig.power_recheck_seconds)
            ),
        )
        generation = GenerationDefaults(
            checkpoint=_env("DEFAULT_CHECKPOINT", GenerationDefaults.checkpoint),
            width=int(_env("DEFAULT_WIDTH", GenerationDefaults.width)),
            height=int(_env("DEFAULT_HEIGHT", GenerationDefaults.height)),
            steps=int(_env("DEFAULT_STEPS", GenerationDefaults.steps)),
            cfg=float(_env("DEFAULT_CFG", GenerationDefaults.cfg)),
            sampler=_env("DEFAULT_SAMPLER", GenerationDefaults.sampler),
            scheduler=_env("DEFAULT_SCHEDULER", GenerationDefaults.scheduler),
        )
        server = ServerConfig(
            host=_env("HOST", ServerConfig.host),
            port=int(_env("PORT", ServerConfig.port)),
            sse_queue_size=int(_env("SSE_QUEUE_SIZE", ServerConfig.sse_queue_size)),
            sse_timeout=float(_env("SSE_TIMEOUT", ServerConfig.sse_timeout)),
            idle_wait=float(_env("IDLE_WAIT", ServerConfig.idle_wait)),
            max_history=int(_env("MAX_HISTORY", ServerConfig.max_history)),
        )
        return cls(
            language_model=language_model,
            image_backend=image_backend,
            models=models,
            pipeline=pipeline,
            hardware=hardware,
            generation=generation,
            server=server,
        )


# Global settings instance - use from_env() for environment-aware settings
settings = Settings.from_env()
