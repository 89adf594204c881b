"""Tests for centralized configuration."""

from pathlib import Path

import pytest

from config import HardwareConfig, LanguageModelConfig, ModelAssignments, PipelineStageConfig, Settings, paths


class TestConfig:
    """Tests for centralized configuration."""

    def test_default_settings(self):
        """Test that default settings are loaded correctly."""
        settings = Settings()

        assert settings.language_model.base_url == "http://localhost:11434/v1"
        assert settings.image_backend.endpoint == "http://localhost:8188"
        assert settings.image_backend.use_websocket is True
        assert settings.hardware.max_consecutive_generations == 5
        assert settings.hardware.enable_power_monitoring is False
        assert settings.pipeline.enable_reviewer is False
        assert settings.server.sse_queue_size == 100

    def test_settings_from_env(self, monkeypatch):
        """Test that settings can be loaded from environment variables."""
        monkeypatch.setenv("PROMPT_FORGE_LLM_URL", "http://lmstudio:1234/v1")
        monkeypatch.setenv("PROMPT_FORGE_COMFYUI_URL", "http://gpu:8188")
        monkeypatch.setenv("PROMPT_FORGE_MODEL_JUDGE", "llama3.1:70b")
        monkeypatch.setenv("PROMPT_FORGE_ENABLE_REVIEWER", "true")
        monkeypatch.setenv("PROMPT_FORGE_COMFYUI_USE_WEBSOCKET", "0")
        monkeypatch.setenv("PROMPT_FORGE_MAX_CONSECUTIVE_GENERATIONS", "3")
        monkeypatch.setenv("PROMPT_FORGE_COOLDOWN_SECONDS", "12.5")

        settings = Settings.from_env()

        assert settings.language_model.base_url == "http://lmstudio:1234/v1"
        assert settings.image_backend.endpoint == "http://gpu:8188"
        assert settings.models.judge == "llama3.1:70b"
        assert settings.pipeline.enable_reviewer is True
        assert settings.image_backend.use_websocket is False
        assert settings.hardware.max_consecutive_generations == 3
        assert settings.hardware.cooldown_seconds == 12.5

    def test_immutable_config(self):
        """Test that config dataclasses are immutable."""
        config = LanguageModelConfig()
        with pytest.raises(Exception):  # FrozenInstanceError
            config.base_url = "http://changed"

    def test_model_for_stage(self):
        models = ModelAssignments(prompt_engineer="custom:3b")
        assert models.for_stage("prompt_engineer") == "custom:3b"
        assert models.for_stage("ideator") == ModelAssignments.ideator

    def test_stages_enabled_order(self):
        config = PipelineStageConfig(enable_judge=False, enable_reviewer=True)
        assert config.stages_enabled() == [True, True, False, True, True]

    def test_hardware_defaults(self):
        hardware = HardwareConfig()
        assert hardware.free_memory_on_cooldown is True
        assert hardware.job_gap_seconds == 0.0

    def test_path_config(self):
        """Test that path configuration provides correct paths."""
        assert isinstance(paths.root_dir, Path)
        assert paths.queue_path == paths.data_dir / "queue.json"
        assert paths.images_dir == paths.data_dir / "images"
        assert (paths.templates_dir / "system_prompt_ideator.txt").exists()

    def test_data_dir_override(self, monkeypatch, temp_dir):
        monkeypatch.setenv("PROMPT_FORGE_DATA_DIR", str(temp_dir))
        assert paths.data_dir == temp_dir
        assert paths.queue_path == temp_dir / "queue.json"
