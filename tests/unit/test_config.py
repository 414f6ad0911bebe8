"""Tests for project configuration."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from storyloom.pipeline.config import (
    CONFIG_FILE_NAME,
    DEFAULT_DB_NAME,
    ImageSettings,
    ProjectConfig,
    ProjectConfigError,
    StorageConfig,
    TranslationSettings,
    create_default_config,
    load_project_config,
    write_project_config,
)

if TYPE_CHECKING:
    from pathlib import Path


class TestTranslationSettings:
    def test_disabled_by_default(self) -> None:
        settings = TranslationSettings()

        assert settings.narration_enabled is False
        assert settings.suggestions_enabled is False

    def test_master_switch_gates_both(self) -> None:
        settings = TranslationSettings(enabled=True, translate_suggestions=False)

        assert settings.narration_enabled is True
        assert settings.suggestions_enabled is False

    def test_target_language_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STORYLOOM_TARGET_LANGUAGE", "de")

        settings = TranslationSettings.from_dict({"enabled": True, "target_language": "fr"})

        assert settings.target_language == "de"


class TestImageSettings:
    def test_from_dict(self) -> None:
        settings = ImageSettings.from_dict(
            {"mode": "agentic", "reference_mode": True, "background_images": True}
        )

        assert settings.mode == "agentic"
        assert settings.reference_mode is True
        assert settings.background_images_enabled is True

    def test_unknown_mode_rejected(self) -> None:
        with pytest.raises(ValueError, match="Unknown image mode"):
            ImageSettings.from_dict({"mode": "sometimes"})


class TestStorageConfig:
    def test_relative_path_resolves_under_project(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("STORYLOOM_DB", raising=False)

        assert StorageConfig().resolve(tmp_path) == tmp_path / DEFAULT_DB_NAME

    def test_env_override(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STORYLOOM_DB", str(tmp_path / "other.db"))

        assert StorageConfig().resolve(tmp_path) == tmp_path / "other.db"


class TestProjectConfig:
    def test_defaults(self) -> None:
        config = create_default_config("demo")

        assert config.name == "demo"
        assert config.version == 1
        assert config.generation.story_mode == "adventure"
        assert config.images.mode == "none"

    def test_from_dict_partial(self) -> None:
        config = ProjectConfig.from_dict(
            {"name": "demo", "generation": {"story_mode": "creative-writing"}}
        )

        assert config.generation.story_mode == "creative-writing"
        assert config.generation.timeline_fill is True
        assert config.translation.enabled is False

    def test_write_then_load(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("STORYLOOM_TARGET_LANGUAGE", raising=False)
        config = create_default_config("demo")
        config.translation = TranslationSettings(enabled=True, target_language="nl")
        config.images = ImageSettings(mode="agentic", background_images_enabled=True)

        path = write_project_config(config, tmp_path)
        loaded = load_project_config(tmp_path)

        assert path == tmp_path / CONFIG_FILE_NAME
        assert loaded == config


class TestLoadProjectConfig:
    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ProjectConfigError, match="File not found"):
            load_project_config(tmp_path)

    def test_empty_file(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILE_NAME).write_text("")

        with pytest.raises(ProjectConfigError, match="Empty file"):
            load_project_config(tmp_path)

    def test_invalid_value_wrapped(self, tmp_path: Path) -> None:
        (tmp_path / CONFIG_FILE_NAME).write_text("name: demo\nimages:\n  mode: sometimes\n")

        with pytest.raises(ProjectConfigError, match="Unknown image mode"):
            load_project_config(tmp_path)
