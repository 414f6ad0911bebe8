"""Project configuration loading."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import Any, Literal

from ruamel.yaml import YAML

CONFIG_FILE_NAME = "storyloom.yaml"
DEFAULT_DB_NAME = "story.db"

ImageMode = Literal["none", "agentic", "inline"]
StoryModeName = Literal["adventure", "creative-writing"]


@dataclass
class TranslationSettings:
    """Translation of generated text into the reader's language.

    Attributes:
        enabled: Master switch.
        target_language: Language code to translate into.
        translate_narration: Translate narrative entries.
        translate_suggestions: Translate suggestions and action choices.
    """

    enabled: bool = False
    target_language: str = "en"
    translate_narration: bool = True
    translate_suggestions: bool = True

    @property
    def narration_enabled(self) -> bool:
        return self.enabled and self.translate_narration

    @property
    def suggestions_enabled(self) -> bool:
        return self.enabled and self.translate_suggestions

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TranslationSettings:
        """Create settings from dictionary.

        The target language can be overridden with STORYLOOM_TARGET_LANGUAGE.
        """
        return cls(
            enabled=bool(data.get("enabled", False)),
            target_language=os.getenv("STORYLOOM_TARGET_LANGUAGE")
            or data.get("target_language", "en"),
            translate_narration=bool(data.get("translate_narration", True)),
            translate_suggestions=bool(data.get("translate_suggestions", True)),
        )


@dataclass
class ImageSettings:
    """Image generation settings.

    Attributes:
        mode: ``inline`` images come from tags in the narrative itself,
            ``agentic`` runs scene analysis after each turn, ``none`` disables.
        reference_mode: Generate with character portraits as references.
        background_images_enabled: Generate scene backgrounds.
    """

    mode: ImageMode = "none"
    reference_mode: bool = False
    background_images_enabled: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageSettings:
        mode = data.get("mode", "none")
        if mode not in ("none", "agentic", "inline"):
            raise ValueError(f"Unknown image mode '{mode}'")
        return cls(
            mode=mode,
            reference_mode=bool(data.get("reference_mode", False)),
            background_images_enabled=bool(data.get("background_images", False)),
        )


@dataclass
class GenerationSettings:
    """Per-turn generation behaviour."""

    story_mode: StoryModeName = "adventure"
    timeline_fill: bool = True
    disable_suggestions: bool = False
    interactive: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GenerationSettings:
        return cls(
            story_mode=data.get("story_mode", "adventure"),
            timeline_fill=bool(data.get("timeline_fill", True)),
            disable_suggestions=bool(data.get("disable_suggestions", False)),
            interactive=bool(data.get("interactive", True)),
        )


@dataclass
class StorageConfig:
    """Where the story database lives, relative to the project."""

    db_path: str = DEFAULT_DB_NAME

    def resolve(self, project_path: Path) -> Path:
        """Absolute database path; STORYLOOM_DB overrides the config."""
        override = os.getenv("STORYLOOM_DB")
        if override:
            return Path(override)
        path = Path(self.db_path)
        return path if path.is_absolute() else project_path / path


@dataclass
class ProjectConfig:
    """Configuration for a storyloom project."""

    name: str
    version: int = 1
    generation: GenerationSettings = field(default_factory=GenerationSettings)
    translation: TranslationSettings = field(default_factory=TranslationSettings)
    images: ImageSettings = field(default_factory=ImageSettings)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectConfig:
        """Create config from dictionary.

        Args:
            data: Dictionary containing config fields.

        Returns:
            ProjectConfig instance.
        """
        return cls(
            name=data.get("name", "unnamed"),
            version=data.get("version", 1),
            generation=GenerationSettings.from_dict(data.get("generation", {})),
            translation=TranslationSettings.from_dict(data.get("translation", {})),
            images=ImageSettings.from_dict(data.get("images", {})),
            storage=StorageConfig(db_path=data.get("storage", {}).get("db", DEFAULT_DB_NAME)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "generation": {
                "story_mode": self.generation.story_mode,
                "timeline_fill": self.generation.timeline_fill,
                "disable_suggestions": self.generation.disable_suggestions,
                "interactive": self.generation.interactive,
            },
            "translation": {
                "enabled": self.translation.enabled,
                "target_language": self.translation.target_language,
                "translate_narration": self.translation.translate_narration,
                "translate_suggestions": self.translation.translate_suggestions,
            },
            "images": {
                "mode": self.images.mode,
                "reference_mode": self.images.reference_mode,
                "background_images": self.images.background_images_enabled,
            },
            "storage": {"db": self.storage.db_path},
        }


class ProjectConfigError(Exception):
    """Raised when project configuration cannot be loaded."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load project config at {path}: {reason}")


def load_project_config(project_path: Path) -> ProjectConfig:
    """Load project configuration from storyloom.yaml.

    Args:
        project_path: Path to the project root directory.

    Returns:
        ProjectConfig instance.

    Raises:
        ProjectConfigError: If config cannot be loaded.
    """
    config_path = project_path / CONFIG_FILE_NAME

    if not config_path.exists():
        raise ProjectConfigError(config_path, "File not found")

    yaml = YAML()
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)

        if data is None:
            raise ProjectConfigError(config_path, "Empty file")

        return ProjectConfig.from_dict(dict(data))
    except ProjectConfigError:
        raise
    except Exception as e:
        raise ProjectConfigError(config_path, str(e)) from e


def write_project_config(config: ProjectConfig, project_path: Path) -> Path:
    """Write *config* to storyloom.yaml under *project_path*."""
    config_path = project_path / CONFIG_FILE_NAME
    yaml = YAML()
    yaml.default_flow_style = False
    with config_path.open("w", encoding="utf-8") as f:
        yaml.dump(config.to_dict(), f)
    return config_path


def create_default_config(name: str) -> ProjectConfig:
    """Create a default project configuration.

    Args:
        name: Project name.

    Returns:
        ProjectConfig with default values.
    """
    return ProjectConfig(name=name)
