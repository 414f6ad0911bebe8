"""Inputs shared by every phase of a generation turn."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from storyloom.pipeline.abort import AbortSignal

if TYPE_CHECKING:
    from storyloom.storage.models import (
        Chapter,
        Character,
        EmbeddedImage,
        Item,
        Location,
        LorebookEntry,
        Story,
        StoryBeat,
        StoryEntry,
    )


@dataclass
class MemoryConfig:
    """Chapter memory options for a story."""

    enable_retrieval: bool = True
    max_chapters_per_retrieval: int = 3


@dataclass
class WorldState:
    """World state of the branch being played."""

    characters: list[Character] = field(default_factory=list)
    locations: list[Location] = field(default_factory=list)
    items: list[Item] = field(default_factory=list)
    story_beats: list[StoryBeat] = field(default_factory=list)
    chapters: list[Chapter] = field(default_factory=list)
    lorebook_entries: list[LorebookEntry] = field(default_factory=list)
    memory_config: MemoryConfig = field(default_factory=MemoryConfig)

    @property
    def current_location(self) -> Location | None:
        return next((loc for loc in self.locations if loc.current), None)


@dataclass
class UserAction:
    """The player's input for this turn, already stored as an entry."""

    entry_id: str
    content: str
    raw_input: str


@dataclass
class GenerationContext:
    """Everything a turn reads. Phases never mutate it."""

    story: Story
    visible_entries: list[StoryEntry]
    world_state: WorldState
    user_action: UserAction
    embedded_images: list[EmbeddedImage] = field(default_factory=list)
    narration_entry_id: str | None = None
    abort_signal: AbortSignal = field(default_factory=AbortSignal)

    @property
    def branch_id(self) -> str | None:
        return self.story.current_branch_id


@dataclass(frozen=True)
class RetrievalResult:
    """Context gathered before narrative generation."""

    chapter_context: str | None = None
    lorebook_context: str | None = None
    timeline_fill: Any = None
    combined_context: str | None = None
