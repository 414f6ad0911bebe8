"""Pydantic models for persisted story state.

Every world-state entity carries a ``branch_id``. ``None`` is the implicit
main branch; entities are partitioned by exact ``branch_id`` match, so each
branch owns a full copy of the world state made when it was forked.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

EntryType = Literal["user_action", "narration", "system"]
StoryMode = Literal["adventure", "creative-writing"]
ActionInputType = Literal["do", "say", "think", "story", "free"]

# Item.location value for items carried by the protagonist
INVENTORY = "inventory"


def new_id() -> str:
    """Generate a fresh entity identifier."""
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(UTC)


class TimeTracker(BaseModel):
    """In-story elapsed time."""

    years: int = 0
    days: int = 0
    hours: int = 0
    minutes: int = 0


class StorySettings(BaseModel):
    """Per-story narration settings."""

    pov: Literal["first", "second", "third"] = "second"
    tense: Literal["past", "present"] = "present"
    visual_prose_mode: bool = False


class Story(BaseModel):
    """A story session and its branch pointer."""

    id: str = Field(default_factory=new_id)
    title: str
    description: str | None = None
    genre: str | None = None
    mode: StoryMode = "adventure"
    settings: StorySettings = Field(default_factory=StorySettings)
    current_branch_id: str | None = None
    time_tracker: TimeTracker | None = None
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)


class StoryEntry(BaseModel):
    """One turn of story text.

    ``position`` is branch-relative: unique and increasing within
    ``(story_id, branch_id)``.
    """

    id: str = Field(default_factory=new_id)
    story_id: str
    type: EntryType
    content: str
    parent_id: str | None = None
    position: int
    branch_id: str | None = None
    metadata: dict[str, Any] | None = None
    reasoning: str | None = None
    translated_content: str | None = None
    translation_language: str | None = None
    original_input: str | None = None
    created_at: datetime = Field(default_factory=_now)


class Character(BaseModel):
    id: str = Field(default_factory=new_id)
    story_id: str
    name: str
    description: str | None = None
    relationship: str | None = None
    traits: list[str] = Field(default_factory=list)
    visual_descriptors: list[str] = Field(default_factory=list)
    status: Literal["active", "inactive", "deceased"] = "active"
    portrait: str | None = None
    branch_id: str | None = None


class Location(BaseModel):
    id: str = Field(default_factory=new_id)
    story_id: str
    name: str
    description: str | None = None
    visited: bool = False
    current: bool = False
    connections: list[str] = Field(default_factory=list, description="Connected location IDs")
    branch_id: str | None = None


class Item(BaseModel):
    id: str = Field(default_factory=new_id)
    story_id: str
    name: str
    description: str | None = None
    quantity: int = Field(default=1, ge=0)
    equipped: bool = False
    location: str = Field(
        default=INVENTORY, description="Location ID, or 'inventory' when carried"
    )
    branch_id: str | None = None


class StoryBeat(BaseModel):
    id: str = Field(default_factory=new_id)
    story_id: str
    title: str
    description: str | None = None
    type: Literal["milestone", "quest", "revelation", "event", "plot_point"] = "quest"
    status: Literal["pending", "active", "completed", "failed"] = "active"
    branch_id: str | None = None


class Chapter(BaseModel):
    """Summarized span of entries used by memory retrieval."""

    id: str = Field(default_factory=new_id)
    story_id: str
    number: int
    title: str | None = None
    summary: str = ""
    start_entry_id: str | None = None
    end_entry_id: str | None = None
    entry_count: int = 0
    keywords: list[str] = Field(default_factory=list)
    branch_id: str | None = None


class LorebookEntry(BaseModel):
    """Lore record injected into prompts by keyword."""

    id: str = Field(default_factory=new_id)
    story_id: str
    name: str
    type: Literal["character", "location", "item", "faction", "concept", "event"] = "concept"
    description: str = ""
    keywords: list[str] = Field(default_factory=list)
    first_mentioned: str | None = None
    last_mentioned: str | None = None
    mention_count: int = 0
    branch_id: str | None = None


class EmbeddedImage(BaseModel):
    """Generated image attached to a story entry."""

    id: str = Field(default_factory=new_id)
    story_id: str
    entry_id: str
    prompt: str = ""
    status: Literal["pending", "generating", "complete", "failed"] = "pending"
    image_data: str | None = None
    created_at: datetime = Field(default_factory=_now)


class Branch(BaseModel):
    """Alternate timeline forked from an existing entry."""

    id: str = Field(default_factory=new_id)
    story_id: str
    name: str
    parent_branch_id: str | None = None
    fork_entry_id: str
    checkpoint_id: str | None = None
    created_at: datetime = Field(default_factory=_now)


class Checkpoint(BaseModel):
    """Immutable deep snapshot of a branch's story and world state."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    story_id: str
    name: str
    branch_id: str | None = None
    last_entry_id: str | None = None
    last_entry_preview: str | None = None
    entry_count: int = 0
    entries_snapshot: list[StoryEntry] = Field(default_factory=list)
    characters_snapshot: list[Character] = Field(default_factory=list)
    locations_snapshot: list[Location] = Field(default_factory=list)
    items_snapshot: list[Item] = Field(default_factory=list)
    story_beats_snapshot: list[StoryBeat] = Field(default_factory=list)
    chapters_snapshot: list[Chapter] = Field(default_factory=list)
    time_tracker_snapshot: TimeTracker | None = None
    lorebook_entries_snapshot: list[LorebookEntry] | None = None
    created_at: datetime = Field(default_factory=_now)


class CharacterSnapshot(BaseModel):
    """Mutable character fields captured before an action."""

    id: str
    traits: list[str] = Field(default_factory=list)
    visual_descriptors: list[str] = Field(default_factory=list)
    description: str | None = None
    relationship: str | None = None
    status: Literal["active", "inactive", "deceased"] = "active"

    @classmethod
    def of(cls, character: Character) -> CharacterSnapshot:
        return cls(
            id=character.id,
            traits=list(character.traits),
            visual_descriptors=list(character.visual_descriptors),
            description=character.description,
            relationship=character.relationship,
            status=character.status,
        )
