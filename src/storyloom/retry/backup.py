"""Retry backup data captured before a user action.

A backup comes in two shapes. A full-state backup holds copies of every
entity and is only usable within the process that made it. A persistent
backup holds just the IDs that existed, field snapshots for characters and
the time tracker; it is small enough to store with the story and survives
restarts. Both carry ``entry_count_before_action``, the position watermark
the branch is rolled back to.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from storyloom.storage.models import (
    ActionInputType,
    Character,
    CharacterSnapshot,
    EmbeddedImage,
    Item,
    Location,
    StoryBeat,
    StoryEntry,
    TimeTracker,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from storyloom.pipeline.context import GenerationContext


class RetryBackupData(BaseModel):
    story_id: str
    branch_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # Full state, only meaningful when has_full_state is set
    entries: list[StoryEntry] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    items: list[Item] = Field(default_factory=list)
    story_beats: list[StoryBeat] = Field(default_factory=list)
    embedded_images: list[EmbeddedImage] = Field(default_factory=list)

    user_action_content: str = ""
    raw_input: str = ""
    action_type: ActionInputType = "do"
    was_raw_action_choice: bool = False

    activation_data: dict[str, int] = Field(default_factory=dict)
    story_position: int = 0
    entry_count_before_action: int

    has_full_state: bool = False
    has_entity_ids: bool = False
    character_ids: list[str] = Field(default_factory=list)
    location_ids: list[str] = Field(default_factory=list)
    item_ids: list[str] = Field(default_factory=list)
    story_beat_ids: list[str] = Field(default_factory=list)
    embedded_image_ids: list[str] = Field(default_factory=list)
    character_snapshots: list[CharacterSnapshot] = Field(default_factory=list)
    time_tracker: TimeTracker | None = None

    def to_persistent(self) -> RetryBackupData:
        """Drop the in-memory entity copies, keeping IDs and snapshots."""
        return self.model_copy(
            update={
                "entries": [],
                "characters": [],
                "locations": [],
                "items": [],
                "story_beats": [],
                "embedded_images": [],
                "has_full_state": False,
            },
            deep=True,
        )


def entry_count_before_action(entries: Sequence[StoryEntry], user_entry_id: str) -> int:
    """Position watermark for a turn.

    The user's action entry is the first thing the turn added, so its
    position is the watermark. Without it, the next free position is used.
    """
    for entry in entries:
        if entry.id == user_entry_id:
            return entry.position
    return max((e.position for e in entries), default=-1) + 1


def build_retry_backup(
    context: GenerationContext,
    *,
    raw_input: str,
    action_type: ActionInputType,
    was_raw_action_choice: bool,
    activation_data: dict[str, int] | None = None,
    full_state: bool = True,
) -> RetryBackupData:
    """Capture the state a retry rolls back to.

    The full-state copy excludes entries at or past the watermark, so
    restoring it also removes the user's action entry.
    """
    world = context.world_state
    watermark = entry_count_before_action(context.visible_entries, context.user_action.entry_id)
    backup = RetryBackupData(
        story_id=context.story.id,
        branch_id=context.branch_id,
        entries=[e for e in context.visible_entries if e.position < watermark],
        characters=list(world.characters),
        locations=list(world.locations),
        items=list(world.items),
        story_beats=list(world.story_beats),
        embedded_images=list(context.embedded_images),
        user_action_content=context.user_action.content,
        raw_input=raw_input,
        action_type=action_type,
        was_raw_action_choice=was_raw_action_choice,
        activation_data=dict(activation_data or {}),
        story_position=watermark,
        entry_count_before_action=watermark,
        has_full_state=True,
        has_entity_ids=True,
        character_ids=[c.id for c in world.characters],
        location_ids=[loc.id for loc in world.locations],
        item_ids=[i.id for i in world.items],
        story_beat_ids=[b.id for b in world.story_beats],
        embedded_image_ids=[img.id for img in context.embedded_images],
        character_snapshots=[CharacterSnapshot.of(c) for c in world.characters],
        time_tracker=context.story.time_tracker,
    ).model_copy(deep=True)
    return backup if full_state else backup.to_persistent()
