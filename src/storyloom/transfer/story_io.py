"""Story export and import.

An export is a single JSON document holding a story with all of its
branches, checkpoints, entries and world state. Importing creates a new
story under fresh IDs; see :class:`~storyloom.transfer.remap.IdRemap`.

Import is best-effort. Structurally invalid input is reported through
:class:`ImportResult` rather than raised, dangling references keep their
original value, and images whose entry is missing are skipped with a
warning.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from storyloom.observability import get_logger
from storyloom.storage.branches import BranchManager
from storyloom.storage.models import (
    Branch,
    Chapter,
    Character,
    Checkpoint,
    EmbeddedImage,
    Item,
    Location,
    LorebookEntry,
    Story,
    StoryBeat,
    StoryEntry,
)
from storyloom.transfer.remap import IdRemap

if TYPE_CHECKING:
    from pathlib import Path

    from storyloom.storage.sqlite_store import StoryStore

log = get_logger(__name__)

EXPORT_VERSION = "1.7.0"
IMPORTED_SUFFIX = " (Imported)"

# Format version that introduced each optional section
FEATURE_VERSIONS: tuple[tuple[str, str], ...] = (
    ("1.1.0", "lorebook entries"),
    ("1.3.0", "time tracking"),
    ("1.4.0", "embedded images"),
    ("1.5.0", "character portraits"),
    ("1.6.0", "branches and checkpoints"),
    ("1.7.0", "chapters"),
)

REQUIRED_FIELDS = ("version", "story", "entries")


class StoryExport(BaseModel):
    """Serialized form of a story."""

    version: str = EXPORT_VERSION
    exported_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    story: Story
    entries: list[StoryEntry]
    characters: list[Character] = Field(default_factory=list)
    locations: list[Location] = Field(default_factory=list)
    items: list[Item] = Field(default_factory=list)
    story_beats: list[StoryBeat] = Field(default_factory=list)
    lorebook_entries: list[LorebookEntry] = Field(default_factory=list)
    embedded_images: list[EmbeddedImage] = Field(default_factory=list)
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    branches: list[Branch] = Field(default_factory=list)
    chapters: list[Chapter] = Field(default_factory=list)


@dataclass
class ImportResult:
    success: bool
    story_id: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


def compare_versions(a: str, b: str) -> int:
    """Negative, zero or positive as *a* is older than, equal to or newer than *b*."""
    parts_a = [int(p) for p in a.split(".")]
    parts_b = [int(p) for p in b.split(".")]
    width = max(len(parts_a), len(parts_b))
    parts_a += [0] * (width - len(parts_a))
    parts_b += [0] * (width - len(parts_b))
    for x, y in zip(parts_a, parts_b, strict=True):
        if x != y:
            return x - y
    return 0


def version_warnings(version: str) -> list[str]:
    """Messages for features an older export cannot contain."""
    try:
        return [
            f"File from v{version} predates {feature} (v{since}); they will not be restored."
            for since, feature in FEATURE_VERSIONS
            if compare_versions(version, since) < 0
        ]
    except ValueError:
        return [f"Unrecognised export version '{version}'"]


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def export_story(store: StoryStore, story_id: str) -> dict[str, Any]:
    """Collect a story and everything it owns into a JSON-ready dict.

    Raises:
        EntityNotFoundError: If the story does not exist.
    """
    story = store.require(Story, story_id)
    export = StoryExport(
        story=story,
        entries=store.fetch(StoryEntry, story_id, all_branches=True),
        characters=store.fetch(Character, story_id, all_branches=True),
        locations=store.fetch(Location, story_id, all_branches=True),
        items=store.fetch(Item, story_id, all_branches=True),
        story_beats=store.fetch(StoryBeat, story_id, all_branches=True),
        lorebook_entries=store.fetch(LorebookEntry, story_id, all_branches=True),
        embedded_images=store.fetch(EmbeddedImage, story_id),
        checkpoints=store.fetch(Checkpoint, story_id, all_branches=True),
        branches=store.fetch(Branch, story_id),
        chapters=store.fetch(Chapter, story_id, all_branches=True),
    )
    log.info(
        "story_exported",
        story_id=story_id,
        entries=len(export.entries),
        branches=len(export.branches),
    )
    return export.model_dump(mode="json")


def export_story_to_file(store: StoryStore, story_id: str, path: Path) -> Path:
    data = export_story(store, story_id)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def _parse(content: str) -> StoryExport | str:
    """Validated export, or an error message for the caller."""
    try:
        raw = json.loads(content)
    except json.JSONDecodeError:
        return "Invalid file: not valid JSON"
    if (
        not isinstance(raw, dict)
        or not raw.get("version")
        or not raw.get("story")
        or not isinstance(raw.get("entries"), list)
    ):
        return (
            "Invalid file format: missing required fields "
            f"({', '.join(REQUIRED_FIELDS)})"
        )
    if not raw["entries"]:
        return "Invalid story file: the file contains no story entries"
    try:
        return StoryExport.model_validate(raw)
    except ValidationError as e:
        return f"Invalid story file: {e.error_count()} invalid field(s); first: {_first_error(e)}"


def _first_error(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"])
    return f"{location}: {first['msg']}"


def import_story(
    store: StoryStore, content: str, *, skip_imported_suffix: bool = False
) -> ImportResult:
    """Import an exported story as a new story.

    Args:
        store: Destination store.
        content: JSON text produced by :func:`export_story`.
        skip_imported_suffix: Keep the title as is instead of marking it
            as imported.

    Returns:
        The outcome. Never raises for bad input.
    """
    parsed = _parse(content)
    if isinstance(parsed, str):
        log.warning("import_rejected", reason=parsed)
        return ImportResult(success=False, error=parsed)

    warnings = version_warnings(parsed.version)
    for message in warnings:
        log.warning("import_version_warning", version=parsed.version, detail=message)

    remap = IdRemap.build(parsed)
    try:
        with store.transaction("import_story"):
            story_id = _insert_story(store, parsed, remap, skip_imported_suffix, warnings)
    except Exception as e:
        log.error("import_failed", error=str(e))
        return ImportResult(success=False, error=str(e), warnings=warnings)

    log.info("story_imported", story_id=story_id, ids_remapped=len(remap))
    return ImportResult(success=True, story_id=story_id, warnings=warnings)


def import_story_from_file(
    store: StoryStore, path: Path, *, skip_imported_suffix: bool = False
) -> ImportResult:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        return ImportResult(success=False, error=f"Cannot read {path}: {e}")
    return import_story(store, content, skip_imported_suffix=skip_imported_suffix)


def _insert_story(
    store: StoryStore,
    data: StoryExport,
    remap: IdRemap,
    skip_imported_suffix: bool,
    warnings: list[str],
) -> str:
    story_id = remap.get(data.story.id)
    title = data.story.title if skip_imported_suffix else data.story.title + IMPORTED_SUFFIX
    store.insert(
        data.story.model_copy(
            deep=True, update={"id": story_id, "title": title, "current_branch_id": None}
        )
    )

    # Checkpoint references are attached once the checkpoints exist
    branches = [
        b.model_copy(
            update={
                "id": remap.get(b.id),
                "story_id": story_id,
                "parent_branch_id": remap.optional(b.parent_branch_id),
                "fork_entry_id": remap.get(b.fork_entry_id),
                "checkpoint_id": None,
            }
        )
        for b in data.branches
    ]
    reparented = BranchManager(store).insert_branches(branches)
    if reparented:
        warnings.append(f"{len(reparented)} branch(es) with missing parents attached to main")

    for entry in data.entries:
        store.insert(_entry(entry, remap, story_id))
    for character in data.characters:
        store.insert(_character(character, remap, story_id))
    for location in data.locations:
        store.insert(_location(location, remap, story_id))
    for item in data.items:
        store.insert(_item(item, remap, story_id))
    for beat in data.story_beats:
        store.insert(_story_beat(beat, remap, story_id))
    for lore in data.lorebook_entries:
        store.insert(_lorebook_entry(lore, remap, story_id))
    for chapter in data.chapters:
        store.insert(_chapter(chapter, remap, story_id))
    for checkpoint in data.checkpoints:
        store.insert(_checkpoint(checkpoint, remap, story_id))

    for branch in data.branches:
        if branch.checkpoint_id is not None and branch.checkpoint_id in remap:
            imported = store.require(Branch, remap.get(branch.id))
            checkpoint_id = remap.get(branch.checkpoint_id)
            store.save(imported.model_copy(update={"checkpoint_id": checkpoint_id}))

    current = data.story.current_branch_id
    if current is not None and current in remap:
        store.set_current_branch(story_id, remap.get(current))

    entry_ids = {e.id for e in data.entries}
    for image in data.embedded_images:
        if image.entry_id not in entry_ids:
            message = f"Skipped image {image.id}: entry {image.entry_id} not found"
            log.warning("import_image_skipped", image_id=image.id, entry_id=image.entry_id)
            warnings.append(message)
            continue
        store.insert(
            image.model_copy(
                update={
                    "id": remap.get(image.id),
                    "story_id": story_id,
                    "entry_id": remap.get(image.entry_id),
                }
            )
        )
    return story_id


def _entry(entry: StoryEntry, remap: IdRemap, story_id: str) -> StoryEntry:
    return entry.model_copy(
        deep=True,
        update={
            "id": remap.get(entry.id),
            "story_id": story_id,
            "parent_id": remap.optional(entry.parent_id),
            "branch_id": remap.optional(entry.branch_id),
        },
    )


def _character(character: Character, remap: IdRemap, story_id: str) -> Character:
    return character.model_copy(
        deep=True,
        update={
            "id": remap.get(character.id),
            "story_id": story_id,
            "branch_id": remap.optional(character.branch_id),
        },
    )


def _location(location: Location, remap: IdRemap, story_id: str) -> Location:
    return location.model_copy(
        deep=True,
        update={
            "id": remap.get(location.id),
            "story_id": story_id,
            "branch_id": remap.optional(location.branch_id),
            "connections": [remap.get(c) for c in location.connections],
        },
    )


def _item(item: Item, remap: IdRemap, story_id: str) -> Item:
    return item.model_copy(
        update={
            "id": remap.get(item.id),
            "story_id": story_id,
            "branch_id": remap.optional(item.branch_id),
            "location": remap.item_location(item.location),
        },
    )


def _story_beat(beat: StoryBeat, remap: IdRemap, story_id: str) -> StoryBeat:
    return beat.model_copy(
        update={
            "id": remap.get(beat.id),
            "story_id": story_id,
            "branch_id": remap.optional(beat.branch_id),
        },
    )


def _lorebook_entry(entry: LorebookEntry, remap: IdRemap, story_id: str) -> LorebookEntry:
    return entry.model_copy(
        deep=True,
        update={
            "id": remap.get(entry.id),
            "story_id": story_id,
            "branch_id": remap.optional(entry.branch_id),
            "first_mentioned": remap.optional(entry.first_mentioned),
            "last_mentioned": remap.optional(entry.last_mentioned),
        },
    )


def _chapter(chapter: Chapter, remap: IdRemap, story_id: str) -> Chapter:
    return chapter.model_copy(
        deep=True,
        update={
            "id": remap.get(chapter.id),
            "story_id": story_id,
            "branch_id": remap.optional(chapter.branch_id),
            "start_entry_id": remap.optional(chapter.start_entry_id),
            "end_entry_id": remap.optional(chapter.end_entry_id),
        },
    )


def _checkpoint(checkpoint: Checkpoint, remap: IdRemap, story_id: str) -> Checkpoint:
    lore = checkpoint.lorebook_entries_snapshot
    return checkpoint.model_copy(
        update={
            "id": remap.get(checkpoint.id),
            "story_id": story_id,
            "branch_id": remap.optional(checkpoint.branch_id),
            "last_entry_id": remap.optional(checkpoint.last_entry_id),
            "entries_snapshot": [
                _entry(e, remap, story_id) for e in checkpoint.entries_snapshot
            ],
            "characters_snapshot": [
                _character(c, remap, story_id) for c in checkpoint.characters_snapshot
            ],
            "locations_snapshot": [
                _location(loc, remap, story_id) for loc in checkpoint.locations_snapshot
            ],
            "items_snapshot": [_item(i, remap, story_id) for i in checkpoint.items_snapshot],
            "story_beats_snapshot": [
                _story_beat(b, remap, story_id) for b in checkpoint.story_beats_snapshot
            ],
            "chapters_snapshot": [
                _chapter(c, remap, story_id) for c in checkpoint.chapters_snapshot
            ],
            "lorebook_entries_snapshot": (
                None if lore is None else [_lorebook_entry(e, remap, story_id) for e in lore]
            ),
        },
    )
