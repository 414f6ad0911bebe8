"""Persistent story state: models, SQLite store, branches and checkpoints."""

from storyloom.storage.branches import BranchManager
from storyloom.storage.errors import (
    BranchNotFoundError,
    CheckpointNotFoundError,
    EntityNotFoundError,
    ForkEntryMissingError,
    StoryStoreError,
)
from storyloom.storage.models import (
    INVENTORY,
    Branch,
    Chapter,
    Character,
    CharacterSnapshot,
    Checkpoint,
    EmbeddedImage,
    Item,
    Location,
    LorebookEntry,
    Story,
    StoryBeat,
    StoryEntry,
    StorySettings,
    TimeTracker,
)
from storyloom.storage.sqlite_store import StoryStore

__all__ = [
    "INVENTORY",
    "Branch",
    "BranchManager",
    "BranchNotFoundError",
    "Chapter",
    "Character",
    "CharacterSnapshot",
    "Checkpoint",
    "CheckpointNotFoundError",
    "EmbeddedImage",
    "EntityNotFoundError",
    "ForkEntryMissingError",
    "Item",
    "Location",
    "LorebookEntry",
    "Story",
    "StoryBeat",
    "StoryEntry",
    "StorySettings",
    "StoryStore",
    "StoryStoreError",
    "TimeTracker",
]
