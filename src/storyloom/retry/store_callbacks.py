"""Retry callbacks backed by a :class:`StoryStore`."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from storyloom.observability import get_logger
from storyloom.retry.backup import RetryBackupData
from storyloom.storage.errors import StoryStoreError
from storyloom.storage.models import (
    Character,
    EmbeddedImage,
    Item,
    Location,
    Story,
    StoryBeat,
    StoryEntry,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pydantic import BaseModel

    from storyloom.retry.service import SavedEntityIds
    from storyloom.storage.models import CharacterSnapshot, TimeTracker
    from storyloom.storage.sqlite_store import StoryStore

log = get_logger(__name__)


@dataclass
class RetryInProgressError(StoryStoreError):
    """Raised when a restore starts while another holds the retry lock."""

    story_id: str

    def __post_init__(self) -> None:
        super().__init__(f"A retry is already in progress for story '{self.story_id}'")


@dataclass
class RetryLock:
    """The "retry in progress" flag guarding persistent restores."""

    story_id: str
    locked: bool = False

    def acquire(self) -> None:
        if self.locked:
            raise RetryInProgressError(self.story_id)
        self.locked = True

    def release(self) -> None:
        self.locked = False

    @classmethod
    def for_story(cls, story_id: str) -> RetryLock:
        """The process-wide lock for *story_id*, shared by every caller."""
        lock = _STORY_LOCKS.get(story_id)
        if lock is None:
            lock = _STORY_LOCKS[story_id] = cls(story_id)
        return lock


_STORY_LOCKS: dict[str, RetryLock] = {}


@dataclass
class ActivationTracker:
    """Lorebook activation counts keyed by entry ID, plus debug state."""

    data: dict[str, int] = field(default_factory=dict)
    position: int = 0
    last_lorebook_retrieval: Any = None

    def restore(self, data: dict[str, int], position: int) -> None:
        self.data = dict(data)
        self.position = position

    def clear(self) -> None:
        self.data = {}
        self.position = 0


def save_retry_backup(store: StoryStore, backup: RetryBackupData) -> None:
    """Persist the restart-safe part of *backup* with its story."""
    store.set_retry_state(backup.story_id, backup.to_persistent().model_dump(mode="json"))


def load_retry_backup(store: StoryStore, story_id: str) -> RetryBackupData | None:
    data = store.get_retry_state(story_id)
    if data is None:
        return None
    return RetryBackupData.model_validate(data)


class StoreRetryCallbacks:
    """Implements :class:`~storyloom.retry.service.RetryStoreCallbacks`.

    Bound to one story and branch. Only rows owned by the branch are
    touched; entries inherited from ancestor branches are left alone.
    Without an explicit *lock*, callbacks for the same story share one.
    """

    def __init__(
        self,
        store: StoryStore,
        story_id: str,
        branch_id: str | None,
        *,
        lock: RetryLock | None = None,
        activation: ActivationTracker | None = None,
    ) -> None:
        self._store = store
        self.story_id = story_id
        self.branch_id = branch_id
        self.lock = lock or RetryLock.for_story(story_id)
        self.activation = activation or ActivationTracker()

    async def restore_full_state(self, backup: RetryBackupData) -> None:
        snapshot: list[tuple[type[BaseModel], Sequence[Any]]] = [
            (StoryEntry, backup.entries),
            (Character, backup.characters),
            (Location, backup.locations),
            (Item, backup.items),
            (StoryBeat, backup.story_beats),
        ]
        with self._store.transaction("retry_full_restore"):
            for model, rows in snapshot:
                own = [row for row in rows if row.branch_id == self.branch_id]
                self._store.delete_not_in(
                    model, self.story_id, self.branch_id, [row.id for row in own]
                )
                for row in own:
                    self._store.save(row)
            self._store.delete_not_in(
                EmbeddedImage,
                self.story_id,
                self.branch_id,
                [img.id for img in backup.embedded_images],
            )
            for image in backup.embedded_images:
                self._store.save(image)
            self._set_time_tracker(backup.time_tracker)

    async def delete_entries_from_position(self, position: int) -> None:
        deleted = self._store.delete_entries_from_position(
            self.story_id, self.branch_id, position
        )
        log.debug("entries_deleted", from_position=position, count=deleted)

    async def delete_entities_created_after_backup(self, saved: SavedEntityIds) -> None:
        kept: list[tuple[type[BaseModel], frozenset[str]]] = [
            (Character, saved.character_ids),
            (Location, saved.location_ids),
            (Item, saved.item_ids),
            (StoryBeat, saved.story_beat_ids),
            (EmbeddedImage, saved.embedded_image_ids),
        ]
        with self._store.transaction("retry_delete_new"):
            for model, ids in kept:
                count = self._store.delete_not_in(model, self.story_id, self.branch_id, ids)
                if count:
                    log.debug("entities_deleted", kind=model.__name__, count=count)

    async def restore_character_snapshots(self, snapshots: list[CharacterSnapshot]) -> None:
        for snap in snapshots:
            character = self._store.get(Character, snap.id)
            if character is None:
                continue
            self._store.save(character.model_copy(update=snap.model_dump(exclude={"id"})))

    async def restore_time_tracker_snapshot(self, snapshot: TimeTracker | None) -> None:
        self._set_time_tracker(snapshot)

    def _set_time_tracker(self, tracker: TimeTracker | None) -> None:
        story = self._store.require(Story, self.story_id)
        self._store.save(story.model_copy(update={"time_tracker": tracker}))

    def lock_retry_in_progress(self) -> None:
        self.lock.acquire()

    def unlock_retry_in_progress(self) -> None:
        self.lock.release()

    def restore_activation_data(self, data: dict[str, int], position: int) -> None:
        self.activation.restore(data, position)

    def clear_activation_data(self) -> None:
        self.activation.clear()

    def clear_last_lorebook_retrieval(self) -> None:
        self.activation.last_lorebook_retrieval = None
