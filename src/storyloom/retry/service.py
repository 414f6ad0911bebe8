"""Retry and stop handling: roll a branch back to its state before an action.

Two restore paths exist. With a full-state backup the stored snapshot
replaces the branch's state wholesale. Without one, the persistent path
works from IDs and the position watermark: later entries are deleted,
entities created by the action are removed, and character fields and the
time tracker are put back. The persistent path holds the retry lock for its
whole duration and always releases it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from storyloom.observability import get_logger

if TYPE_CHECKING:
    from storyloom.retry.backup import RetryBackupData
    from storyloom.storage.models import ActionInputType, CharacterSnapshot, TimeTracker

log = get_logger(__name__)


@dataclass(frozen=True)
class SavedEntityIds:
    """IDs of the entities that existed before the action."""

    character_ids: frozenset[str] = field(default_factory=frozenset)
    location_ids: frozenset[str] = field(default_factory=frozenset)
    item_ids: frozenset[str] = field(default_factory=frozenset)
    story_beat_ids: frozenset[str] = field(default_factory=frozenset)
    embedded_image_ids: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def from_backup(cls, backup: RetryBackupData) -> SavedEntityIds:
        return cls(
            character_ids=frozenset(backup.character_ids),
            location_ids=frozenset(backup.location_ids),
            item_ids=frozenset(backup.item_ids),
            story_beat_ids=frozenset(backup.story_beat_ids),
            embedded_image_ids=frozenset(backup.embedded_image_ids),
        )


class RetryStoreCallbacks(Protocol):
    """Storage and tracking operations a restore needs."""

    async def restore_full_state(self, backup: RetryBackupData) -> None: ...

    async def delete_entries_from_position(self, position: int) -> None: ...

    async def delete_entities_created_after_backup(self, saved: SavedEntityIds) -> None: ...

    async def restore_character_snapshots(self, snapshots: list[CharacterSnapshot]) -> None: ...

    async def restore_time_tracker_snapshot(self, snapshot: TimeTracker | None) -> None: ...

    def lock_retry_in_progress(self) -> None: ...

    def unlock_retry_in_progress(self) -> None: ...

    def restore_activation_data(self, data: dict[str, int], position: int) -> None: ...

    def clear_activation_data(self) -> None: ...

    def clear_last_lorebook_retrieval(self) -> None: ...


class StopCleanup(Protocol):
    """Transient UI state cleared before a restore."""

    def clear_generation_error(self) -> None: ...

    def clear_suggestions(self) -> None: ...

    def clear_action_choices(self) -> None: ...


class RetryCleanup(StopCleanup, Protocol):
    def clear_image_context(self) -> None: ...


@dataclass(frozen=True)
class RestoreResult:
    """Outcome of a restore.

    On success the original action's input is handed back so the caller can
    resubmit or prefill it.
    """

    success: bool
    error: str | None = None
    restored_action_type: ActionInputType | None = None
    restored_was_raw_action_choice: bool | None = None
    restored_raw_input: str | None = None


class RetryService:
    """Restores story state from a retry backup."""

    async def restore_from_backup(
        self, backup: RetryBackupData, callbacks: RetryStoreCallbacks
    ) -> RestoreResult:
        """Restore *backup*, picking the path from ``has_full_state``.

        Never raises; failures are logged and returned.
        """
        log.info(
            "restore_started",
            story_id=backup.story_id,
            branch_id=backup.branch_id,
            has_full_state=backup.has_full_state,
            has_entity_ids=backup.has_entity_ids,
            watermark=backup.entry_count_before_action,
        )
        try:
            if backup.has_full_state:
                await self._restore_full_state(backup, callbacks)
            else:
                await self._restore_persistent_state(backup, callbacks)
        except Exception as e:
            log.error("restore_failed", story_id=backup.story_id, error=str(e))
            return RestoreResult(success=False, error=str(e) or type(e).__name__)

        return RestoreResult(
            success=True,
            restored_action_type=backup.action_type,
            restored_was_raw_action_choice=backup.was_raw_action_choice,
            restored_raw_input=backup.raw_input,
        )

    async def _restore_full_state(
        self, backup: RetryBackupData, callbacks: RetryStoreCallbacks
    ) -> None:
        callbacks.restore_activation_data(backup.activation_data, backup.story_position)
        await callbacks.restore_full_state(backup)
        log.debug("full_state_restored", entries=len(backup.entries))

    async def _restore_persistent_state(
        self, backup: RetryBackupData, callbacks: RetryStoreCallbacks
    ) -> None:
        callbacks.lock_retry_in_progress()
        try:
            callbacks.clear_activation_data()
            await callbacks.delete_entries_from_position(backup.entry_count_before_action)

            if backup.has_entity_ids:
                await callbacks.delete_entities_created_after_backup(
                    SavedEntityIds.from_backup(backup)
                )
            else:
                log.debug("entity_cleanup_skipped", reason="no ID snapshot")

            await callbacks.restore_character_snapshots(backup.character_snapshots)
            await callbacks.restore_time_tracker_snapshot(backup.time_tracker)
            log.debug("persistent_state_restored")
        finally:
            callbacks.unlock_retry_in_progress()

    async def handle_stop_generation(
        self,
        backup: RetryBackupData,
        callbacks: RetryStoreCallbacks,
        ui: StopCleanup,
    ) -> RestoreResult:
        """Undo an interrupted turn."""
        ui.clear_generation_error()
        ui.clear_suggestions()
        ui.clear_action_choices()

        # The persistent path recomputes activation from scratch
        if backup.has_full_state:
            callbacks.restore_activation_data(backup.activation_data, backup.story_position)

        callbacks.clear_last_lorebook_retrieval()
        return await self.restore_from_backup(backup, callbacks)

    async def handle_retry_last_message(
        self,
        backup: RetryBackupData,
        callbacks: RetryStoreCallbacks,
        ui: RetryCleanup,
    ) -> RestoreResult:
        """Undo the last turn so it can be generated again."""
        ui.clear_generation_error()
        ui.clear_suggestions()
        ui.clear_action_choices()
        ui.clear_image_context()

        callbacks.clear_last_lorebook_retrieval()
        return await self.restore_from_backup(backup, callbacks)
