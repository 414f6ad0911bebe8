"""Branch and checkpoint management.

A branch is an alternate timeline forked at an existing entry. It inherits
the parent's entries up to and including the fork entry, numbers its own
entries from ``fork_entry.position + 1``, and owns a private copy of the
world state made at fork time.

Checkpoints are deep, write-once snapshots of one branch. Branches may
point at a checkpoint as their origin, but a checkpoint outlives any branch
that references it.
"""

from __future__ import annotations

from collections import defaultdict
from typing import TYPE_CHECKING, Any

from storyloom.observability import get_logger
from storyloom.storage.errors import (
    BranchNotFoundError,
    CheckpointNotFoundError,
    EntityNotFoundError,
    ForkEntryMissingError,
)
from storyloom.storage.models import (
    Branch,
    Chapter,
    Character,
    Checkpoint,
    Item,
    Location,
    LorebookEntry,
    Story,
    StoryBeat,
    StoryEntry,
    new_id,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from storyloom.storage.models import EntryType
    from storyloom.storage.sqlite_store import StoryStore

log = get_logger(__name__)

PREVIEW_LENGTH = 100


class BranchManager:
    """Fork, checkpoint and delete operations over a :class:`StoryStore`."""

    def __init__(self, store: StoryStore) -> None:
        self._store = store

    # -- Entries ---------------------------------------------------------------

    def entries_for_branch(self, story_id: str, branch_id: str | None) -> list[StoryEntry]:
        """Entries visible on a branch, in position order.

        Main sees only its own entries. A branch sees its ancestors' entries
        up to its fork position followed by its own.

        Raises:
            BranchNotFoundError: If a branch in the ancestry is missing.
            ForkEntryMissingError: If a fork entry in the ancestry was deleted.
        """
        if branch_id is None:
            return self._store.entries(story_id, None)
        branch = self._store.require(Branch, branch_id)
        fork_entry = self._fork_entry(branch)
        inherited = [
            entry
            for entry in self.entries_for_branch(story_id, branch.parent_branch_id)
            if entry.position <= fork_entry.position
        ]
        return inherited + self._store.entries(story_id, branch_id)

    def append_entry(
        self,
        story_id: str,
        branch_id: str | None,
        entry_type: EntryType,
        content: str,
        **fields: Any,
    ) -> StoryEntry:
        """Append an entry at the branch's next position."""
        position = self._store.next_entry_position(story_id, branch_id)
        entry = StoryEntry(
            story_id=story_id,
            branch_id=branch_id,
            type=entry_type,
            content=content,
            position=position,
            **fields,
        )
        self._store.insert(entry)
        log.debug("entry_appended", entry_id=entry.id, branch_id=branch_id, position=position)
        return entry

    def _fork_entry(self, branch: Branch) -> StoryEntry:
        fork_entry = self._store.get(StoryEntry, branch.fork_entry_id)
        if fork_entry is None:
            raise ForkEntryMissingError(branch_id=branch.id, fork_entry_id=branch.fork_entry_id)
        return fork_entry

    # -- Branches --------------------------------------------------------------

    def fork(self, story_id: str, fork_entry_id: str, name: str) -> Branch:
        """Create a branch diverging after *fork_entry_id*.

        The parent is the branch the fork entry lives on. The parent's
        current world state is copied onto the new branch.

        Raises:
            EntityNotFoundError: If the fork entry does not exist in the story.
        """
        fork_entry = self._store.get(StoryEntry, fork_entry_id)
        if fork_entry is None or fork_entry.story_id != story_id:
            raise EntityNotFoundError("StoryEntry", fork_entry_id)
        parent_id = fork_entry.branch_id
        branch = Branch(
            story_id=story_id,
            name=name,
            parent_branch_id=parent_id,
            fork_entry_id=fork_entry_id,
        )
        with self._store.transaction("fork_branch"):
            self._store.insert(branch)
            visible = {e.id for e in self.entries_for_branch(story_id, branch.id)}
            chapters = [
                c
                for c in self._store.fetch(Chapter, story_id, branch_id=parent_id)
                if c.end_entry_id is None or c.end_entry_id in visible
            ]
            self._clone_world(
                branch.id,
                characters=self._store.fetch(Character, story_id, branch_id=parent_id),
                locations=self._store.fetch(Location, story_id, branch_id=parent_id),
                items=self._store.fetch(Item, story_id, branch_id=parent_id),
                story_beats=self._store.fetch(StoryBeat, story_id, branch_id=parent_id),
                chapters=chapters,
                lorebook_entries=self._store.fetch(LorebookEntry, story_id, branch_id=parent_id),
            )
        log.info(
            "branch_forked",
            branch_id=branch.id,
            parent_branch_id=parent_id,
            fork_position=fork_entry.position,
        )
        return branch

    def _clone_world(
        self,
        branch_id: str,
        *,
        characters: Sequence[Character],
        locations: Sequence[Location],
        items: Sequence[Item],
        story_beats: Sequence[StoryBeat],
        chapters: Sequence[Chapter],
        lorebook_entries: Sequence[LorebookEntry],
    ) -> None:
        """Copy world-state rows onto a branch under fresh IDs."""
        location_ids = {loc.id: new_id() for loc in locations}
        for loc in locations:
            self._store.insert(
                loc.model_copy(
                    deep=True,
                    update={
                        "id": location_ids[loc.id],
                        "branch_id": branch_id,
                        "connections": [location_ids.get(c, c) for c in loc.connections],
                    },
                )
            )
        for item in items:
            self._store.insert(
                item.model_copy(
                    deep=True,
                    update={
                        "id": new_id(),
                        "branch_id": branch_id,
                        "location": location_ids.get(item.location, item.location),
                    },
                )
            )
        rows: Iterable[Character | StoryBeat | Chapter | LorebookEntry] = (
            *characters,
            *story_beats,
            *chapters,
            *lorebook_entries,
        )
        for row in rows:
            clone = row.model_copy(deep=True, update={"id": new_id(), "branch_id": branch_id})
            self._store.insert(clone)

    def create_branch_from_checkpoint(self, checkpoint_id: str, name: str) -> Branch:
        """Fork at a checkpoint's last entry, seeding world state from its snapshot.

        Raises:
            CheckpointNotFoundError: If the checkpoint does not exist.
            ValueError: If the checkpoint has no entries to fork from.
        """
        checkpoint = self._store.get(Checkpoint, checkpoint_id)
        if checkpoint is None:
            raise CheckpointNotFoundError(checkpoint_id)
        if checkpoint.last_entry_id is None:
            raise ValueError(f"Checkpoint '{checkpoint_id}' has no entries to fork from")
        branch = Branch(
            story_id=checkpoint.story_id,
            name=name,
            parent_branch_id=checkpoint.branch_id,
            fork_entry_id=checkpoint.last_entry_id,
            checkpoint_id=checkpoint.id,
        )
        with self._store.transaction("branch_from_checkpoint"):
            self._fork_entry(branch)
            self._store.insert(branch)
            self._clone_world(
                branch.id,
                characters=checkpoint.characters_snapshot,
                locations=checkpoint.locations_snapshot,
                items=checkpoint.items_snapshot,
                story_beats=checkpoint.story_beats_snapshot,
                chapters=checkpoint.chapters_snapshot,
                lorebook_entries=checkpoint.lorebook_entries_snapshot or [],
            )
        log.info("branch_from_checkpoint", branch_id=branch.id, checkpoint_id=checkpoint.id)
        return branch

    def switch_branch(self, story_id: str, branch_id: str | None) -> None:
        """Make *branch_id* the story's current branch (``None`` is main).

        Raises:
            BranchNotFoundError: If the branch is missing or belongs to another story.
        """
        if branch_id is not None:
            branch = self._store.get(Branch, branch_id)
            if branch is None or branch.story_id != story_id:
                raise BranchNotFoundError(branch_id, context=f"story '{story_id}'")
        self._store.set_current_branch(story_id, branch_id)
        log.info("branch_switched", story_id=story_id, branch_id=branch_id)

    def rename_branch(self, branch_id: str, name: str) -> Branch:
        branch = self._store.require(Branch, branch_id)
        updated = branch.model_copy(update={"name": name})
        self._store.save(updated)
        return updated

    def delete_branch(self, branch_id: str) -> dict[str, int]:
        """Delete a branch and every row it owns.

        Checkpoints, including the one the branch was created from, and
        other branches are left intact. If the branch was current, the
        story falls back to the branch's parent.

        Returns:
            Deleted row counts by table.

        Raises:
            BranchNotFoundError: If the branch does not exist.
        """
        branch = self._store.require(Branch, branch_id)
        with self._store.transaction("delete_branch"):
            counts = self._store.delete_branch_rows(branch_id)
            self._store.delete(Branch, branch_id)
            story = self._store.get(Story, branch.story_id)
            if story is not None and story.current_branch_id == branch_id:
                self._store.set_current_branch(story.id, branch.parent_branch_id)
        log.info("branch_deleted", branch_id=branch_id, **counts)
        return counts

    def branches(self, story_id: str) -> list[Branch]:
        return self._store.fetch(Branch, story_id, all_branches=True)

    def branch_tree(self, story_id: str) -> dict[str | None, list[Branch]]:
        """Children of each branch keyed by parent ID (``None`` is main)."""
        tree: dict[str | None, list[Branch]] = defaultdict(list)
        for branch in self.branches(story_id):
            tree[branch.parent_branch_id].append(branch)
        return dict(tree)

    def insert_branches(self, branches: Iterable[Branch]) -> list[str]:
        """Insert branches that may reference parents later in the sequence.

        A branch whose parent is neither in *branches* nor already stored
        becomes a root branch (``parent_branch_id=None``); its own children
        stay attached to it. The rest are inserted pass after pass, each
        once its parent exists. Branches still waiting when a pass makes no
        progress form a parent cycle and are inserted as roots too.

        Returns:
            IDs of branches that were re-parented onto main.
        """
        pending = list(branches)
        batch_ids = {b.id for b in pending}
        orphaned: list[str] = []
        missing: set[str] = set()
        for i, branch in enumerate(pending):
            parent = branch.parent_branch_id
            if parent is None or parent in batch_ids or self._store.get(Branch, parent):
                continue
            missing.add(parent)
            orphaned.append(branch.id)
            pending[i] = branch.model_copy(update={"parent_branch_id": None})

        inserted: set[str] = set()
        progress = True
        while pending and progress:
            progress = False
            remaining: list[Branch] = []
            for branch in pending:
                parent = branch.parent_branch_id
                if parent is None or parent in inserted or parent not in batch_ids:
                    self._store.insert(branch)
                    inserted.add(branch.id)
                    progress = True
                else:
                    remaining.append(branch)
            pending = remaining

        for branch in pending:
            orphaned.append(branch.id)
            self._store.insert(branch.model_copy(update={"parent_branch_id": None}))
        if orphaned:
            log.warning(
                "branches_reparented_to_main",
                branch_ids=orphaned,
                missing_parents=sorted(missing),
                cyclic=len(pending),
            )
        return orphaned

    # -- Checkpoints -----------------------------------------------------------

    def create_checkpoint(self, story_id: str, branch_id: str | None, name: str) -> Checkpoint:
        """Snapshot a branch's visible entries and world state.

        Raises:
            ValueError: If the branch has no entries.
        """
        entries = self.entries_for_branch(story_id, branch_id)
        if not entries:
            raise ValueError("No entries to checkpoint")
        story = self._store.require(Story, story_id)
        last_entry = entries[-1]
        checkpoint = Checkpoint(
            story_id=story_id,
            name=name,
            branch_id=branch_id,
            last_entry_id=last_entry.id,
            last_entry_preview=last_entry.content[:PREVIEW_LENGTH],
            entry_count=len(entries),
            entries_snapshot=entries,
            characters_snapshot=self._store.fetch(Character, story_id, branch_id=branch_id),
            locations_snapshot=self._store.fetch(Location, story_id, branch_id=branch_id),
            items_snapshot=self._store.fetch(Item, story_id, branch_id=branch_id),
            story_beats_snapshot=self._store.fetch(StoryBeat, story_id, branch_id=branch_id),
            chapters_snapshot=self._store.fetch(Chapter, story_id, branch_id=branch_id),
            time_tracker_snapshot=story.time_tracker,
            lorebook_entries_snapshot=self._store.fetch(
                LorebookEntry, story_id, branch_id=branch_id
            ),
        ).model_copy(deep=True)
        self._store.insert(checkpoint)
        log.info("checkpoint_created", checkpoint_id=checkpoint.id, entry_count=len(entries))
        return checkpoint

    def checkpoints(self, story_id: str) -> list[Checkpoint]:
        return self._store.fetch(Checkpoint, story_id, all_branches=True)

    def delete_checkpoint(self, checkpoint_id: str) -> None:
        if not self._store.delete(Checkpoint, checkpoint_id):
            raise CheckpointNotFoundError(checkpoint_id)
        log.info("checkpoint_deleted", checkpoint_id=checkpoint_id)
