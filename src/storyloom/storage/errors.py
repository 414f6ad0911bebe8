"""Story store integrity error types.

These errors are raised when a storage operation would violate referential
integrity between stories, branches, entries and checkpoints. They are
hard failures: computing an entry position from a dangling fork reference
would silently produce colliding positions, so the store refuses instead.
"""

from __future__ import annotations

from dataclasses import dataclass


class StoryStoreError(Exception):
    """Base class for story store integrity violations."""


@dataclass
class BranchNotFoundError(StoryStoreError):
    """Raised when a branch ID does not exist.

    Attributes:
        branch_id: The branch that was referenced.
        context: Description of where the reference occurred.
    """

    branch_id: str
    context: str = ""

    def __post_init__(self) -> None:
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = f"Branch '{self.branch_id}' not found"
        if self.context:
            msg += f" ({self.context})"
        return msg


@dataclass
class ForkEntryMissingError(StoryStoreError):
    """Raised when a branch's fork entry no longer exists.

    This is a corrupted branch reference. Positions on the branch are
    anchored to the fork entry, so no position can be computed.

    Attributes:
        branch_id: The branch whose reference is broken.
        fork_entry_id: The missing entry.
    """

    branch_id: str
    fork_entry_id: str

    def __post_init__(self) -> None:
        super().__init__(
            f"Branch fork entry not found: branch '{self.branch_id}' "
            f"references missing entry '{self.fork_entry_id}'"
        )


@dataclass
class EntityNotFoundError(StoryStoreError):
    """Raised when a referenced story, entry or world-state row is missing.

    Attributes:
        kind: Model name of the entity (e.g. ``"StoryEntry"``).
        entity_id: The ID that was referenced.
    """

    kind: str
    entity_id: str

    def __post_init__(self) -> None:
        super().__init__(f"{self.kind} '{self.entity_id}' not found")


@dataclass
class CheckpointNotFoundError(StoryStoreError):
    """Raised when a checkpoint ID does not exist."""

    checkpoint_id: str

    def __post_init__(self) -> None:
        super().__init__(f"Checkpoint '{self.checkpoint_id}' not found")
