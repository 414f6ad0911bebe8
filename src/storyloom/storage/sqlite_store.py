"""SQLite-backed story storage.

StoryStore persists stories, branch-scoped entries, world-state entities,
branches and checkpoints using stdlib sqlite3. Each row stores the full
model as JSON in ``data`` alongside the indexed columns used for
branch-scoped queries.

Savepoint support lets multi-table operations (branch deletion, imports,
persistent restores) roll back as a unit.
"""

from __future__ import annotations

import json
import re
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel

from storyloom.storage.errors import (
    BranchNotFoundError,
    EntityNotFoundError,
    ForkEntryMissingError,
)
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

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

M = TypeVar("M", bound=BaseModel)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS stories (
    id   TEXT PRIMARY KEY,
    data JSON NOT NULL
);

CREATE TABLE IF NOT EXISTS story_entries (
    id        TEXT PRIMARY KEY,
    story_id  TEXT NOT NULL,
    branch_id TEXT,
    position  INTEGER NOT NULL,
    data      JSON NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_entries_position
    ON story_entries(story_id, IFNULL(branch_id, ''), position);

CREATE TABLE IF NOT EXISTS characters (
    id TEXT PRIMARY KEY, story_id TEXT NOT NULL, branch_id TEXT, data JSON NOT NULL
);
CREATE TABLE IF NOT EXISTS locations (
    id TEXT PRIMARY KEY, story_id TEXT NOT NULL, branch_id TEXT, data JSON NOT NULL
);
CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY, story_id TEXT NOT NULL, branch_id TEXT, data JSON NOT NULL
);
CREATE TABLE IF NOT EXISTS story_beats (
    id TEXT PRIMARY KEY, story_id TEXT NOT NULL, branch_id TEXT, data JSON NOT NULL
);
CREATE TABLE IF NOT EXISTS chapters (
    id TEXT PRIMARY KEY, story_id TEXT NOT NULL, branch_id TEXT, data JSON NOT NULL
);
CREATE TABLE IF NOT EXISTS lorebook_entries (
    id TEXT PRIMARY KEY, story_id TEXT NOT NULL, branch_id TEXT, data JSON NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_characters_scope ON characters(story_id, branch_id);
CREATE INDEX IF NOT EXISTS idx_locations_scope ON locations(story_id, branch_id);
CREATE INDEX IF NOT EXISTS idx_items_scope ON items(story_id, branch_id);
CREATE INDEX IF NOT EXISTS idx_story_beats_scope ON story_beats(story_id, branch_id);
CREATE INDEX IF NOT EXISTS idx_chapters_scope ON chapters(story_id, branch_id);
CREATE INDEX IF NOT EXISTS idx_lorebook_scope ON lorebook_entries(story_id, branch_id);

CREATE TABLE IF NOT EXISTS embedded_images (
    id       TEXT PRIMARY KEY,
    story_id TEXT NOT NULL,
    entry_id TEXT NOT NULL,
    data     JSON NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_images_entry ON embedded_images(entry_id);

CREATE TABLE IF NOT EXISTS branches (
    id               TEXT PRIMARY KEY,
    story_id         TEXT NOT NULL,
    parent_branch_id TEXT,
    data             JSON NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_branches_story ON branches(story_id);

CREATE TABLE IF NOT EXISTS checkpoints (
    id        TEXT PRIMARY KEY,
    story_id  TEXT NOT NULL,
    branch_id TEXT,
    data      JSON NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_checkpoints_story ON checkpoints(story_id);

CREATE TABLE IF NOT EXISTS retry_state (
    story_id TEXT PRIMARY KEY,
    data     JSON NOT NULL
);
"""

# Model -> (table, indexed columns besides id)
_TABLES: dict[type[BaseModel], tuple[str, tuple[str, ...]]] = {
    Story: ("stories", ()),
    StoryEntry: ("story_entries", ("story_id", "branch_id", "position")),
    Character: ("characters", ("story_id", "branch_id")),
    Location: ("locations", ("story_id", "branch_id")),
    Item: ("items", ("story_id", "branch_id")),
    StoryBeat: ("story_beats", ("story_id", "branch_id")),
    Chapter: ("chapters", ("story_id", "branch_id")),
    LorebookEntry: ("lorebook_entries", ("story_id", "branch_id")),
    EmbeddedImage: ("embedded_images", ("story_id", "entry_id")),
    Branch: ("branches", ("story_id", "parent_branch_id")),
    Checkpoint: ("checkpoints", ("story_id", "branch_id")),
}

# Tables whose rows are owned by a branch and removed with it
BRANCH_SCOPED: tuple[type[BaseModel], ...] = (
    StoryEntry,
    Chapter,
    Character,
    Location,
    Item,
    StoryBeat,
    LorebookEntry,
)

WORLD_STATE: tuple[type[BaseModel], ...] = (
    Character,
    Location,
    Item,
    StoryBeat,
    Chapter,
    LorebookEntry,
)


def _table(model: type[BaseModel]) -> tuple[str, tuple[str, ...]]:
    try:
        return _TABLES[model]
    except KeyError:
        raise TypeError(f"{model.__name__} is not a stored model") from None


class StoryStore:
    """SQLite story store.

    Queries scoped by branch use null-safe equality (``branch_id IS ?``) so
    that ``None`` selects the main branch only.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        *,
        _conn: sqlite3.Connection | None = None,
    ) -> None:
        """Open or create a story database.

        Args:
            db_path: Path to ``.db`` file, or ``":memory:"`` for in-memory.
            _conn: Pre-existing connection (for testing). If provided,
                   *db_path* is ignored.
        """
        if _conn is not None:
            self._conn = _conn
            self._db_path: str = ":memory:"
        else:
            self._db_path = str(db_path) if isinstance(db_path, Path) else db_path
            self._conn = sqlite3.connect(
                self._db_path,
                isolation_level=None,  # autocommit; multi-row writes use savepoints
            )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.executescript(_SCHEMA)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # -- Savepoints ------------------------------------------------------------

    _SAVEPOINT_RE = re.compile(r"^[A-Za-z0-9_]+$")

    def _validate_savepoint_name(self, name: str) -> None:
        """Validate savepoint name to prevent SQL injection."""
        if not self._SAVEPOINT_RE.match(name):
            msg = f"Invalid savepoint name {name!r}: must be alphanumeric/underscores only"
            raise ValueError(msg)

    @contextmanager
    def transaction(self, name: str) -> Iterator[None]:
        """Run a block inside a named savepoint.

        The savepoint is released when the block completes and rolled back
        if it raises. Savepoints nest, so callers may compose transactions.

        Args:
            name: Savepoint name (alphanumeric + underscores only).

        Raises:
            ValueError: If *name* contains invalid characters.
        """
        self._validate_savepoint_name(name)
        self._conn.execute(f"SAVEPOINT sp_{name}")
        try:
            yield
        except BaseException:
            self._conn.execute(f"ROLLBACK TO sp_{name}")
            self._conn.execute(f"RELEASE SAVEPOINT sp_{name}")
            raise
        else:
            self._conn.execute(f"RELEASE SAVEPOINT sp_{name}")

    # -- Generic rows ----------------------------------------------------------

    def _write(self, verb: str, entity: BaseModel) -> None:
        table, columns = _table(type(entity))
        names = ("id", *columns, "data")
        values = [entity.id] + [getattr(entity, c) for c in columns]  # type: ignore[attr-defined]
        values.append(entity.model_dump_json())
        placeholders = ", ".join("?" for _ in names)
        self._conn.execute(
            f"{verb} INTO {table} ({', '.join(names)}) VALUES ({placeholders})",
            values,
        )

    def insert(self, entity: BaseModel) -> None:
        """Insert a new row. Raises ``sqlite3.IntegrityError`` on duplicates."""
        self._write("INSERT", entity)

    def save(self, entity: BaseModel) -> None:
        """Insert or replace a row.

        Raises:
            TypeError: For checkpoints, which are write-once.
        """
        if isinstance(entity, Checkpoint):
            raise TypeError("Checkpoints are immutable once created")
        self._write("INSERT OR REPLACE", entity)

    def get(self, model: type[M], entity_id: str) -> M | None:
        table, _ = _table(model)
        row = self._conn.execute(f"SELECT data FROM {table} WHERE id = ?", (entity_id,)).fetchone()
        if row is None:
            return None
        return model.model_validate_json(row["data"])

    def require(self, model: type[M], entity_id: str) -> M:
        """Like :meth:`get` but raises when the row is missing."""
        entity = self.get(model, entity_id)
        if entity is None:
            if model is Branch:
                raise BranchNotFoundError(entity_id)
            raise EntityNotFoundError(model.__name__, entity_id)
        return entity

    def fetch(
        self,
        model: type[M],
        story_id: str,
        *,
        branch_id: str | None = None,
        all_branches: bool = False,
    ) -> list[M]:
        """List a story's rows, scoped to one branch unless *all_branches*.

        Entries come back ordered by position; other tables in insertion order.
        """
        table, columns = _table(model)
        sql = f"SELECT data FROM {table} WHERE story_id = ?"
        params: list[Any] = [story_id]
        if "branch_id" in columns and not all_branches:
            sql += " AND branch_id IS ?"
            params.append(branch_id)
        sql += " ORDER BY position" if model is StoryEntry else " ORDER BY rowid"
        rows = self._conn.execute(sql, params).fetchall()
        return [model.model_validate_json(row["data"]) for row in rows]

    def delete(self, model: type[BaseModel], entity_id: str) -> bool:
        table, _ = _table(model)
        cursor = self._conn.execute(f"DELETE FROM {table} WHERE id = ?", (entity_id,))
        return cursor.rowcount > 0

    def delete_not_in(
        self,
        model: type[BaseModel],
        story_id: str,
        branch_id: str | None,
        keep_ids: Iterable[str],
    ) -> int:
        """Delete a branch's rows whose IDs are not in *keep_ids*.

        Embedded images have no branch column; they are scoped through the
        branch's entries instead.

        Returns:
            Number of rows deleted.
        """
        table, columns = _table(model)
        keep = set(keep_ids)
        if "branch_id" in columns:
            rows = self._conn.execute(
                f"SELECT id FROM {table} WHERE story_id = ? AND branch_id IS ?",
                (story_id, branch_id),
            ).fetchall()
        elif model is EmbeddedImage:
            rows = self._conn.execute(
                "SELECT i.id FROM embedded_images i "
                "LEFT JOIN story_entries e ON e.id = i.entry_id "
                "WHERE i.story_id = ? AND (e.id IS NULL OR e.branch_id IS ?)",
                (story_id, branch_id),
            ).fetchall()
        else:
            raise TypeError(f"{model.__name__} is not branch-scoped")
        doomed = [row["id"] for row in rows if row["id"] not in keep]
        self._conn.executemany(f"DELETE FROM {table} WHERE id = ?", [(i,) for i in doomed])
        return len(doomed)

    def delete_branch_rows(self, branch_id: str) -> dict[str, int]:
        """Delete every branch-owned row carrying *branch_id*.

        Images attached to the branch's entries go with them. Checkpoints and
        other branches are not touched.

        Returns:
            Deleted row counts by table.
        """
        counts: dict[str, int] = {}
        cursor = self._conn.execute(
            "DELETE FROM embedded_images WHERE entry_id IN "
            "(SELECT id FROM story_entries WHERE branch_id = ?)",
            (branch_id,),
        )
        counts["embedded_images"] = cursor.rowcount
        for model in BRANCH_SCOPED:
            table, _ = _table(model)
            cursor = self._conn.execute(f"DELETE FROM {table} WHERE branch_id = ?", (branch_id,))
            counts[table] = cursor.rowcount
        return counts

    # -- Entries ---------------------------------------------------------------

    def entries(
        self,
        story_id: str,
        branch_id: str | None,
        *,
        max_position: int | None = None,
    ) -> list[StoryEntry]:
        """Entries stored on exactly one branch, ordered by position."""
        sql = "SELECT data FROM story_entries WHERE story_id = ? AND branch_id IS ?"
        params: list[Any] = [story_id, branch_id]
        if max_position is not None:
            sql += " AND position <= ?"
            params.append(max_position)
        rows = self._conn.execute(sql + " ORDER BY position", params).fetchall()
        return [StoryEntry.model_validate_json(row["data"]) for row in rows]

    def max_position(self, story_id: str, branch_id: str | None) -> int | None:
        row = self._conn.execute(
            "SELECT MAX(position) AS top FROM story_entries WHERE story_id = ? AND branch_id IS ?",
            (story_id, branch_id),
        ).fetchone()
        return row["top"]  # type: ignore[no-any-return]

    def next_entry_position(self, story_id: str, branch_id: str | None) -> int:
        """Position for the next entry appended to a branch.

        On main this is one past the highest position. A branch with no
        entries yet continues from its fork entry.

        Raises:
            BranchNotFoundError: If *branch_id* does not exist.
            ForkEntryMissingError: If the branch's fork entry was deleted.
        """
        top = self.max_position(story_id, branch_id)
        if top is not None:
            return top + 1
        if branch_id is None:
            return 0
        branch = self.get(Branch, branch_id)
        if branch is None:
            raise BranchNotFoundError(branch_id, context="computing next entry position")
        fork_entry = self.get(StoryEntry, branch.fork_entry_id)
        if fork_entry is None:
            raise ForkEntryMissingError(branch_id=branch_id, fork_entry_id=branch.fork_entry_id)
        return fork_entry.position + 1

    def delete_entries_from_position(
        self, story_id: str, branch_id: str | None, position: int
    ) -> int:
        """Delete a branch's entries at or after *position*, with their images.

        Returns:
            Number of entries deleted.
        """
        self._conn.execute(
            "DELETE FROM embedded_images WHERE entry_id IN "
            "(SELECT id FROM story_entries "
            " WHERE story_id = ? AND branch_id IS ? AND position >= ?)",
            (story_id, branch_id, position),
        )
        cursor = self._conn.execute(
            "DELETE FROM story_entries WHERE story_id = ? AND branch_id IS ? AND position >= ?",
            (story_id, branch_id, position),
        )
        return cursor.rowcount

    # -- Stories ---------------------------------------------------------------

    def stories(self) -> list[Story]:
        rows = self._conn.execute("SELECT data FROM stories ORDER BY rowid").fetchall()
        return [Story.model_validate_json(row["data"]) for row in rows]

    def set_current_branch(self, story_id: str, branch_id: str | None) -> None:
        story = self.require(Story, story_id)
        self.save(story.model_copy(update={"current_branch_id": branch_id}))

    def images_for_entries(self, entry_ids: Iterable[str]) -> list[EmbeddedImage]:
        ids = list(entry_ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        rows = self._conn.execute(
            f"SELECT data FROM embedded_images WHERE entry_id IN ({placeholders}) ORDER BY rowid",
            ids,
        ).fetchall()
        return [EmbeddedImage.model_validate_json(row["data"]) for row in rows]

    # -- Retry state -----------------------------------------------------------

    def get_retry_state(self, story_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT data FROM retry_state WHERE story_id = ?", (story_id,)
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["data"])  # type: ignore[no-any-return]

    def set_retry_state(self, story_id: str, data: dict[str, Any]) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO retry_state (story_id, data) VALUES (?, ?)",
            (story_id, json.dumps(data)),
        )

    def clear_retry_state(self, story_id: str) -> None:
        self._conn.execute("DELETE FROM retry_state WHERE story_id = ?", (story_id,))
