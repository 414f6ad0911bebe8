"""Test CLI commands."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from typer.testing import CliRunner

from storyloom import __version__
from storyloom.cli import app
from storyloom.pipeline.config import CONFIG_FILE_NAME, load_project_config
from storyloom.storage import BranchManager, StoryStore
from storyloom.storage.models import Story

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

runner = CliRunner()


@pytest.fixture(autouse=True)
def _no_db_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("STORYLOOM_DB", raising=False)


@pytest.fixture
def project(tmp_path: Path) -> Path:
    result = runner.invoke(app, ["init", "tales", "--path", str(tmp_path)])
    assert result.exit_code == 0
    return tmp_path / "tales"


@pytest.fixture
def project_store(project: Path) -> Iterator[StoryStore]:
    store = StoryStore(project / "story.db")
    yield store
    store.close()


@pytest.fixture
def saved_story(project_store: StoryStore) -> Story:
    """A story with three main entries."""
    story = Story(title="The Lighthouse")
    project_store.insert(story)
    manager = BranchManager(project_store)
    for i in range(3):
        manager.append_entry(story.id, None, "narration", f"Part {i}")
    return story


def test_version_command() -> None:
    """Test storyloom version command."""
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert f"v{__version__}" in result.stdout


def test_no_args_shows_help() -> None:
    """Test that no arguments shows help."""
    result = runner.invoke(app, [])
    # no_args_is_help=True returns exit code 2 (not 0 like --help)
    assert result.exit_code == 2
    assert "storyloom" in result.stdout


def test_verbose_and_log_flags_exist() -> None:
    result = runner.invoke(app, ["--help"])
    assert "--verbose" in result.stdout
    assert "--log" in result.stdout


# --- Init Command Tests ---


def test_init_creates_project(tmp_path: Path) -> None:
    """Test storyloom init writes a loadable config."""
    result = runner.invoke(app, ["init", "my_story", "--path", str(tmp_path)])

    assert result.exit_code == 0
    assert "Created project" in result.stdout
    assert (tmp_path / "my_story" / CONFIG_FILE_NAME).exists()
    assert load_project_config(tmp_path / "my_story").name == "my_story"


def test_init_existing_directory_fails(tmp_path: Path) -> None:
    (tmp_path / "taken").mkdir()

    result = runner.invoke(app, ["init", "taken", "--path", str(tmp_path)])

    assert result.exit_code == 1
    assert "already exists" in result.stdout


# --- Story Command Tests ---


def test_stories_no_project_fails(tmp_path: Path) -> None:
    result = runner.invoke(app, ["stories", "--project", str(tmp_path)])

    assert result.exit_code == 1
    assert "storyloom init" in result.stdout


def test_stories_lists_titles(project: Path, saved_story: Story) -> None:
    result = runner.invoke(app, ["stories", "-p", str(project)])

    assert result.exit_code == 0
    assert "Lighthouse" in result.stdout


def test_unknown_story_fails(project: Path) -> None:
    result = runner.invoke(app, ["branches", "missing", "-p", str(project)])

    assert result.exit_code == 1
    assert "Story 'missing' not found" in result.stdout


def test_db_path_override(
    project: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    other = tmp_path / "elsewhere.db"
    StoryStore(other).close()
    monkeypatch.setenv("STORYLOOM_DB", str(other))

    result = runner.invoke(app, ["stories", "-p", str(project)])

    assert result.exit_code == 0
    assert not (project / "story.db").exists()


# --- Export / Import Command Tests ---


def test_export_then_import(
    project: Path, project_store: StoryStore, saved_story: Story, tmp_path: Path
) -> None:
    out = tmp_path / "export.json"

    exported = runner.invoke(app, ["export", saved_story.id, str(out), "-p", str(project)])
    imported = runner.invoke(app, ["import", str(out), "-p", str(project)])

    assert exported.exit_code == 0
    assert json.loads(out.read_text())["story"]["title"] == "The Lighthouse"
    assert imported.exit_code == 0
    assert "Imported story" in imported.stdout
    titles = sorted(s.title for s in project_store.stories())
    assert titles == ["The Lighthouse", "The Lighthouse (Imported)"]


def test_import_keep_title(
    project: Path, project_store: StoryStore, saved_story: Story, tmp_path: Path
) -> None:
    out = tmp_path / "export.json"
    runner.invoke(app, ["export", saved_story.id, str(out), "-p", str(project)])

    result = runner.invoke(app, ["import", str(out), "--keep-title", "-p", str(project)])

    assert result.exit_code == 0
    assert [s.title for s in project_store.stories()] == ["The Lighthouse"] * 2


def test_import_invalid_file_fails(project: Path, tmp_path: Path) -> None:
    bad = tmp_path / "bad.json"
    bad.write_text("{not json")

    result = runner.invoke(app, ["import", str(bad), "-p", str(project)])

    assert result.exit_code == 1
    assert "Invalid file: not valid JSON" in result.stdout


# --- Branch Command Tests ---


def test_fork_and_switch(project: Path, project_store: StoryStore, saved_story: Story) -> None:
    fork_at = project_store.entries(saved_story.id, None)[1]

    result = runner.invoke(
        app,
        ["fork", saved_story.id, fork_at.id, "alt", "--switch", "-p", str(project)],
    )

    assert result.exit_code == 0
    assert "Created branch alt" in result.stdout
    [branch] = BranchManager(project_store).branches(saved_story.id)
    assert project_store.require(Story, saved_story.id).current_branch_id == branch.id


def test_fork_unknown_entry_fails(project: Path, saved_story: Story) -> None:
    result = runner.invoke(app, ["fork", saved_story.id, "nope", "alt", "-p", str(project)])

    assert result.exit_code == 1
    assert "Error" in result.stdout


def test_branches_shows_tree(
    project: Path, project_store: StoryStore, saved_story: Story
) -> None:
    manager = BranchManager(project_store)
    fork_at = project_store.entries(saved_story.id, None)[0]
    parent = manager.fork(saved_story.id, fork_at.id, "detour")
    child_fork = manager.append_entry(saved_story.id, parent.id, "narration", "x")
    manager.fork(saved_story.id, child_fork.id, "shortcut")

    result = runner.invoke(app, ["branches", saved_story.id, "-p", str(project)])

    assert result.exit_code == 0
    assert "main" in result.stdout
    assert "detour" in result.stdout
    assert "shortcut" in result.stdout
    assert result.stdout.index("detour") < result.stdout.index("shortcut")


def test_delete_branch(project: Path, project_store: StoryStore, saved_story: Story) -> None:
    manager = BranchManager(project_store)
    fork_at = project_store.entries(saved_story.id, None)[0]
    branch = manager.fork(saved_story.id, fork_at.id, "detour")

    result = runner.invoke(app, ["delete-branch", branch.id, "-p", str(project)])

    assert result.exit_code == 0
    assert "Deleted branch" in result.stdout
    assert manager.branches(saved_story.id) == []


def test_delete_unknown_branch_fails(project: Path) -> None:
    result = runner.invoke(app, ["delete-branch", "ghost", "-p", str(project)])

    assert result.exit_code == 1


# --- Checkpoint Command Tests ---


def test_checkpoint_and_list(
    project: Path, project_store: StoryStore, saved_story: Story
) -> None:
    created = runner.invoke(app, ["checkpoint", saved_story.id, "Before", "-p", str(project)])
    listed = runner.invoke(app, ["checkpoints", saved_story.id, "-p", str(project)])

    assert created.exit_code == 0
    assert "3 entries" in created.stdout
    assert listed.exit_code == 0
    assert "Before" in listed.stdout
    assert len(BranchManager(project_store).checkpoints(saved_story.id)) == 1


def test_checkpoint_empty_story_fails(project: Path, project_store: StoryStore) -> None:
    story = Story(title="Blank")
    project_store.insert(story)

    result = runner.invoke(app, ["checkpoint", story.id, "Nothing", "-p", str(project)])

    assert result.exit_code == 1
    assert "No entries to checkpoint" in result.stdout


# --- Store Lifetime Tests ---


@pytest.mark.parametrize(
    ("args", "exit_code"),
    [
        (["stories"], 0),
        (["delete-branch", "ghost"], 1),
        (["branches", "missing"], 1),
    ],
)
def test_store_closed_after_command(
    project: Path, monkeypatch: pytest.MonkeyPatch, args: list[str], exit_code: int
) -> None:
    closed: list[StoryStore] = []
    original_close = StoryStore.close

    def close(self: StoryStore) -> None:
        closed.append(self)
        original_close(self)

    monkeypatch.setattr(StoryStore, "close", close)

    result = runner.invoke(app, [*args, "-p", str(project)])

    assert result.exit_code == exit_code
    assert len(closed) == 1
