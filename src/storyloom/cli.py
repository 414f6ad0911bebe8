"""storyloom CLI - typer application entry point."""

from __future__ import annotations

import atexit
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from storyloom.observability import close_file_logging, configure_logging, get_logger
from storyloom.pipeline.config import (
    CONFIG_FILE_NAME,
    ProjectConfigError,
    create_default_config,
    load_project_config,
    write_project_config,
)
from storyloom.storage import BranchManager, StoryStore, StoryStoreError
from storyloom.storage.models import Story
from storyloom.transfer import export_story_to_file, import_story_from_file

if TYPE_CHECKING:
    from collections.abc import Iterator

    from storyloom.storage.models import Branch

# Load environment variables from .env file
load_dotenv()

app = typer.Typer(
    name="storyloom",
    help="storyloom: branching interactive fiction stories.",
    no_args_is_help=True,
)
console = Console()
log = get_logger(__name__)

# Global state for logging flags (set by callback, used by commands)
_verbose: int = 0
_log_enabled: bool = False

ProjectOption = Annotated[
    Path,
    typer.Option("--project", "-p", help="Project directory (default: current directory)."),
]


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log_file: Annotated[
        bool,
        typer.Option("--log", help="Enable file logging to {project}/logs/storyloom.jsonl."),
    ] = False,
) -> None:
    """storyloom: branching interactive fiction stories."""
    global _verbose, _log_enabled
    _verbose = verbose
    _log_enabled = log_file

    # Console logging now; file logging once the project is known
    configure_logging(verbosity=verbose)


@contextmanager
def _open_store(project_path: Path) -> Iterator[StoryStore]:
    """Open the project's story database, exiting if the project is missing.

    The store is closed when the command finishes, including on exit.
    """
    try:
        config = load_project_config(project_path)
    except ProjectConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print(f"Run 'storyloom init <name>' to create {CONFIG_FILE_NAME}.")
        raise typer.Exit(1) from e

    if _log_enabled:
        configure_logging(verbosity=_verbose, log_to_file=True, project_path=project_path)
        atexit.register(close_file_logging)

    db_path = config.storage.resolve(project_path)
    log.debug("store_opened", db_path=str(db_path))
    store = StoryStore(db_path)
    try:
        yield store
    finally:
        store.close()


def _require_story(store: StoryStore, story_id: str) -> Story:
    story = store.get(Story, story_id)
    if story is None:
        console.print(f"[red]Error:[/red] Story '{story_id}' not found")
        raise typer.Exit(1)
    return story


@app.command()
def version() -> None:
    """Show version information."""
    from storyloom import __version__

    console.print(f"storyloom v{__version__}")


@app.command()
def init(
    name: Annotated[str, typer.Argument(help="Project name")],
    path: Annotated[
        Path,
        typer.Option("--path", help="Parent directory for the project."),
    ] = Path(),
) -> None:
    """Create a project directory with a default storyloom.yaml."""
    project_path = path / name
    if project_path.exists():
        console.print(f"[red]Error:[/red] Directory '{project_path}' already exists")
        raise typer.Exit(1)
    project_path.mkdir(parents=True)
    config_file = write_project_config(create_default_config(name), project_path)

    console.print(f"[green]✓[/green] Created project: [bold]{name}[/bold]")
    console.print(f"  Config: {config_file.absolute()}")


@app.command()
def stories(project: ProjectOption = Path()) -> None:
    """List the stories in the project."""
    with _open_store(project) as store:
        table = Table(title="Stories")
        table.add_column("ID", style="dim")
        table.add_column("Title", style="bold")
        table.add_column("Mode", style="cyan")
        table.add_column("Current branch")
        for story in store.stories():
            table.add_row(story.id, story.title, story.mode, story.current_branch_id or "main")
        console.print(table)


@app.command("export")
def export_cmd(
    story_id: Annotated[str, typer.Argument(help="Story to export")],
    output: Annotated[Path, typer.Argument(help="Destination JSON file")],
    project: ProjectOption = Path(),
) -> None:
    """Export a story with all branches and checkpoints to JSON."""
    with _open_store(project) as store:
        _require_story(store, story_id)
        written = export_story_to_file(store, story_id, output)
        console.print(f"[green]✓[/green] Exported to {written}")


@app.command("import")
def import_cmd(
    file: Annotated[Path, typer.Argument(help="Exported story JSON")],
    keep_title: Annotated[
        bool,
        typer.Option("--keep-title", help="Do not add ' (Imported)' to the title."),
    ] = False,
    project: ProjectOption = Path(),
) -> None:
    """Import an exported story under new IDs."""
    with _open_store(project) as store:
        result = import_story_from_file(store, file, skip_imported_suffix=keep_title)
        for warning in result.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
        if not result.success:
            console.print(f"[red]Import failed:[/red] {result.error}")
            raise typer.Exit(1)
        console.print(f"[green]✓[/green] Imported story {result.story_id}")


def _add_children(
    node: Tree, parent_id: str | None, tree: dict[str | None, list[Branch]], current: str | None
) -> None:
    for branch in tree.get(parent_id, []):
        marker = " [green](current)[/green]" if branch.id == current else ""
        child = node.add(f"[bold]{branch.name}[/bold] [dim]{branch.id}[/dim]{marker}")
        _add_children(child, branch.id, tree, current)


@app.command()
def branches(
    story_id: Annotated[str, typer.Argument(help="Story ID")],
    project: ProjectOption = Path(),
) -> None:
    """Show the story's branch hierarchy."""
    with _open_store(project) as store:
        story = _require_story(store, story_id)
        tree = BranchManager(store).branch_tree(story_id)
        main_marker = " [green](current)[/green]" if story.current_branch_id is None else ""
        root = Tree(f"[bold]main[/bold]{main_marker}")
        _add_children(root, None, tree, story.current_branch_id)
        console.print(root)


@app.command()
def fork(
    story_id: Annotated[str, typer.Argument(help="Story ID")],
    entry_id: Annotated[str, typer.Argument(help="Entry to fork after")],
    name: Annotated[str, typer.Argument(help="Branch name")],
    switch: Annotated[bool, typer.Option("--switch", help="Make it the current branch.")] = False,
    project: ProjectOption = Path(),
) -> None:
    """Create a branch diverging after an entry."""
    with _open_store(project) as store:
        manager = BranchManager(store)
        try:
            branch = manager.fork(story_id, entry_id, name)
            if switch:
                manager.switch_branch(story_id, branch.id)
        except StoryStoreError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e
        console.print(f"[green]✓[/green] Created branch {branch.name} ({branch.id})")


@app.command("delete-branch")
def delete_branch(
    branch_id: Annotated[str, typer.Argument(help="Branch to delete")],
    project: ProjectOption = Path(),
) -> None:
    """Delete a branch and everything it owns. Checkpoints are kept."""
    with _open_store(project) as store:
        try:
            counts = BranchManager(store).delete_branch(branch_id)
        except StoryStoreError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e
    console.print(f"[green]✓[/green] Deleted branch {branch_id} ({sum(counts.values())} rows)")


@app.command()
def checkpoint(
    story_id: Annotated[str, typer.Argument(help="Story ID")],
    name: Annotated[str, typer.Argument(help="Checkpoint name")],
    project: ProjectOption = Path(),
) -> None:
    """Snapshot the story's current branch."""
    with _open_store(project) as store:
        story = _require_story(store, story_id)
        try:
            created = BranchManager(store).create_checkpoint(
                story_id, story.current_branch_id, name
            )
        except (StoryStoreError, ValueError) as e:
            console.print(f"[red]Error:[/red] {e}")
            raise typer.Exit(1) from e
    console.print(f"[green]✓[/green] Checkpoint {created.name} ({created.entry_count} entries)")


@app.command()
def checkpoints(
    story_id: Annotated[str, typer.Argument(help="Story ID")],
    project: ProjectOption = Path(),
) -> None:
    """List the story's checkpoints."""
    with _open_store(project) as store:
        _require_story(store, story_id)
        table = Table(title="Checkpoints")
        table.add_column("Name", style="bold")
        table.add_column("Branch", style="cyan")
        table.add_column("Entries", justify="right")
        table.add_column("Last entry", style="dim")
        table.add_column("Created", style="dim")
        for cp in BranchManager(store).checkpoints(story_id):
            table.add_row(
                cp.name,
                cp.branch_id or "main",
                str(cp.entry_count),
                cp.last_entry_preview or "",
                cp.created_at.strftime("%Y-%m-%d %H:%M"),
            )
        console.print(table)


if __name__ == "__main__":
    app()
