"""
CLI entry point for rail-sync.

Provides command-line interface for syncing between the monorepo and its
split repositories.
"""

import logging
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import DEFAULT_CONFIG_FILE, RailConfig, SplitSpec, create_default_config
from .conflict import ConflictStrategy
from .errors import RailError
from .git_ops import SystemGit
from .mapping import MappingStore
from .syncer import SyncOrchestrator
from .vcs import SyncDirection

console = Console()
logger = logging.getLogger(__name__)

config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_FILE,
    help="Path to the rail configuration file",
)


def setup_logging(verbose: bool) -> None:
    """Route log records through rich, to stderr."""
    handler = RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )


def _fail(error: RailError) -> None:
    console.print(f"[red]{error}[/red]")
    if error.help_message:
        console.print(f"[dim]{error.help_message}[/dim]")
    raise SystemExit(int(error.exit_code))


def _load(config_path: Path) -> tuple[RailConfig, SystemGit]:
    config = RailConfig.from_yaml(config_path)
    vcs = SystemGit(config.workspace_root, timeout=config.git_timeout, workers=config.batch_workers)
    return config, vcs


@click.group()
@click.version_option(package_name="rail-sync")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def cli(verbose: bool):
    """Rail Sync - Split Cargo workspace crates into their own repositories and keep them in sync."""
    setup_logging(verbose)


@cli.command()
@click.option(
    "--workspace",
    "-w",
    type=click.Path(exists=True, file_okay=False, dir_okay=True, path_type=Path),
    default=Path("."),
    help="Path to the monorepo (Cargo workspace) root",
)
@click.option("--mono-branch", default="main", help="Mono branch synced to splits")
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CONFIG_FILE,
    help="Output config file path",
)
def init(workspace: Path, mono_branch: str, output: Path):
    """Initialize a new rail configuration file."""
    if output.exists():
        console.print(f"[yellow]Config file already exists: {output}[/yellow]")
        raise SystemExit(1)
    config = create_default_config(workspace_root=workspace, mono_branch=mono_branch)
    config.to_yaml(output)
    console.print(f"[green]Created configuration file: {output}[/green]")
    console.print(f"  Workspace: {workspace}")
    console.print("\nAdd splits with 'rail-sync add-split'.")


@cli.command(name="add-split")
@config_option
@click.argument("name")
@click.argument("paths", nargs=-1, required=True)
@click.option("--remote", "-r", required=True, help="Git remote (name or URL) of the split repository")
@click.option("--branch", "-b", default="main", help="Branch of the split repository")
@click.option(
    "--exclude",
    "-e",
    "excludes",
    multiple=True,
    help="Patterns to exclude (can be specified multiple times)",
)
def add_split(
    config_path: Path,
    name: str,
    paths: tuple[str, ...],
    remote: str,
    branch: str,
    excludes: tuple[str, ...],
):
    """Add a split to the configuration; several paths make a combined split."""
    try:
        config = RailConfig.from_yaml(config_path)
    except RailError as e:
        _fail(e)
        return

    if any(s.name == name for s in config.splits):
        console.print(f"[yellow]Split already exists: {name}[/yellow]")
        raise SystemExit(1)

    try:
        split = SplitSpec(
            name=name,
            remote=remote,
            branch=branch,
            mode="combined" if len(paths) > 1 else "single",
            paths=list(paths),
            exclude=list(excludes),
        )
    except ValidationError as e:
        console.print(f"[red]Invalid split:[/red]\n{e}")
        raise SystemExit(1)
    config.splits.append(split)
    config.to_yaml(config_path)

    console.print(f"[green]Added split: {name}[/green] ({split.mode})")
    console.print(f"  Paths: {', '.join(split.paths)}")
    if excludes:
        console.print(f"  Excludes: {', '.join(excludes)}")


@cli.command()
@config_option
@click.option("--split", "-s", "split_name", required=True, help="Name of the split to sync")
@click.option(
    "--direction",
    "-d",
    type=click.Choice([d.value for d in SyncDirection]),
    default=SyncDirection.MONO_TO_SPLIT.value,
    help="Direction of sync",
)
@click.option(
    "--apply",
    is_flag=True,
    help="Write commits, push and record mappings (default is a dry run)",
)
@click.option(
    "--strategy",
    help="Conflict strategy: ours, theirs, manual, union (or use-mono/use-remote)",
)
@click.option("--json", "as_json", is_flag=True, help="Print the plan/result as JSON")
def sync(
    config_path: Path,
    split_name: str,
    direction: str,
    apply: bool,
    strategy: str | None,
    as_json: bool,
):
    """Sync commits between the monorepo and a split repository."""
    try:
        config, vcs = _load(config_path)
        split = config.get_split(split_name)
        chosen = None
        if strategy:
            try:
                chosen = ConflictStrategy.parse(strategy)
            except ValueError as e:
                raise click.BadParameter(str(e), param_hint="--strategy") from e
        output = Console(stderr=True) if as_json else console
        orchestrator = SyncOrchestrator(vcs, config, split, strategy=chosen, console=output)
        result = orchestrator.run(SyncDirection(direction), apply=apply)
    except RailError as e:
        _fail(e)
        return

    if as_json:
        click.echo(result.to_json())


@cli.command()
@config_option
def status(config_path: Path):
    """Show configured splits and pending commits in both directions."""
    try:
        config, vcs = _load(config_path)
    except RailError as e:
        _fail(e)
        return

    console.print("\n[bold]Rail Sync Status[/bold]\n")
    console.print(f"  Workspace: {config.workspace_root}")
    console.print(f"  Mono branch: {config.mono_branch}")

    table = Table(title=f"Splits ({len(config.splits)})")
    table.add_column("Split", style="cyan")
    table.add_column("Mode")
    table.add_column("Paths")
    table.add_column("Remote", style="yellow")
    table.add_column("Mappings", justify="right")
    table.add_column("Mono → Split", justify="right")
    table.add_column("Split → Mono", justify="right")

    quiet = Console(quiet=True)
    failed = False
    for split in config.splits:
        pending = []
        for direction in SyncDirection:
            try:
                plan = SyncOrchestrator(vcs, config, split, console=quiet).plan(direction)
                pending.append(str(plan.creates))
            except RailError as e:
                logger.error("%s %s: %s", split.name, direction.value, e)
                pending.append("[red]error[/red]")
                failed = True
        table.add_row(
            split.name,
            split.mode,
            "\n".join(split.paths),
            f"{split.remote} ({split.branch})",
            str(len(MappingStore(vcs, split.name))),
            *pending,
        )
    console.print(table)
    if failed:
        raise SystemExit(1)


@cli.command()
@config_option
@click.option("--split", "-s", "split_name", required=True, help="Name of the split")
@click.option("--limit", "-n", type=int, default=20, help="Number of entries to show (0 for all)")
def mappings(config_path: Path, split_name: str, limit: int):
    """List recorded mono <-> split commit mappings."""
    try:
        config, vcs = _load(config_path)
        split = config.get_split(split_name)
        entries = MappingStore(vcs, split.name).entries()
    except RailError as e:
        _fail(e)
        return

    if not entries:
        console.print(f"[yellow]No mappings recorded for {split.name}.[/yellow]")
        return

    present = vcs.existing_commits([e.mono_sha for e in entries])
    commits = {c.sha: c for c in vcs.read_commits(present)}
    ordered = sorted(entries, key=lambda e: commits[e.mono_sha].timestamp if e.mono_sha in commits else 0)
    shown = ordered[-limit:] if limit else ordered

    table = Table(title=f"Mappings for {split.name} ({len(entries)})")
    table.add_column("Mono", style="cyan", width=10)
    table.add_column("Split", style="magenta", width=10)
    table.add_column("Date", style="green", width=17)
    table.add_column("Message", style="white")
    for entry in shown:
        commit = commits.get(entry.mono_sha)
        table.add_row(
            entry.mono_sha[:8],
            entry.split_sha[:8],
            commit.authored_at.strftime("%Y-%m-%d %H:%M") if commit else "[dim]not fetched[/dim]",
            commit.summary[:60] if commit else "",
        )
    console.print(table)


def main() -> None:
    cli(prog_name="rail-sync")


if __name__ == "__main__":
    sys.exit(main())
