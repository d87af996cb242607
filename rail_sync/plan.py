"""
Sync plans and results.

A Plan is what a dry run produces and what an applied run executes: the
commits to transplant, what each one does to the target tree, which
manifests get rewritten and which files would need a human.
"""

import json
from dataclasses import dataclass, field

from rich.console import Console
from rich.table import Table

from .mapping import MappingEntry
from .vcs import CommitRecord, SyncDirection

CREATE = "create"
SKIP_UNCHANGED = "skip-unchanged"

MAX_ROWS = 20


@dataclass
class PlannedCommit:
    """One source commit and what syncing it does."""

    commit: CommitRecord
    action: str
    files: list[str] = field(default_factory=list)
    transforms: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)
    failures: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return bool(self.conflicts or self.failures)

    def to_dict(self) -> dict:
        return {
            "sha": self.commit.sha,
            "author": self.commit.author,
            "summary": self.commit.summary,
            "action": self.action,
            "files": self.files,
            "transforms": self.transforms,
            "conflicts": self.conflicts,
            "failures": self.failures,
        }


@dataclass
class Plan:
    """Everything a sync run will do, computed without writing anything."""

    split: str
    direction: SyncDirection
    target: str
    target_head: str | None
    anchor: MappingEntry | None = None
    commits: list[PlannedCommit] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.commits

    @property
    def creates(self) -> int:
        return sum(1 for c in self.commits if c.action == CREATE)

    def unresolved(self) -> list[str]:
        """Get the paths that block the run, in order of first appearance."""
        paths: dict[str, None] = {}
        for planned in self.commits:
            for path in planned.conflicts:
                paths.setdefault(path)
            for failure in planned.failures:
                paths.setdefault(failure.split(": ", 1)[0])
        return list(paths)

    def warn(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)

    def to_dict(self) -> dict:
        return {
            "split": self.split,
            "direction": self.direction.value,
            "target": self.target,
            "target_head": self.target_head,
            "anchor": (
                {"mono": self.anchor.mono_sha, "split": self.anchor.split_sha} if self.anchor else None
            ),
            "commits": [c.to_dict() for c in self.commits],
            "unresolved": self.unresolved(),
            "warnings": self.warnings,
        }

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


@dataclass
class SyncResult:
    """Result of a sync run."""

    plan: Plan
    applied: bool
    created: list[MappingEntry] = field(default_factory=list)
    recorded: list[MappingEntry] = field(default_factory=list)
    pushed_ref: str | None = None
    review_branch: str | None = None

    @property
    def dry_run(self) -> bool:
        return not self.applied

    def to_dict(self) -> dict:
        data = self.plan.to_dict()
        data.update(
            {
                "applied": self.applied,
                "created": [{"mono": e.mono_sha, "split": e.split_sha} for e in self.created],
                "recorded": len(self.recorded),
                "pushed_ref": self.pushed_ref,
                "review_branch": self.review_branch,
            }
        )
        return data

    def to_json(self, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def render_plan(plan: Plan, console: Console) -> None:
    """Print a plan as a table of pending commits."""
    console.print(f"\n[bold]{plan.split}: {plan.direction.value} → {plan.target}[/bold]")
    if plan.anchor:
        console.print(
            f"[dim]Anchor: mono {plan.anchor.mono_sha[:8]} ↔ split {plan.anchor.split_sha[:8]}[/dim]"
        )

    if plan.empty:
        console.print("[green]No commits to sync.[/green]")
    else:
        table = Table(title=f"Pending Commits ({len(plan.commits)})")
        table.add_column("Hash", style="cyan", width=10)
        table.add_column("Date", style="green", width=17)
        table.add_column("Author", style="yellow", width=20)
        table.add_column("Message", style="white")
        table.add_column("Action")
        table.add_column("Files", justify="right")
        table.add_column("Notes")

        for planned in plan.commits[:MAX_ROWS]:
            commit = planned.commit
            message = commit.summary[:60] + ("..." if len(commit.summary) > 60 else "")
            notes = [f"[blue]{t}[/blue]" for t in planned.transforms]
            notes += [f"[red]conflict: {p}[/red]" for p in planned.conflicts]
            notes += [f"[red]{f}[/red]" for f in planned.failures]
            action = "[dim]skip[/dim]" if planned.action == SKIP_UNCHANGED else planned.action
            table.add_row(
                commit.short_sha,
                commit.authored_at.strftime("%Y-%m-%d %H:%M"),
                commit.author,
                message,
                action,
                str(len(planned.files)),
                "\n".join(notes),
            )

        if len(plan.commits) > MAX_ROWS:
            table.add_row(
                "...", "...", "...", f"[dim]({len(plan.commits) - MAX_ROWS} more commits)[/dim]", "", "", ""
            )
        console.print(table)

    unresolved = plan.unresolved()
    if unresolved:
        console.print(f"\n[red]Unresolved files ({len(unresolved)}):[/red]")
        for path in unresolved:
            console.print(f"  • {path}")

    if plan.warnings:
        console.print(f"\n[yellow]Warnings: {len(plan.warnings)}[/yellow]")
        for warning in plan.warnings:
            console.print(f"  • {warning}")


def render_result(result: SyncResult, console: Console, mono_remote: str = "origin") -> None:
    """Print the summary of a sync run."""
    console.print("\n[bold]Sync Summary:[/bold]")
    if result.dry_run:
        console.print(
            f"  [yellow]DRY RUN - {result.plan.creates} commit(s) would be written. "
            "Re-run with --apply to sync.[/yellow]"
        )
        return

    console.print(f"  [green]✓ Created {len(result.created)} commit(s)[/green]")
    console.print(f"  Mappings recorded: {len(result.recorded)}")
    if result.pushed_ref:
        console.print(f"  Pushed: {result.pushed_ref}")
    if result.review_branch:
        console.print("\n[bold]Review required:[/bold]")
        console.print(f"  Changes from the split repository are on [cyan]{result.review_branch}[/cyan].")
        console.print("  Inspect them, then open a pull request:")
        console.print(f"    git log {result.plan.target_head}..{result.review_branch}")
        console.print(f"    git push {mono_remote} {result.review_branch}")
