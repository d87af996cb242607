"""
Three-way file merging for sync runs.

The base is the file as the incoming side last delivered it (the anchor),
ours is the current content on the target side and theirs is the new
incoming content. Regions are computed with merge3; each ConflictStrategy
has one function deciding what a conflicting region becomes.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import merge3

logger = logging.getLogger(__name__)

START_MARKER = "<<<<<<<"
BASE_MARKER = "|||||||"
MID_MARKER = "======="
END_MARKER = ">>>>>>>"

_MARKER_RE = re.compile(rb"^(<{7}|>{7})( |$)", re.MULTILINE)


class ConflictStrategy(str, Enum):
    """How conflicting regions are resolved."""

    OURS = "ours"
    THEIRS = "theirs"
    MANUAL = "manual"
    UNION = "union"

    @classmethod
    def parse(cls, value: "str | ConflictStrategy") -> "ConflictStrategy":
        """Parse a strategy name, accepting the use-mono/use-remote aliases."""
        if isinstance(value, ConflictStrategy):
            return value
        aliases = {"use-mono": cls.OURS, "use-remote": cls.THEIRS}
        name = value.strip().lower()
        if name in aliases:
            return aliases[name]
        try:
            return cls(name)
        except ValueError:
            valid = ", ".join(s.value for s in cls)
            raise ValueError(f"Invalid conflict strategy '{value}'. Valid options: {valid}") from None


@dataclass(frozen=True)
class ConflictContext:
    """Inputs of one file-resolution step. None means the file is absent."""

    path: str
    base: bytes | None
    ours: bytes | None
    theirs: bytes | None
    strategy: ConflictStrategy = ConflictStrategy.MANUAL


@dataclass(frozen=True)
class Clean:
    """Merged without conflicts; data None means the file is deleted."""

    path: str
    data: bytes | None


@dataclass(frozen=True)
class Conflicted:
    """Merged with conflict markers left for a human."""

    path: str
    data: bytes
    regions: int


@dataclass(frozen=True)
class Failed:
    """Could not be merged at all (binary content or no common base)."""

    path: str
    reason: str


MergeOutcome = Clean | Conflicted | Failed

# A region resolver returns the lines to keep, or None to leave markers.
RegionResolver = Callable[[list[str], list[str], list[str]], list[str] | None]


def _keep_ours(base: list[str], ours: list[str], theirs: list[str]) -> list[str] | None:
    return ours


def _keep_theirs(base: list[str], ours: list[str], theirs: list[str]) -> list[str] | None:
    return theirs


def _keep_both(base: list[str], ours: list[str], theirs: list[str]) -> list[str] | None:
    return _terminated(ours) + theirs


def _leave_markers(base: list[str], ours: list[str], theirs: list[str]) -> list[str] | None:
    return None


REGION_RESOLVERS: dict[ConflictStrategy, RegionResolver] = {
    ConflictStrategy.OURS: _keep_ours,
    ConflictStrategy.THEIRS: _keep_theirs,
    ConflictStrategy.UNION: _keep_both,
    ConflictStrategy.MANUAL: _leave_markers,
}


def has_conflict_markers(data: bytes | None) -> bool:
    """Check whether content still carries conflict markers."""
    return bool(data) and _MARKER_RE.search(data) is not None


def is_binary(data: bytes | None) -> bool:
    if data is None:
        return False
    if b"\x00" in data[:8192]:
        return True
    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


def _terminated(lines: list[str]) -> list[str]:
    if lines and not lines[-1].endswith("\n"):
        return lines[:-1] + [lines[-1] + "\n"]
    return lines


def _markers(base: list[str], ours: list[str], theirs: list[str]) -> list[str]:
    return (
        [f"{START_MARKER} ours\n"]
        + _terminated(ours)
        + [f"{BASE_MARKER} base\n"]
        + _terminated(base)
        + [f"{MID_MARKER}\n"]
        + _terminated(theirs)
        + [f"{END_MARKER} theirs\n"]
    )


def _whole_file(ctx: ConflictContext) -> MergeOutcome:
    """Resolve a file that cannot be merged line by line."""
    if ctx.strategy is ConflictStrategy.OURS:
        return Clean(ctx.path, ctx.ours)
    if ctx.strategy is ConflictStrategy.THEIRS:
        return Clean(ctx.path, ctx.theirs)
    if any(is_binary(side) for side in (ctx.base, ctx.ours, ctx.theirs)):
        return Failed(ctx.path, "binary content")
    return Failed(ctx.path, "no common base")


def resolve(ctx: ConflictContext) -> MergeOutcome:
    """Three-way merge one file according to ctx.strategy."""
    if ctx.ours == ctx.theirs:
        return Clean(ctx.path, ctx.ours)
    if ctx.base == ctx.ours:
        return Clean(ctx.path, ctx.theirs)
    if ctx.base == ctx.theirs:
        return Clean(ctx.path, ctx.ours)

    # Both sides changed the file, differently.
    if ctx.base is None or any(is_binary(side) for side in (ctx.base, ctx.ours, ctx.theirs)):
        return _whole_file(ctx)

    base = ctx.base.decode("utf-8").splitlines(keepends=True)
    if ctx.ours is None or ctx.theirs is None:
        # Deleted on one side, modified on the other: one conflicting region.
        ours = ctx.ours.decode("utf-8").splitlines(keepends=True) if ctx.ours is not None else []
        theirs = ctx.theirs.decode("utf-8").splitlines(keepends=True) if ctx.theirs is not None else []
        if ctx.strategy is ConflictStrategy.OURS:
            return Clean(ctx.path, ctx.ours)
        if ctx.strategy is ConflictStrategy.THEIRS:
            return Clean(ctx.path, ctx.theirs)
        if ctx.strategy is ConflictStrategy.UNION:
            return Clean(ctx.path, "".join(ours + theirs).encode("utf-8"))
        return Conflicted(ctx.path, "".join(_markers(base, ours, theirs)).encode("utf-8"), 1)

    ours = ctx.ours.decode("utf-8").splitlines(keepends=True)
    theirs = ctx.theirs.decode("utf-8").splitlines(keepends=True)
    resolver = REGION_RESOLVERS[ctx.strategy]

    merged: list[str] = []
    conflicts = 0
    for group in merge3.Merge3(base, ours, theirs).merge_groups():
        if group[0] != "conflict":
            merged.extend(group[1])
            continue
        _, base_lines, our_lines, their_lines = group
        kept = resolver(list(base_lines), list(our_lines), list(their_lines))
        if kept is None:
            conflicts += 1
            if merged:
                merged = _terminated(merged)
            merged.extend(_markers(list(base_lines), list(our_lines), list(their_lines)))
        else:
            merged.extend(kept)

    data = "".join(merged).encode("utf-8")
    if conflicts:
        logger.info("%s: %d conflicting region(s) left for manual resolution", ctx.path, conflicts)
        return Conflicted(ctx.path, data, conflicts)
    return Clean(ctx.path, data)
