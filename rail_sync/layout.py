"""
Path mapping between the monorepo and a split repository.

In single mode the crate directory becomes the split root
(crates/foo/src/lib.rs -> src/lib.rs). In combined mode every path keeps
its workspace-relative location.
"""

import fnmatch
import posixpath
from collections.abc import Sequence
from pathlib import PurePosixPath

from .config import SplitSpec


def _matches(path: str, pattern: str, parts: Sequence[str]) -> bool:
    # Remove trailing slash for directory patterns
    clean = pattern.rstrip("/")
    if fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(path, clean):
        return True
    # Also check if any path component matches
    return any(fnmatch.fnmatch(part, clean) for part in parts)


def should_include_file(
    rel_path: str,
    include: Sequence[str],
    exclude: Sequence[str],
    global_exclude: Sequence[str] = (),
) -> bool:
    """Determine if a file should be synced based on patterns."""
    parts = PurePosixPath(rel_path).parts
    for pattern in [*global_exclude, *exclude]:
        if _matches(rel_path, pattern, parts):
            return False

    # If include patterns are given, the file must match one
    if include:
        return any(fnmatch.fnmatch(rel_path, pattern) for pattern in include)
    return True


class SplitLayout:
    """Maps file paths of one split between the two repositories."""

    def __init__(self, split: SplitSpec, global_exclude: Sequence[str] = ()):
        self.split = split
        self.mode = split.mode
        self.paths = tuple(split.paths)
        self.global_exclude = tuple(global_exclude)

    @property
    def split_paths(self) -> list[str]:
        """Paths to walk in the split repository ([] means the whole tree)."""
        return [] if self.mode == "single" else list(self.paths)

    def _owner(self, mono_path: str) -> str | None:
        for root in self.paths:
            if mono_path.startswith(root + "/"):
                return root
        return None

    def _included(self, root: str, mono_path: str) -> bool:
        rel = mono_path[len(root) + 1 :]
        return should_include_file(rel, self.split.include, self.split.exclude, self.global_exclude)

    def to_split(self, mono_path: str) -> str | None:
        """Map a mono path to its split path, or None when it is not synced."""
        root = self._owner(mono_path)
        if root is None or not self._included(root, mono_path):
            return None
        if self.mode == "single":
            return mono_path[len(root) + 1 :]
        return mono_path

    def to_mono(self, split_path: str) -> str | None:
        """Map a split path to its mono path, or None when it is not synced."""
        if self.mode == "single":
            mono_path = posixpath.join(self.paths[0], split_path)
        else:
            mono_path = split_path
        root = self._owner(mono_path)
        if root is None or not self._included(root, mono_path):
            return None
        return mono_path
