"""
Commit mapping store backed by git notes.

Every synced pair is recorded as a note on the mono commit under
refs/notes/rail/<split>. A note holds one or more "<mono-sha> <split-sha>"
lines. Notes travel with the commits through fetch and push and survive
rebases of unrelated history, so no state file is needed.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from .errors import AmbiguousMapping, VcsCommandFailed, VcsParseError
from .security import RefGuard
from .vcs import VcsPort

logger = logging.getLogger(__name__)

NOTES_PREFIX = "refs/notes/rail"
REMOTE_NOTES_PREFIX = "refs/notes/rail-remote"


@dataclass(frozen=True)
class MappingEntry:
    """A mono commit and the split commit it was synced to or from."""

    mono_sha: str
    split_sha: str

    def to_line(self) -> str:
        return f"{self.mono_sha} {self.split_sha}"


def parse_note(annotated: str, text: str) -> list[MappingEntry]:
    """Parse the lines of one mapping note."""
    entries = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        parts = line.split()
        if len(parts) != 2:
            raise VcsParseError(["git", "notes", "show", annotated], f"malformed mapping line {line!r}")
        entries.append(MappingEntry(parts[0], parts[1]))
    return entries


def notes_ref(split: str) -> str:
    return f"{NOTES_PREFIX}/{split}"


class MappingStore:
    """Per-split mapping between mono and split commits."""

    def __init__(self, vcs: VcsPort, split_name: str, guard: RefGuard | None = None):
        self.vcs = vcs
        self.split = split_name
        self.ref = notes_ref(split_name)
        self.remote_ref = f"{REMOTE_NOTES_PREFIX}/{split_name}"
        self.guard = guard
        self._forward: dict[str, str] | None = None
        # Several mono commits can share one split commit (steps that left the split unchanged).
        self._reverse: dict[str, list[str]] = {}
        self._newest: dict[str, str] = {}

    def _before_write(self) -> None:
        if self.guard is not None:
            self.guard.check(self.ref)

    def _read(self, ref: str) -> list[MappingEntry]:
        entries = []
        for annotated, text in self.vcs.read_notes(ref).items():
            entries.extend(parse_note(annotated, text))
        return entries

    def _load(self) -> dict[str, str]:
        if self._forward is None:
            self._set(self.merge(self._read(self.ref), [], self.split))
            logger.debug("Loaded %d mappings from %s", len(self._forward), self.ref)
        return self._forward

    def _set(self, forward: dict[str, str]) -> None:
        self._forward = forward
        self._reverse = {}
        self._newest = {}
        for mono, split in forward.items():
            self._reverse.setdefault(split, []).append(mono)

    def _newest_mono(self, split_sha: str) -> str:
        """Pick the latest of the mono commits mapped to one split commit."""
        if split_sha in self._newest:
            return self._newest[split_sha]
        candidates = sorted(self._reverse[split_sha])
        if len(candidates) > 1:
            # Commits that never reached this clone cannot be ordered.
            present = self.vcs.existing_commits(candidates) or candidates
            newest = present[0]
            for sha in present[1:]:
                if self.vcs.is_ancestor(newest, sha):
                    newest = sha
            candidates = [newest]
        self._newest[split_sha] = candidates[0]
        return candidates[0]

    def entries(self) -> list[MappingEntry]:
        return [MappingEntry(mono, split) for mono, split in self._load().items()]

    def __len__(self) -> int:
        return len(self._load())

    def get(self, mono_sha: str) -> str | None:
        """Get the split commit a mono commit maps to."""
        return self._load().get(mono_sha)

    def get_mono(self, split_sha: str) -> str | None:
        """Get the mono commit a split commit maps to; the newest one when several do."""
        self._load()
        if split_sha not in self._reverse:
            return None
        return self._newest_mono(split_sha)

    def has_mono(self, sha: str) -> bool:
        return sha in self._load()

    def has_split(self, sha: str) -> bool:
        self._load()
        return sha in self._reverse

    def put(self, mono_sha: str, split_sha: str) -> bool:
        """
        Record a mapping as a note on the mono commit.

        Returns False when the identical pair is already stored. A different
        value for an existing key raises AmbiguousMapping; nothing is ever
        overwritten.
        """
        existing = self.get(mono_sha)
        if existing == split_sha:
            return False
        if existing is not None:
            raise AmbiguousMapping(self.split, mono_sha, existing, split_sha)
        self._before_write()
        self.vcs.add_note(self.ref, mono_sha, MappingEntry(mono_sha, split_sha).to_line() + "\n")
        self._forward[mono_sha] = split_sha
        self._reverse.setdefault(split_sha, []).append(mono_sha)
        self._newest.pop(split_sha, None)
        return True

    @staticmethod
    def merge(
        local: Iterable[MappingEntry], remote: Iterable[MappingEntry], split: str = ""
    ) -> dict[str, str]:
        """
        Union two entry sets and check their integrity.

        Raises AmbiguousMapping when the same mono commit maps to two
        different split commits, whichever side the entries came from.
        """
        merged: dict[str, str] = {}
        for entry in [*local, *remote]:
            existing = merged.setdefault(entry.mono_sha, entry.split_sha)
            if existing != entry.split_sha:
                raise AmbiguousMapping(split, entry.mono_sha, existing, entry.split_sha)
        return merged

    def fetch_and_merge(self, remote: str, apply: bool = False) -> int:
        """
        Fetch the remote notes ref and merge it into the local one.

        The integrity scan runs on every call. The local notes ref is only
        updated when apply is true; otherwise the union is kept in memory so
        a dry run plans against the same mappings an applied run would see.
        Returns the number of entries the remote added.
        """
        refspec = f"+{self.ref}:{self.remote_ref}"
        if self.guard is not None:
            self.guard.check_fetch(refspec)
        try:
            self.vcs.fetch(remote, [refspec])
        except VcsCommandFailed as e:
            if "couldn't find remote ref" in e.stderr:
                logger.debug("Remote %s has no %s yet", remote, self.ref)
                return 0
            raise

        local = self.entries()
        merged = self.merge(local, self._read(self.remote_ref), self.split)
        added = len(merged) - len(local)
        if added == 0:
            return 0

        logger.info("Remote %s adds %d mappings for %s", remote, added, self.split)
        if apply:
            self._before_write()
            remote_tip = self.vcs.resolve_ref(self.remote_ref)
            if self.vcs.resolve_ref(self.ref) is None:
                self.vcs.update_ref(self.ref, remote_tip)
            else:
                self.vcs.merge_notes(self.ref, self.remote_ref)
        self._set(merged)
        return added

    def push(self, remote: str) -> None:
        """Push the notes ref to a remote."""
        if self.vcs.resolve_ref(self.ref) is None:
            return
        self.vcs.push(remote, [f"{self.ref}:{self.ref}"])

    def anchor(
        self,
        head: str | None,
        side: str = "split",
        accept: Callable[[MappingEntry], bool] | None = None,
    ) -> MappingEntry | None:
        """
        Return the most recent mapping reachable from head.

        side names which repository head belongs to. The newest commit in
        head's history that carries a mapping, and passes accept when given,
        wins.
        """
        if head is None:
            return None
        self._load()
        for commit in reversed(self.vcs.list_commits(head, [])):
            if side == "split":
                mono = self.get_mono(commit.sha)
                entry = MappingEntry(mono, commit.sha) if mono else None
            else:
                split = self._forward.get(commit.sha)
                entry = MappingEntry(commit.sha, split) if split else None
            if entry is not None and (accept is None or accept(entry)):
                return entry
        return None
