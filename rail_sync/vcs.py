"""
Version control capability interface.

The sync engine only talks to git through VcsPort. SystemGit (git_ops.py)
is the production driver; the test suite ships an in-memory driver.
"""

import hashlib
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from contextlib import nullcontext
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

FILE_MODE = "100644"

ORIGIN_TRAILER = "Rail-Origin"
_ORIGIN_RE = re.compile(rf"^{ORIGIN_TRAILER}:\s*(mono|split)@([0-9a-f]{{7,64}})\s*$", re.MULTILINE)


class SyncDirection(str, Enum):
    """Which way a sync run moves commits."""

    MONO_TO_SPLIT = "mono-to-split"
    SPLIT_TO_MONO = "split-to-mono"


@dataclass(frozen=True)
class Signature:
    """Identity and time stamped onto a written commit."""

    name: str
    email: str
    timestamp: int
    tz_offset: str = "+0000"

    def as_git_date(self) -> str:
        return f"{self.timestamp} {self.tz_offset}"


@dataclass(frozen=True)
class CommitRecord:
    """Read-only view of a commit."""

    sha: str
    author: str
    email: str
    timestamp: int
    message: str
    parents: tuple[str, ...] = ()
    committer: str = ""
    committer_email: str = ""
    committer_timestamp: int = 0

    @property
    def short_sha(self) -> str:
        return self.sha[:8]

    @property
    def summary(self) -> str:
        return self.message.split("\n", 1)[0]

    @property
    def is_merge(self) -> bool:
        return len(self.parents) > 1

    @property
    def authored_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)

    @property
    def author_signature(self) -> Signature:
        return Signature(self.author, self.email, self.timestamp)

    def origin(self) -> tuple[str, str] | None:
        """Return (side, sha) from a Rail-Origin trailer, if present."""
        match = _ORIGIN_RE.search(self.message)
        if match is None:
            return None
        return match.group(1), match.group(2)


@dataclass(frozen=True)
class TreeEntry:
    """A file in a tree listing."""

    mode: str
    sha: str


@dataclass(frozen=True)
class BlobRequest:
    """One item of a batch read: a file at a commit, or a blob by sha when path is None."""

    commit: str
    path: str | None = None

    @property
    def spec(self) -> str:
        if self.path is None:
            return self.commit
        return f"{self.commit}:{self.path}"


@dataclass(frozen=True)
class BlobResult:
    """Outcome of one batch read item."""

    request: BlobRequest
    data: bytes | None

    @property
    def missing(self) -> bool:
        return self.data is None


def git_blob_sha(data: bytes) -> str:
    """Compute the object id git assigns to a blob (SHA-1 object format)."""
    header = f"blob {len(data)}\0".encode()
    return hashlib.sha1(header + data).hexdigest()


def with_origin_trailer(message: str, side: str, sha: str) -> str:
    """Append a Rail-Origin trailer naming where a transplanted commit came from."""
    body = message.rstrip("\n")
    return f"{body}\n\n{ORIGIN_TRAILER}: {side}@{sha}\n"


class VcsPort(ABC):
    """Minimal capability surface the sync engine needs from git."""

    # --- reads ---

    @abstractmethod
    def resolve_ref(self, ref: str) -> str | None:
        """Resolve a ref or revision to a commit sha, or None if it does not exist."""

    @abstractmethod
    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        """Check whether ancestor is reachable from descendant."""

    @abstractmethod
    def list_commits(
        self, head: str, paths: Sequence[str], since: str | None = None
    ) -> list[CommitRecord]:
        """List commits reachable from head but not since that touch paths, oldest first."""

    @abstractmethod
    def tree_differs(self, a: str, b: str, paths: Sequence[str]) -> bool:
        """Check whether two commits differ at the given paths."""

    @abstractmethod
    def list_tree(self, commit: str, paths: Sequence[str]) -> dict[str, TreeEntry]:
        """List files under paths at a commit, keyed by repository path."""

    @abstractmethod
    def read_blob(self, commit: str, path: str) -> bytes | None:
        """Read one file at a commit; None when absent."""

    @abstractmethod
    def read_blobs(self, requests: Sequence[BlobRequest]) -> list[BlobResult]:
        """Read many files in one round trip, preserving input order."""

    @abstractmethod
    def read_commits(self, shas: Sequence[str]) -> list[CommitRecord]:
        """Read commit metadata for many commits, preserving input order."""

    @abstractmethod
    def existing_commits(self, shas: Sequence[str]) -> list[str]:
        """Return the shas that name commits in this repository, in input order."""

    @abstractmethod
    def read_notes(self, ref: str) -> dict[str, str]:
        """Return annotated commit sha -> note text for a notes ref."""

    @abstractmethod
    def remote_url(self, name: str) -> str | None:
        """Return the configured URL of a remote, or None."""

    @abstractmethod
    def fetch(self, remote: str, refspecs: Sequence[str]) -> None:
        """
        Fetch refspecs from a remote (name or URL).

        Callers only fetch into rail's tracking refs (refs/rail/, refs/notes/rail-remote/),
        which mirror remote state; a fetch therefore counts as a read.
        """

    def deadline(self, seconds: float):
        """Bound all calls made inside the block by an overall deadline."""
        return nullcontext(self)

    # --- writes ---

    @abstractmethod
    def write_blob(self, data: bytes) -> str:
        """Store bytes as a blob and return its sha."""

    @abstractmethod
    def create_commit(
        self,
        files: dict[str, TreeEntry],
        parents: Sequence[str],
        author: Signature,
        committer: Signature,
        message: str,
    ) -> str:
        """Write a commit whose tree holds exactly the given files."""

    @abstractmethod
    def update_ref(self, ref: str, new_sha: str, old_sha: str | None = None) -> None:
        """Point a ref at a commit, optionally checking its previous value."""

    @abstractmethod
    def create_branch(self, name: str, sha: str) -> None:
        """Create a new branch; fails if it already exists."""

    @abstractmethod
    def add_note(self, ref: str, commit: str, text: str) -> None:
        """Attach a note to a commit."""

    @abstractmethod
    def merge_notes(self, ref: str, other_ref: str) -> None:
        """Merge another notes ref into ref with the union strategy."""

    @abstractmethod
    def add_remote(self, name: str, url: str) -> None:
        """Add or repoint a named remote."""

    @abstractmethod
    def push(self, remote: str, refspecs: Sequence[str]) -> None:
        """Push refspecs to a remote (name or URL)."""
