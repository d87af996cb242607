"""
Ref write policy for sync runs.

Mono-to-split runs come from the trusted side and may update the split
branch directly. Split-to-mono runs carry untrusted content: they may only
create review branches under rail/sync/ and never touch a protected branch.
"""

import logging
from collections.abc import Sequence

from .errors import SecurityViolation
from .vcs import SyncDirection

logger = logging.getLogger(__name__)

REVIEW_PREFIX = "rail/sync/"
DEFAULT_REVIEW_TEMPLATE = "rail/sync/{split}/{timestamp}"
DEFAULT_PROTECTED = ("main", "master")


def branch_name(ref: str) -> str:
    """Strip refs/heads/ from a ref, if present."""
    return ref.removeprefix("refs/heads/")


def review_branch_name(split: str, timestamp: int, template: str = DEFAULT_REVIEW_TEMPLATE) -> str:
    """Render the review branch name for a split-to-mono run."""
    name = template.format(split=split, timestamp=timestamp)
    if not name.startswith(REVIEW_PREFIX):
        raise SecurityViolation(name, f"review branches must live under {REVIEW_PREFIX}")
    return name


class RefGuard:
    """Checks every ref a sync run is about to write in the mono repository."""

    # rail's own bookkeeping refs, never checked out or reviewed
    INTERNAL_PREFIXES = ("refs/rail/", "refs/notes/rail/", "refs/notes/rail-remote/")
    # copies of remote state; the only refs a fetch may write, dry runs included
    TRACKING_PREFIXES = ("refs/rail/", "refs/notes/rail-remote/")

    def __init__(self, direction: SyncDirection, protected: Sequence[str] = DEFAULT_PROTECTED):
        self.direction = direction
        self.protected = frozenset(protected)

    def check_fetch(self, refspec: str) -> str:
        """Raise SecurityViolation unless a fetch refspec lands in a tracking ref."""
        destination = refspec.lstrip("+").partition(":")[2]
        if not destination.startswith(self.TRACKING_PREFIXES):
            raise SecurityViolation(destination or refspec, "fetches only update rail tracking refs")
        return refspec

    def check(self, ref: str) -> str:
        """Raise SecurityViolation unless the write is allowed; return the ref."""
        if ref.startswith(self.INTERNAL_PREFIXES):
            return ref
        if ref.startswith("refs/") and not ref.startswith("refs/heads/"):
            raise SecurityViolation(ref, "sync runs only write branches and rail refs")
        branch = branch_name(ref)
        if branch in self.protected:
            raise SecurityViolation(ref, "protected branch")
        if self.direction is SyncDirection.SPLIT_TO_MONO and not branch.startswith(REVIEW_PREFIX):
            raise SecurityViolation(ref, f"split-to-mono writes are limited to {REVIEW_PREFIX}* branches")
        logger.debug("Ref write allowed: %s", ref)
        return ref
