"""
History extraction for sync runs.

Produces the ordered, path-filtered, not-yet-mapped commit sequence that a
sync run has to transplant.
"""

import logging
from collections.abc import Callable, Sequence

from .vcs import CommitRecord, VcsPort

logger = logging.getLogger(__name__)


def _never(_sha: str) -> bool:
    return False


class HistoryExtractor:
    """Walks history through a VcsPort and filters it down to sync candidates."""

    def __init__(self, vcs: VcsPort):
        self.vcs = vcs

    def extract(
        self,
        head: str,
        paths: Sequence[str],
        since: str | None = None,
        is_mapped: Callable[[str], bool] = _never,
        skip_origin: str | None = None,
    ) -> list[CommitRecord]:
        """
        Return commits touching paths between since and head, oldest first.

        A commit is kept when its tree differs from every one of its parents
        at paths. Commits for which is_mapped() is true were already synced
        and are dropped, as are commits whose Rail-Origin trailer names
        skip_origin (they were transplanted from that side by an earlier run).
        The VCS topological order is kept as is.
        """
        candidates = self.vcs.list_commits(head, paths, since=since)
        selected = []
        for commit in candidates:
            if is_mapped(commit.sha):
                logger.debug("Skipping %s (already mapped)", commit.short_sha)
                continue
            origin = commit.origin()
            if skip_origin and origin is not None and origin[0] == skip_origin:
                logger.debug("Skipping %s (transplanted from %s@%s)", commit.short_sha, *origin)
                continue
            if commit.is_merge and not self._differs_from_all_parents(commit, paths):
                logger.debug("Skipping merge %s (matches a parent at paths)", commit.short_sha)
                continue
            selected.append(commit)
        logger.info(
            "Found %d new commits touching %s (%d candidates)",
            len(selected),
            ", ".join(paths) or "<all>",
            len(candidates),
        )
        return selected

    def _differs_from_all_parents(self, commit: CommitRecord, paths: Sequence[str]) -> bool:
        return all(self.vcs.tree_differs(parent, commit.sha, paths) for parent in commit.parents)
