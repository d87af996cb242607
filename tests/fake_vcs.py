"""In-memory VcsPort used to exercise the extractor and orchestrator without git."""

import hashlib
from collections.abc import Sequence

from rail_sync.errors import VcsCommandFailed
from rail_sync.vcs import (
    FILE_MODE,
    BlobRequest,
    BlobResult,
    CommitRecord,
    Signature,
    TreeEntry,
    VcsPort,
    git_blob_sha,
)

# fetch only moves rail's tracking refs and is checked separately
MUTATING = {
    "write_blob",
    "create_commit",
    "update_ref",
    "create_branch",
    "add_note",
    "merge_notes",
    "add_remote",
    "push",
}


def _filter(files: dict[str, TreeEntry], paths: Sequence[str]) -> dict[str, TreeEntry]:
    if not paths:
        return dict(files)
    prefixes = [p.rstrip("/") + "/" for p in paths]
    return {k: v for k, v in files.items() if k in paths or any(k.startswith(p) for p in prefixes)}


class FakeVcs(VcsPort):
    """A tiny repository: blobs, commits with full file maps, refs and notes."""

    def __init__(self, name: str = "repo"):
        self.name = name
        self.blobs: dict[str, bytes] = {}
        self.commits: dict[str, CommitRecord] = {}
        self.trees: dict[str, dict[str, TreeEntry]] = {}
        self.refs: dict[str, str] = {}
        self.notes: dict[str, dict[str, str]] = {}
        self.remotes: dict[str, "FakeVcs"] = {}
        self.calls: list[str] = []
        self._clock = 1_700_000_000

    # --- test helpers ---

    @property
    def writes(self) -> list[str]:
        return [c for c in self.calls if c in MUTATING]

    @property
    def pushes(self) -> int:
        return self.calls.count("push")

    def connect(self, name: str, other: "FakeVcs") -> None:
        self.remotes[name] = other

    def commit(
        self,
        files: dict[str, str | bytes | None],
        message: str = "change",
        branch: str = "main",
        author: str = "Dev",
        parents: Sequence[str] | None = None,
    ) -> str:
        """Commit file changes (None deletes) on top of a branch and advance it."""
        ref = f"refs/heads/{branch}"
        if parents is None:
            parents = [self.refs[ref]] if ref in self.refs else []
        tree = dict(self.trees[parents[0]]) if parents else {}
        for path, content in files.items():
            if content is None:
                tree.pop(path, None)
                continue
            data = content.encode() if isinstance(content, str) else content
            sha = git_blob_sha(data)
            self.blobs[sha] = data
            tree[path] = TreeEntry(FILE_MODE, sha)
        self._clock += 60
        sig = Signature(author, f"{author.lower()}@example.com", self._clock)
        sha = self._store_commit(tree, parents, sig, sig, message)
        self.refs[ref] = sha
        return sha

    def merge(self, branch: str, other: str, message: str = "merge", files: dict | None = None) -> str:
        """Create a merge commit of other into branch, taking other's tree plus files."""
        ours, theirs = self.refs[f"refs/heads/{branch}"], self.refs[f"refs/heads/{other}"]
        merged = {**self.trees[ours], **self.trees[theirs]}
        self._clock += 60
        sig = Signature("Dev", "dev@example.com", self._clock)
        sha = self._store_commit(merged, [ours, theirs], sig, sig, message)
        self.refs[f"refs/heads/{branch}"] = sha
        if files:
            return self.commit(files, message=f"{message} fixup", branch=branch)
        return sha

    def file(self, ref: str, path: str) -> str | None:
        sha = self.resolve_ref(ref)
        entry = self.trees[sha].get(path) if sha else None
        return self.blobs[entry.sha].decode() if entry else None

    def _store_commit(self, tree, parents, author: Signature, committer: Signature, message: str) -> str:
        h = hashlib.sha1()
        for path, entry in sorted(tree.items()):
            h.update(f"{entry.mode} {entry.sha} {path}\n".encode())
        h.update(f"{' '.join(parents)}|{author}|{committer}|{message}".encode())
        sha = h.hexdigest()
        self.commits[sha] = CommitRecord(
            sha=sha,
            author=author.name,
            email=author.email,
            timestamp=author.timestamp,
            message=message,
            parents=tuple(parents),
            committer=committer.name,
            committer_email=committer.email,
            committer_timestamp=committer.timestamp,
        )
        self.trees[sha] = dict(tree)
        return sha

    def _ancestors(self, sha: str | None) -> set[str]:
        seen: set[str] = set()
        stack = [sha] if sha else []
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.commits[current].parents)
        return seen

    def _topo(self, head: str) -> list[str]:
        order: list[str] = []
        seen: set[str] = set()
        stack: list[tuple[str, bool]] = [(head, False)]
        while stack:
            sha, expanded = stack.pop()
            if expanded:
                order.append(sha)
                continue
            if sha in seen:
                continue
            seen.add(sha)
            stack.append((sha, True))
            for parent in reversed(self.commits[sha].parents):
                if parent not in seen:
                    stack.append((parent, False))
        return order

    def _copy_objects(self, other: "FakeVcs") -> None:
        self.blobs.update(other.blobs)
        self.commits.update(other.commits)
        self.trees.update(other.trees)

    # --- reads ---

    def resolve_ref(self, ref: str) -> str | None:
        self.calls.append("resolve_ref")
        if ref in self.notes:
            return hashlib.sha1(repr(sorted(self.notes[ref].items())).encode()).hexdigest()
        if ref in self.refs:
            return self.refs[ref]
        if f"refs/heads/{ref}" in self.refs:
            return self.refs[f"refs/heads/{ref}"]
        return ref if ref in self.commits else None

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        self.calls.append("is_ancestor")
        return ancestor in self._ancestors(descendant)

    def list_commits(self, head, paths, since=None):
        self.calls.append("list_commits")
        excluded = self._ancestors(since)
        records = []
        for sha in self._topo(head):
            if sha in excluded:
                continue
            commit = self.commits[sha]
            mine = _filter(self.trees[sha], paths)
            if not commit.parents:
                touches = bool(mine)
            else:
                touches = any(_filter(self.trees[p], paths) != mine for p in commit.parents)
            if touches:
                records.append(commit)
        return records

    def tree_differs(self, a, b, paths):
        self.calls.append("tree_differs")
        return _filter(self.trees[a], paths) != _filter(self.trees[b], paths)

    def list_tree(self, commit, paths):
        self.calls.append("list_tree")
        return _filter(self.trees[commit], paths)

    def read_blob(self, commit, path):
        return self.read_blobs([BlobRequest(commit, path)])[0].data

    def read_blobs(self, requests):
        self.calls.append("read_blobs")
        results = []
        for request in requests:
            if request.path is None:
                data = self.blobs.get(request.commit)
            else:
                entry = self.trees.get(request.commit, {}).get(request.path)
                data = self.blobs[entry.sha] if entry else None
            results.append(BlobResult(request, data))
        return results

    def read_commits(self, shas):
        self.calls.append("read_commits")
        return [self.commits[sha] for sha in shas]

    def existing_commits(self, shas):
        self.calls.append("existing_commits")
        return [sha for sha in shas if sha in self.commits]

    def read_notes(self, ref):
        self.calls.append("read_notes")
        return dict(self.notes.get(ref, {}))

    def remote_url(self, name):
        return name if name in self.remotes else None

    # --- writes ---

    def write_blob(self, data):
        self.calls.append("write_blob")
        sha = git_blob_sha(data)
        self.blobs[sha] = data
        return sha

    def create_commit(self, files, parents, author, committer, message):
        self.calls.append("create_commit")
        missing = [p for p, e in files.items() if e.sha not in self.blobs]
        if missing:
            raise VcsCommandFailed(["git", "update-index"], f"invalid object for {missing[0]}")
        return self._store_commit(files, list(parents), author, committer, message)

    def update_ref(self, ref, new_sha, old_sha=None):
        self.calls.append("update_ref")
        if ref.startswith("refs/notes/"):
            other = next(r for r in self.notes if self.resolve_ref(r) == new_sha)
            self.notes[ref] = dict(self.notes[other])
            return
        if old_sha is not None and self.refs.get(ref) != old_sha:
            raise VcsCommandFailed(["git", "update-ref", ref], "cannot lock ref: reference changed")
        self.refs[ref] = new_sha

    def create_branch(self, name, sha):
        self.calls.append("create_branch")
        ref = f"refs/heads/{name}"
        if ref in self.refs:
            raise VcsCommandFailed(["git", "update-ref", ref], "reference already exists")
        self.refs[ref] = sha

    def add_note(self, ref, commit, text):
        self.calls.append("add_note")
        notes = self.notes.setdefault(ref, {})
        if commit in notes:
            raise VcsCommandFailed(["git", "notes", "add"], f"Cannot add notes. Found existing notes for object {commit}.")
        notes[commit] = text

    def merge_notes(self, ref, other_ref):
        self.calls.append("merge_notes")
        local = self.notes.setdefault(ref, {})
        for commit, text in self.notes.get(other_ref, {}).items():
            if commit not in local:
                local[commit] = text
            elif local[commit] != text:
                local[commit] = local[commit].rstrip("\n") + "\n" + text

    def add_remote(self, name, url):
        self.calls.append("add_remote")

    def _refspec(self, spec: str) -> tuple[str, str, bool]:
        force = spec.startswith("+")
        src, _, dst = spec.lstrip("+").partition(":")
        return src, dst or src, force

    def fetch(self, remote, refspecs):
        self.calls.append("fetch")
        other = self.remotes[remote]
        self._copy_objects(other)
        for spec in refspecs:
            src, dst, _ = self._refspec(spec)
            if src in other.notes:
                self.notes[dst] = dict(other.notes[src])
            elif src in other.refs:
                self.refs[dst] = other.refs[src]
            else:
                raise VcsCommandFailed(["git", "fetch", remote, spec], f"fatal: couldn't find remote ref {src}")

    def push(self, remote, refspecs):
        self.calls.append("push")
        other = self.remotes[remote]
        other._copy_objects(self)
        for spec in refspecs:
            src, dst, force = self._refspec(spec)
            if src in self.notes:
                other.notes[dst] = dict(self.notes[src])
                continue
            sha = self.resolve_ref(src)
            current = other.refs.get(dst)
            if current and not force and current not in other._ancestors(sha):
                raise VcsCommandFailed(["git", "push", remote, spec], " ! [rejected] (non-fast-forward)")
            other.refs[dst] = sha
