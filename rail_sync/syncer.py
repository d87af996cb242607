"""
Main syncer logic for two-way synchronization between the monorepo and a split.

Both directions run the same pipeline: detect new commits, filter their
trees down to the split's paths, rewrite manifests, three-way merge onto the
target, write commits, record mappings and finalize. Everything up to the
commit step is computed without writing, so a dry run and an applied run
share one plan.

Mono-to-split runs are trusted and push straight to the split branch.
Split-to-mono runs only ever create a review branch under rail/sync/.
"""

import logging
import posixpath
import time
from collections.abc import Callable
from contextlib import nullcontext
from dataclasses import dataclass, field

from rich.console import Console

from .config import RailConfig, SplitSpec
from .conflict import (
    Clean,
    ConflictContext,
    ConflictStrategy,
    Conflicted,
    has_conflict_markers,
    is_binary,
    resolve,
)
from .errors import ConfigError, ConflictUnresolved, TransformError, VcsCommandFailed, VcsParseError
from .history import HistoryExtractor
from .layout import SplitLayout
from .locks import split_lock
from .mapping import MappingEntry, MappingStore
from .plan import CREATE, SKIP_UNCHANGED, Plan, PlannedCommit, SyncResult, render_plan, render_result
from .security import RefGuard, review_branch_name
from .transform import MANIFEST_NAME, ManifestTransform, PackageInfo, read_package, read_workspace
from .vcs import (
    BlobRequest,
    CommitRecord,
    Signature,
    SyncDirection,
    TreeEntry,
    VcsPort,
    git_blob_sha,
    with_origin_trailer,
)

logger = logging.getLogger(__name__)

Files = dict[str, TreeEntry]

SPLIT_TRACKING_PREFIX = "refs/rail/split"
MARKERS_LEFT = "conflict markers left in file"


@dataclass(frozen=True)
class _Workspace:
    """Managed packages and the root [workspace] table at one mono commit."""

    packages: dict[str, PackageInfo]
    table: dict
    root_sha: str | None


@dataclass
class _Step:
    """A planned commit together with the full target tree it produces."""

    commit: CommitRecord
    files: Files
    changed: bool


@dataclass
class _Prepared:
    plan: Plan
    steps: list[_Step] = field(default_factory=list)
    mono_head: str | None = None
    split_tip: str | None = None


class SyncOrchestrator:
    """Runs sync passes for one split."""

    def __init__(
        self,
        vcs: VcsPort,
        config: RailConfig,
        split: SplitSpec,
        strategy: ConflictStrategy | None = None,
        console: Console | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.vcs = vcs
        self.config = config
        self.split = split
        self.strategy = strategy or split.conflict_strategy
        self.console = console or Console()
        self.clock = clock
        self.layout = SplitLayout(split, config.global_exclude_patterns)
        self.extractor = HistoryExtractor(vcs)
        self.split_ref = f"{SPLIT_TRACKING_PREFIX}/{split.name}"
        self._blobs: dict[str, bytes] = {}
        self._pending: dict[str, bytes] = {}
        self._workspaces: dict[str, _Workspace] = {}
        self._transformed: dict[tuple, tuple[TreeEntry, list[str], list[str]]] = {}

    # --- entry points ---

    def plan(self, direction: SyncDirection) -> Plan:
        """Compute what a sync would do without writing anything."""
        return self.run(direction, apply=False).plan

    def run(self, direction: SyncDirection, apply: bool = False) -> SyncResult:
        """
        Perform one sync pass.

        Without apply this is a dry run: the plan is computed and rendered,
        and no mutating VCS operation is called. With apply, the whole run
        aborts on the first error; nothing is pushed and no branch is created
        unless every commit could be built.
        """
        guard = RefGuard(direction, self.split.protected_branches)
        store = MappingStore(self.vcs, self.split.name, guard=guard)
        git_dir = getattr(self.vcs, "git_dir", None)
        repo_key = None if git_dir is not None else str(id(self.vcs))

        with split_lock(git_dir, self.split.name, repo_key=repo_key):
            with self.vcs.deadline(self.config.run_timeout) if self.config.run_timeout else nullcontext():
                logger.info(
                    "Sync %s %s (%s)", self.split.name, direction.value, "apply" if apply else "dry run"
                )
                prepared = self._prepare(direction, store, apply)
                render_plan(prepared.plan, self.console)

                if not apply:
                    result = SyncResult(prepared.plan, applied=False)
                    render_result(result, self.console)
                    return result

                unresolved = prepared.plan.unresolved()
                if unresolved:
                    raise ConflictUnresolved(unresolved, self._unresolved_reason(prepared.plan))

                if direction is SyncDirection.MONO_TO_SPLIT:
                    result = self._apply_mono_to_split(prepared, store, guard)
                else:
                    result = self._apply_split_to_mono(prepared, store, guard)
                render_result(result, self.console, self.config.mono_remote)
                return result

    # --- DetectNew ---

    def _fetch_split(self, guard: RefGuard) -> str | None:
        """Fetch the split branch into a private tracking ref and return its tip."""
        refspec = guard.check_fetch(f"+refs/heads/{self.split.branch}:{self.split_ref}")
        try:
            self.vcs.fetch(self.split.remote, [refspec])
        except VcsCommandFailed as e:
            if "couldn't find remote ref" not in e.stderr:
                raise
            logger.info("Split branch %s does not exist yet on %s", self.split.branch, self.split.remote)
            return None
        return self.vcs.resolve_ref(self.split_ref)

    def _mono_head(self) -> str:
        head = self.vcs.resolve_ref(f"refs/heads/{self.config.mono_branch}")
        if head is None:
            raise ConfigError(f"Mono branch '{self.config.mono_branch}' does not exist")
        return head

    def _prepare(self, direction: SyncDirection, store: MappingStore, apply: bool) -> _Prepared:
        split_tip = self._fetch_split(store.guard)
        store.fetch_and_merge(self.split.remote, apply=apply)
        mono_head = self._mono_head()

        if direction is SyncDirection.MONO_TO_SPLIT:
            anchor = self._mono_anchor(store, mono_head, split_tip)
            plan = Plan(self.split.name, direction, f"{self.split.remote} {self.split.branch}", split_tip, anchor)
            commits = self.extractor.extract(
                mono_head, self.layout.paths, is_mapped=store.has_mono, skip_origin="split"
            )
        else:
            anchor = store.anchor(split_tip, side="split")
            target_name = review_branch_name(
                self.split.name, int(self.clock()), self.split.review_branch_template
            )
            plan = Plan(self.split.name, direction, target_name, mono_head, anchor)
            commits = []
            if split_tip is not None:
                commits = self.extractor.extract(
                    split_tip,
                    self.layout.split_paths,
                    since=anchor.split_sha if anchor else None,
                    is_mapped=store.has_split,
                    skip_origin="mono",
                )

        prepared = _Prepared(plan, mono_head=mono_head, split_tip=split_tip)
        if not commits:
            return prepared

        if direction is SyncDirection.MONO_TO_SPLIT:
            base = self._anchor_base(anchor, plan)
            target = self.vcs.list_tree(split_tip, []) if split_tip else {}
            synced = self._split_side_synced
        else:
            base = self._split_snapshot(anchor.split_sha, mono_head, plan, record=False)[0] if anchor else {}
            target = self.vcs.list_tree(mono_head, [])
            synced = self._mono_side_synced

        for commit in commits:
            if direction is SyncDirection.MONO_TO_SPLIT:
                theirs, transforms = self._mono_snapshot(commit.sha, plan)
            else:
                theirs, transforms = self._split_snapshot(commit.sha, mono_head, plan)
            merged, conflicts, failures = self._merge(target, base, theirs, synced)
            changed = merged != target
            plan.commits.append(
                PlannedCommit(
                    commit,
                    CREATE if changed else SKIP_UNCHANGED,
                    files=_changed_paths(target, merged),
                    transforms=transforms,
                    conflicts=conflicts,
                    failures=failures,
                )
            )
            prepared.steps.append(_Step(commit, merged, changed))
            base, target = theirs, merged
        return prepared

    def _mono_anchor(self, store: MappingStore, mono_head: str, split_tip: str | None) -> MappingEntry | None:
        """
        Newest mapping whose mono commit is on the mono branch.

        Review branches that have not been merged yet are not on it, so split
        work still under review never becomes the merge base. Mappings whose
        mono commit never reached this clone are only used when the mono
        history holds none.
        """
        anchor = store.anchor(mono_head, side="mono")
        if anchor is not None or split_tip is None:
            return anchor
        return store.anchor(split_tip, side="split", accept=lambda e: self.vcs.resolve_ref(e.mono_sha) is None)

    def _anchor_base(self, anchor: MappingEntry | None, plan: Plan) -> Files:
        """Split files as the mono side delivered them at the anchor."""
        if anchor is None:
            return {}
        if self.vcs.resolve_ref(anchor.mono_sha) is not None:
            return self._mono_snapshot(anchor.mono_sha, plan, record=False)[0]
        # Mapping fetched from elsewhere; its mono commit has not reached this clone.
        logger.warning(
            "Anchor %s is not in this repository; using split %s as base",
            anchor.mono_sha[:8],
            anchor.split_sha[:8],
        )
        tree = self.vcs.list_tree(anchor.split_sha, [])
        return {path: entry for path, entry in tree.items() if self._split_side_synced(path)}

    # --- Filter + Transform ---

    def _split_side_synced(self, path: str) -> bool:
        return self.layout.to_mono(path) is not None

    def _mono_side_synced(self, path: str) -> bool:
        return self.layout.to_split(path) is not None

    @property
    def _root_manifests(self) -> set[str]:
        return {posixpath.join(p, MANIFEST_NAME) for p in self.layout.paths}

    def _mono_snapshot(self, mono_sha: str, plan: Plan, record: bool = True) -> tuple[Files, list[str]]:
        """Files of the split at a mono commit, keyed by split path, manifests rewritten."""
        files: Files = {}
        manifests = []
        for mono_path, entry in self.vcs.list_tree(mono_sha, self.layout.paths).items():
            split_path = self.layout.to_split(mono_path)
            if split_path is None:
                continue
            files[split_path] = entry
            if mono_path in self._root_manifests:
                manifests.append((mono_path, split_path))

        transforms: list[str] = []
        if manifests:
            workspace = self._workspace_at(mono_sha, plan)
            for mono_path, split_path in manifests:
                files[split_path], rules, warnings = self._transform(
                    mono_path, files[split_path], workspace, SyncDirection.MONO_TO_SPLIT
                )
                if record:
                    transforms.extend(rules)
                    for warning in warnings:
                        plan.warn(warning)
        return files, transforms

    def _split_snapshot(
        self, split_sha: str, mono_head: str, plan: Plan, record: bool = True
    ) -> tuple[Files, list[str]]:
        """Files of the split at a split commit, keyed by mono path, manifests rewritten."""
        files: Files = {}
        manifests = []
        for split_path, entry in self.vcs.list_tree(split_sha, self.layout.split_paths).items():
            mono_path = self.layout.to_mono(split_path)
            if mono_path is None:
                continue
            files[mono_path] = entry
            if mono_path in self._root_manifests:
                manifests.append(mono_path)

        transforms: list[str] = []
        if manifests:
            workspace = self._workspace_at(mono_head, plan)
            # The mono head's manifests decide which declaration forms come back.
            references = self.vcs.list_tree(mono_head, manifests)
            for mono_path in manifests:
                files[mono_path], rules, warnings = self._transform(
                    mono_path,
                    files[mono_path],
                    workspace,
                    SyncDirection.SPLIT_TO_MONO,
                    reference=references.get(mono_path),
                )
                if record:
                    transforms.extend(rules)
                    for warning in warnings:
                        plan.warn(warning)
        return files, transforms

    def _workspace_at(self, mono_sha: str, plan: Plan) -> _Workspace:
        """Discover name, path and version of every split-managed package at a mono commit."""
        if mono_sha in self._workspaces:
            return self._workspaces[mono_sha]

        paths = self.config.managed_paths()
        requests = [BlobRequest(mono_sha, posixpath.join(p, MANIFEST_NAME)) for p in paths]
        requests.append(BlobRequest(mono_sha, MANIFEST_NAME))
        results = self.vcs.read_blobs(requests)

        root = results[-1]
        table: dict = {}
        root_sha = None
        if not root.missing:
            table = read_workspace(_decode(root.data, MANIFEST_NAME), MANIFEST_NAME)
            root_sha = git_blob_sha(root.data)
        workspace_version = (table.get("package") or {}).get("version")

        packages: dict[str, PackageInfo] = {}
        for path, result in zip(paths, results[:-1]):
            if result.missing:
                continue
            manifest_path = result.request.path
            manifest = read_package(_decode(result.data, manifest_path), manifest_path)
            if manifest.name is None:
                continue
            version = manifest.version
            if version is None and manifest.inherits_version and isinstance(workspace_version, str):
                version = workspace_version
            if version is None:
                plan.warn(f"{manifest_path}: package '{manifest.name}' has no version; dependents left unchanged")
                continue
            packages[manifest.name] = PackageInfo(manifest.name, path, version)

        workspace = _Workspace(packages, table, root_sha)
        self._workspaces[mono_sha] = workspace
        return workspace

    def _local_packages(self, packages: dict[str, PackageInfo]) -> frozenset[str]:
        # Combined splits keep the relative layout of their members.
        if self.layout.mode != "combined":
            return frozenset()
        return frozenset(p.name for p in packages.values() if p.path in self.layout.paths)

    def _transform(
        self,
        mono_path: str,
        entry: TreeEntry,
        workspace: _Workspace,
        direction: SyncDirection,
        reference: TreeEntry | None = None,
    ) -> tuple[TreeEntry, list[str], list[str]]:
        key = (
            direction,
            mono_path,
            entry.sha,
            reference.sha if reference else None,
            workspace.root_sha,
            tuple(sorted(workspace.packages.items())),
        )
        if key in self._transformed:
            return self._transformed[key]

        data = self._read([entry] + ([reference] if reference else []))
        transform = ManifestTransform(
            workspace.packages,
            posixpath.dirname(mono_path),
            local=self._local_packages(workspace.packages),
            manifest_path=mono_path,
            workspace=workspace.table,
            reference=_decode(data[reference.sha], mono_path) if reference else None,
        )
        result = transform.transform(_decode(data[entry.sha], mono_path), direction)
        rewritten = self._stage(result.text.encode("utf-8"), entry.mode) if result.changed else entry
        outcome = (rewritten, [rule.describe() for rule in result.rules], list(result.warnings))
        self._transformed[key] = outcome
        return outcome

    # --- ConflictCheck ---

    def _merge(
        self,
        target: Files,
        base: Files,
        theirs: Files,
        synced: Callable[[str], bool],
    ) -> tuple[Files, list[str], list[str]]:
        """
        Three-way merge the synced part of target with base -> theirs.

        Files outside the split keep their target entries. Returns the new
        target tree, conflicted paths and failure descriptions.
        """
        merged = {path: entry for path, entry in target.items() if not synced(path)}
        ours = {path: entry for path, entry in target.items() if synced(path)}

        contested = []
        for path in sorted(set(base) | set(ours) | set(theirs)):
            b, o, t = base.get(path), ours.get(path), theirs.get(path)
            if o == t or b == t:
                entry = o
            elif b == o:
                entry = t
            else:
                contested.append(path)
                continue
            if entry is not None:
                merged[path] = entry

        conflicts: list[str] = []
        failures: list[str] = []
        if contested:
            entries = [e for p in contested for e in (base.get(p), ours.get(p), theirs.get(p)) if e is not None]
            data = self._read(entries)
            for path in contested:
                b, o, t = base.get(path), ours.get(path), theirs.get(path)
                outcome = resolve(
                    ConflictContext(
                        path,
                        data[b.sha] if b else None,
                        data[o.sha] if o else None,
                        data[t.sha] if t else None,
                        self.strategy,
                    )
                )
                mode = (o or t).mode
                if isinstance(outcome, Clean):
                    if outcome.data is not None:
                        merged[path] = self._stage(outcome.data, mode)
                elif isinstance(outcome, Conflicted):
                    conflicts.append(path)
                    merged[path] = self._stage(outcome.data, mode)
                else:
                    failures.append(f"{path}: {outcome.reason}")
                    if o is not None:
                        merged[path] = o

        # Incoming files that still carry markers block the run like a conflict.
        incoming = {
            path: entry
            for path, entry in merged.items()
            if synced(path) and entry != ours.get(path) and path not in conflicts
        }
        if incoming:
            data = self._read(list(incoming.values()))
            for path, entry in sorted(incoming.items()):
                content = data[entry.sha]
                if not is_binary(content) and has_conflict_markers(content):
                    failures.append(f"{path}: {MARKERS_LEFT}")
        return merged, conflicts, failures

    @staticmethod
    def _unresolved_reason(plan: Plan) -> str:
        reasons = {failure.split(": ", 1)[1] for c in plan.commits for failure in c.failures}
        if any(c.conflicts for c in plan.commits):
            reasons.add(MARKERS_LEFT)
        return "; ".join(sorted(reasons))

    # --- blobs ---

    def _stage(self, data: bytes, mode: str) -> TreeEntry:
        """Register new content; it is only written to the object store on apply."""
        sha = git_blob_sha(data)
        if sha not in self._blobs:
            self._blobs[sha] = data
            self._pending[sha] = data
        return TreeEntry(mode, sha)

    def _read(self, entries: list[TreeEntry]) -> dict[str, bytes]:
        wanted = list(dict.fromkeys(e.sha for e in entries if e.sha not in self._blobs))
        if wanted:
            for result in self.vcs.read_blobs([BlobRequest(sha) for sha in wanted]):
                if result.missing:
                    raise VcsParseError(["git", "cat-file", "--batch"], f"blob {result.request.commit} is missing")
                self._blobs[result.request.commit] = result.data
        return {e.sha: self._blobs[e.sha] for e in entries}

    def _write_blobs(self, files: Files) -> None:
        for entry in files.values():
            data = self._pending.pop(entry.sha, None)
            if data is None:
                continue
            written = self.vcs.write_blob(data)
            if written != entry.sha:
                raise VcsParseError(["git", "hash-object"], f"expected blob {entry.sha}, got {written}")

    # --- Commit + MapRecord + Finalize ---

    @staticmethod
    def _committer(commit: CommitRecord) -> Signature:
        if not commit.committer:
            return commit.author_signature
        return Signature(commit.committer, commit.committer_email, commit.committer_timestamp)

    @staticmethod
    def _parents(head: str | None, commit: CommitRecord, counterpart: Callable[[str], str | None]) -> list[str]:
        parents = [head] if head else []
        # Merges keep their other parents when those were synced too.
        for parent in commit.parents[1:]:
            mapped = counterpart(parent)
            if mapped and mapped not in parents:
                parents.append(mapped)
        return parents

    def _apply_mono_to_split(self, prepared: _Prepared, store: MappingStore, guard: RefGuard) -> SyncResult:
        plan = prepared.plan
        result = SyncResult(plan, applied=True)
        head = prepared.split_tip
        synced: dict[str, str] = {}

        def counterpart(mono_sha: str) -> str | None:
            return synced.get(mono_sha) or store.get(mono_sha)

        for step in prepared.steps:
            commit = step.commit
            if not step.changed:
                if head is not None:
                    synced[commit.sha] = head
                continue
            self._write_blobs(step.files)
            head = self.vcs.create_commit(
                step.files,
                self._parents(head, commit, counterpart),
                commit.author_signature,
                self._committer(commit),
                with_origin_trailer(commit.message, "mono", commit.sha),
            )
            synced[commit.sha] = head
            result.created.append(MappingEntry(commit.sha, head))
            logger.info("Transplanted %s -> %s", commit.short_sha, head[:8])

        if head != prepared.split_tip:
            target = f"refs/heads/{self.split.branch}"
            self.vcs.push(self.split.remote, [f"{head}:{target}"])
            self.vcs.update_ref(guard.check(self.split_ref), head)
            result.pushed_ref = f"{self.split.remote} {target}"

        # Mappings are recorded only once the split branch holds the commits.
        for mono_sha, split_sha in synced.items():
            if store.put(mono_sha, split_sha):
                result.recorded.append(MappingEntry(mono_sha, split_sha))
        if result.recorded:
            store.push(self.split.remote)
        return result

    def _apply_split_to_mono(self, prepared: _Prepared, store: MappingStore, guard: RefGuard) -> SyncResult:
        plan = prepared.plan
        result = SyncResult(plan, applied=True)
        head = prepared.mono_head
        synced: dict[str, str] = {}

        def counterpart(split_sha: str) -> str | None:
            return synced.get(split_sha) or store.get_mono(split_sha)

        for step in prepared.steps:
            commit = step.commit
            if not step.changed:
                continue
            self._write_blobs(step.files)
            head = self.vcs.create_commit(
                step.files,
                self._parents(head, commit, counterpart),
                commit.author_signature,
                self._committer(commit),
                with_origin_trailer(commit.message, "split", commit.sha),
            )
            synced[commit.sha] = head
            result.created.append(MappingEntry(head, commit.sha))
            logger.info("Imported %s -> %s", commit.short_sha, head[:8])

        if not result.created:
            return result

        guard.check(f"refs/heads/{plan.target}")
        self.vcs.create_branch(plan.target, head)
        result.review_branch = plan.target
        for entry in result.created:
            if store.put(entry.mono_sha, entry.split_sha):
                result.recorded.append(entry)
        return result


def _decode(data: bytes, path: str) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise TransformError(path, "manifest is not valid UTF-8") from e


def _changed_paths(before: Files, after: Files) -> list[str]:
    return sorted(p for p in set(before) | set(after) if before.get(p) != after.get(p))
