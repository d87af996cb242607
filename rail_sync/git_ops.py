"""
Git operations for the syncer.

SystemGit drives the system git binary. Every call runs with a minimal
whitelisted environment, interactive credential prompts disabled, stdin
closed and a hard timeout; failures surface as VcsCommandFailed, VcsTimeout
or VcsParseError.
"""

import logging
import os
import subprocess
import tempfile
import time
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path

from git import Repo
from git.exc import InvalidGitRepositoryError, NoSuchPathError

from .errors import ConfigError, VcsCommandFailed, VcsParseError, VcsTimeout
from .vcs import BlobRequest, BlobResult, CommitRecord, Signature, TreeEntry, VcsPort

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
DEFAULT_WORKERS = 4
COMMIT_CHUNK = 64

# Variables copied from the parent environment when spawning git.
ENV_WHITELIST = (
    "PATH",
    "HOME",
    "USER",
    "LOGNAME",
    "TMPDIR",
    "TEMP",
    "TMP",
    "SYSTEMROOT",
    "XDG_CONFIG_HOME",
    "SSH_AUTH_SOCK",
    "GIT_SSH",
    "GIT_SSH_COMMAND",
    "GIT_EXEC_PATH",
)

# Always set, overriding anything inherited.
FORCED_ENV = {
    "LANG": "C",
    "LC_ALL": "C",
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_ASKPASS": "",
    "SSH_ASKPASS": "",
    "GCM_INTERACTIVE": "never",
    "GIT_PAGER": "cat",
}

DEFAULT_IDENTITY = Signature(name="rail-sync", email="rail-sync@localhost", timestamp=0)

_FIELD = "\x1f"
_LOG_FORMAT = _FIELD.join(["%H", "%P", "%an", "%ae", "%at", "%cn", "%ce", "%ct", "%B"])


def build_env(extra: dict[str, str] | None = None) -> dict[str, str]:
    """Build the environment for a git subprocess from the whitelist."""
    env = {name: os.environ[name] for name in ENV_WHITELIST if name in os.environ}
    env.update(FORCED_ENV)
    env.setdefault("GIT_SSH_COMMAND", "ssh -o BatchMode=yes")
    if extra:
        env.update(extra)
    return env


def _identity_env(author: Signature, committer: Signature) -> dict[str, str]:
    return {
        "GIT_AUTHOR_NAME": author.name,
        "GIT_AUTHOR_EMAIL": author.email,
        "GIT_AUTHOR_DATE": author.as_git_date(),
        "GIT_COMMITTER_NAME": committer.name,
        "GIT_COMMITTER_EMAIL": committer.email,
        "GIT_COMMITTER_DATE": committer.as_git_date(),
    }


def parse_log_records(command: list[str], output: bytes) -> list[CommitRecord]:
    """Parse NUL-separated `git log -z` output produced with _LOG_FORMAT."""
    records = []
    for raw in output.split(b"\x00"):
        text = raw.decode("utf-8", errors="replace").lstrip("\n")
        if not text:
            continue
        fields = text.split(_FIELD, 8)
        if len(fields) != 9:
            raise VcsParseError(command, f"expected 9 fields, got {len(fields)}")
        sha, parents, an, ae, at, cn, ce, ct, body = fields
        try:
            author_ts = int(at)
            committer_ts = int(ct)
        except ValueError as e:
            raise VcsParseError(command, f"bad timestamp in commit {sha}") from e
        records.append(
            CommitRecord(
                sha=sha,
                author=an,
                email=ae,
                timestamp=author_ts,
                message=body,
                parents=tuple(parents.split()),
                committer=cn,
                committer_email=ce,
                committer_timestamp=committer_ts,
            )
        )
    return records


class SystemGit(VcsPort):
    """VcsPort driver backed by the system git executable."""

    def __init__(
        self,
        path: Path,
        timeout: float = DEFAULT_TIMEOUT,
        workers: int = DEFAULT_WORKERS,
        identity: Signature = DEFAULT_IDENTITY,
    ):
        """Open an existing repository (working tree or bare)."""
        self.path = Path(path).resolve()
        try:
            repo = Repo(self.path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise ConfigError(f"Not a valid git repository: {self.path}") from e
        self.git_dir = Path(repo.git_dir).resolve()
        repo.close()
        self.timeout = timeout
        self.workers = max(1, workers)
        self.identity = identity
        self._deadline: float | None = None

    def __repr__(self) -> str:
        return f"SystemGit({str(self.path)!r})"

    @contextmanager
    def deadline(self, seconds: float):
        """Bound every git call made inside the block by an overall deadline."""
        previous = self._deadline
        self._deadline = time.monotonic() + seconds
        try:
            yield self
        finally:
            self._deadline = previous

    def _timeout_for(self, command: list[str]) -> float:
        if self._deadline is None:
            return self.timeout
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise VcsTimeout(command, 0)
        return min(self.timeout, remaining)

    def _run(
        self,
        args: Sequence[str],
        input: bytes | None = None,
        extra_env: dict[str, str] | None = None,
        ok_codes: tuple[int, ...] = (0,),
    ) -> subprocess.CompletedProcess:
        command = ["git", *args]
        timeout = self._timeout_for(command)
        stdin_args = {"input": input} if input is not None else {"stdin": subprocess.DEVNULL}
        logger.debug("git %s", " ".join(args))
        try:
            proc = subprocess.run(
                command,
                cwd=self.path,
                env=build_env(extra_env),
                capture_output=True,
                timeout=timeout,
                check=False,
                **stdin_args,
            )
        except subprocess.TimeoutExpired as e:
            raise VcsTimeout(command, timeout) from e
        except OSError as e:
            raise VcsCommandFailed(command, f"cannot execute git: {e}") from e
        if proc.returncode not in ok_codes:
            raise VcsCommandFailed(
                command, proc.stderr.decode("utf-8", errors="replace"), proc.returncode
            )
        return proc

    def _text(self, args: Sequence[str], **kwargs) -> str:
        return self._run(args, **kwargs).stdout.decode("utf-8", errors="replace").strip()

    # --- reads ---

    def resolve_ref(self, ref: str) -> str | None:
        proc = self._run(
            ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], ok_codes=(0, 1, 128)
        )
        if proc.returncode != 0:
            return None
        return proc.stdout.decode().strip() or None

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        proc = self._run(["merge-base", "--is-ancestor", ancestor, descendant], ok_codes=(0, 1))
        return proc.returncode == 0

    def list_commits(
        self, head: str, paths: Sequence[str], since: str | None = None
    ) -> list[CommitRecord]:
        args = [
            "log",
            "--full-history",
            "--topo-order",
            "--reverse",
            "-z",
            f"--format={_LOG_FORMAT}",
            head,
        ]
        if since:
            args.append(f"^{since}")
        if paths:
            args.extend(["--", *paths])
        proc = self._run(args)
        return parse_log_records(["git", *args], proc.stdout)

    def tree_differs(self, a: str, b: str, paths: Sequence[str]) -> bool:
        args = ["diff-tree", "--quiet", "-r", a, b]
        if paths:
            args.extend(["--", *paths])
        return self._run(args, ok_codes=(0, 1)).returncode == 1

    def list_tree(self, commit: str, paths: Sequence[str]) -> dict[str, TreeEntry]:
        args = ["ls-tree", "-r", "-z", "--full-tree", commit]
        if paths:
            args.extend(["--", *paths])
        proc = self._run(args)
        entries: dict[str, TreeEntry] = {}
        for raw in proc.stdout.split(b"\x00"):
            if not raw:
                continue
            line = raw.decode("utf-8", errors="surrogateescape")
            meta, sep, path = line.partition("\t")
            parts = meta.split()
            if not sep or len(parts) != 3:
                raise VcsParseError(["git", *args], f"bad ls-tree line: {line!r}")
            mode, kind, sha = parts
            if kind != "blob":
                logger.warning("Skipping %s entry %s at %s", kind, path, commit[:8])
                continue
            entries[path] = TreeEntry(mode, sha)
        return entries

    def read_blob(self, commit: str, path: str) -> bytes | None:
        return self.read_blobs([BlobRequest(commit, path)])[0].data

    def read_blobs(self, requests: Sequence[BlobRequest]) -> list[BlobResult]:
        data = self._cat_batch([r.spec for r in requests])
        return [BlobResult(request, item) for request, item in zip(requests, data)]

    def _cat_batch(self, specs: Sequence[str]) -> list[bytes | None]:
        """Read objects with one `git cat-file --batch` call; None for missing or non-blobs."""
        if not specs:
            return []
        for spec in specs:
            if "\n" in spec:
                raise ValueError(f"Object name contains a newline: {spec!r}")
        command = ["cat-file", "--batch"]
        out = self._run(command, input=("\n".join(specs) + "\n").encode()).stdout
        results: list[bytes | None] = []
        pos = 0
        for spec in specs:
            nl = out.find(b"\n", pos)
            if nl < 0:
                raise VcsParseError(["git", *command], f"truncated output at {spec!r}")
            header = out[pos:nl].decode("utf-8", errors="replace")
            pos = nl + 1
            if header.endswith(" missing") or header.endswith(" ambiguous"):
                results.append(None)
                continue
            parts = header.split()
            if len(parts) != 3 or not parts[2].isdigit():
                raise VcsParseError(["git", *command], f"bad header {header!r}")
            kind, size = parts[1], int(parts[2])
            body = out[pos : pos + size]
            if len(body) != size:
                raise VcsParseError(["git", *command], f"short read for {spec!r}")
            pos += size + 1
            results.append(body if kind == "blob" else None)
        return results

    def read_commits(self, shas: Sequence[str]) -> list[CommitRecord]:
        if not shas:
            return []
        unique = list(dict.fromkeys(shas))
        chunks = [unique[i : i + COMMIT_CHUNK] for i in range(0, len(unique), COMMIT_CHUNK)]
        by_sha: dict[str, CommitRecord] = {}
        with ThreadPoolExecutor(max_workers=min(self.workers, len(chunks))) as pool:
            for records in pool.map(self._read_commit_chunk, chunks):
                for record in records:
                    by_sha[record.sha] = record
        missing = [sha for sha in unique if sha not in by_sha]
        if missing:
            raise VcsParseError(["git", "log", "--no-walk"], f"no metadata for {missing[0]}")
        return [by_sha[sha] for sha in shas]

    def _read_commit_chunk(self, chunk: list[str]) -> list[CommitRecord]:
        args = ["log", "--no-walk=unsorted", "-z", f"--format={_LOG_FORMAT}", *chunk]
        return parse_log_records(["git", *args], self._run(args).stdout)

    def existing_commits(self, shas: Sequence[str]) -> list[str]:
        if not shas:
            return []
        for sha in shas:
            if "\n" in sha:
                raise ValueError(f"Object name contains a newline: {sha!r}")
        command = ["cat-file", "--batch-check"]
        specs = "".join(f"{sha}^{{commit}}\n" for sha in shas)
        lines = self._text(command, input=specs.encode()).splitlines()
        if len(lines) != len(shas):
            raise VcsParseError(["git", *command], f"expected {len(shas)} lines, got {len(lines)}")
        return [
            sha
            for sha, line in zip(shas, lines)
            if not line.endswith(" missing") and not line.endswith(" ambiguous")
        ]

    def read_notes(self, ref: str) -> dict[str, str]:
        if self.resolve_ref(ref) is None:
            return {}
        listing = self._text(["notes", f"--ref={ref}", "list"])
        pairs = []
        for line in listing.splitlines():
            parts = line.split()
            if len(parts) != 2:
                raise VcsParseError(["git", "notes", f"--ref={ref}", "list"], f"bad line {line!r}")
            pairs.append((parts[1], parts[0]))
        blobs = self._cat_batch([note for _, note in pairs])
        return {
            commit: (blob or b"").decode("utf-8", errors="replace")
            for (commit, _), blob in zip(pairs, blobs)
        }

    def remote_url(self, name: str) -> str | None:
        proc = self._run(["remote", "get-url", name], ok_codes=(0, 1, 2, 128))
        if proc.returncode != 0:
            return None
        return proc.stdout.decode().strip() or None

    # --- writes ---

    def write_blob(self, data: bytes) -> str:
        return self._text(["hash-object", "-w", "--stdin"], input=data)

    def create_commit(
        self,
        files: dict[str, TreeEntry],
        parents: Sequence[str],
        author: Signature,
        committer: Signature,
        message: str,
    ) -> str:
        with tempfile.TemporaryDirectory(prefix="rail-index-") as tmp:
            index_env = {"GIT_INDEX_FILE": str(Path(tmp) / "index")}
            if files:
                info = "".join(f"{e.mode} {e.sha}\t{p}\x00" for p, e in sorted(files.items()))
                self._run(
                    ["update-index", "-z", "--index-info"],
                    input=info.encode("utf-8", errors="surrogateescape"),
                    extra_env=index_env,
                )
            tree = self._text(["write-tree"], extra_env=index_env)
        args = ["commit-tree", tree]
        for parent in parents:
            args.extend(["-p", parent])
        args.extend(["-F", "-"])
        sha = self._text(args, input=message.encode(), extra_env=_identity_env(author, committer))
        logger.debug("Created commit %s (tree %s)", sha[:8], tree[:8])
        return sha

    def update_ref(self, ref: str, new_sha: str, old_sha: str | None = None) -> None:
        args = ["update-ref", "-m", "rail-sync", ref, new_sha]
        if old_sha is not None:
            args.append(old_sha)
        self._run(args)

    def create_branch(self, name: str, sha: str) -> None:
        # A zero old value makes update-ref fail if the branch already exists.
        self._run(["update-ref", "-m", "rail-sync", f"refs/heads/{name}", sha, "0" * len(sha)])

    def add_note(self, ref: str, commit: str, text: str) -> None:
        ident = self._identity()
        self._run(["notes", f"--ref={ref}", "add", "-m", text, commit], extra_env=ident)

    def merge_notes(self, ref: str, other_ref: str) -> None:
        ident = self._identity()
        self._run(["notes", f"--ref={ref}", "merge", "-q", "--strategy=union", other_ref], extra_env=ident)

    def _identity(self) -> dict[str, str]:
        now = Signature(self.identity.name, self.identity.email, int(time.time()))
        return _identity_env(now, now)

    def add_remote(self, name: str, url: str) -> None:
        if self.remote_url(name) is None:
            self._run(["remote", "add", name, url])
        else:
            self._run(["remote", "set-url", name, url])

    def fetch(self, remote: str, refspecs: Sequence[str]) -> None:
        self._run(["fetch", "--no-tags", "--quiet", remote, *refspecs])

    def push(self, remote: str, refspecs: Sequence[str]) -> None:
        self._run(["push", "--quiet", remote, *refspecs])
