"""
Error taxonomy for rail-sync.

Every error raised by the engine derives from RailError and carries the
process exit code the CLI should use when it surfaces.
"""

from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes."""

    SUCCESS = 0
    USER_ERROR = 1
    SYSTEM_ERROR = 2
    VALIDATION_ERROR = 3
    SECURITY_ERROR = 4


class RailError(Exception):
    """Base exception for rail-sync."""

    exit_code = ExitCode.USER_ERROR
    help_message: str | None = None


class ConfigError(RailError):
    """Invalid split specification or repository location."""

    help_message = "Check the split definition in rail.yaml."


class VcsError(RailError):
    """Base class for failures at the git subprocess boundary."""

    exit_code = ExitCode.SYSTEM_ERROR


class VcsCommandFailed(VcsError):
    """A git command exited with a non-zero status."""

    def __init__(self, command: list[str], stderr: str, returncode: int | None = None):
        self.command = list(command)
        self.stderr = stderr.strip()
        self.returncode = returncode
        super().__init__(f"Git command failed: {' '.join(self.command)}\n{self.stderr}")

    @property
    def help_message(self) -> str | None:
        if "non-fast-forward" in self.stderr:
            return "The remote has commits you don't have. Re-run the sync so they are merged first."
        if "Permission denied" in self.stderr or "403" in self.stderr:
            return "Check the credentials available to git for this remote."
        return None


class VcsTimeout(VcsError):
    """A git command exceeded its timeout and was killed."""

    def __init__(self, command: list[str], timeout: float):
        self.command = list(command)
        self.timeout = timeout
        super().__init__(f"Git command timed out after {timeout:g}s: {' '.join(self.command)}")


class VcsParseError(VcsError):
    """Git produced output that could not be parsed."""

    def __init__(self, command: list[str], detail: str):
        self.command = list(command)
        self.detail = detail
        super().__init__(f"Unexpected output from {' '.join(self.command)}: {detail}")


class TransformError(RailError):
    """A manifest could not be parsed or rewritten unambiguously."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot transform {path}: {reason}")


class ConflictUnresolved(RailError):
    """Three-way merge left files that need a human."""

    exit_code = ExitCode.VALIDATION_ERROR
    help_message = (
        "Resolve the listed files (remove all conflict markers) or re-run "
        "with a different --strategy."
    )

    def __init__(self, paths: list[str], reason: str = "conflict markers left in file"):
        self.paths = sorted(paths)
        self.reason = reason
        listing = "\n".join(f"  {p}" for p in self.paths)
        super().__init__(f"Unresolved conflicts ({reason}):\n{listing}")


class AmbiguousMapping(RailError):
    """The same commit is mapped to two different counterparts."""

    exit_code = ExitCode.VALIDATION_ERROR
    help_message = (
        "Two machines recorded different mappings for the same commit. "
        "Inspect the notes ref and remove the wrong entry by hand."
    )

    def __init__(self, split: str, key: str, existing: str, incoming: str):
        self.split = split
        self.key = key
        self.existing = existing
        self.incoming = incoming
        super().__init__(
            f"Ambiguous mapping in '{split}': {key} -> {existing} conflicts with {key} -> {incoming}"
        )


class SecurityViolation(RailError):
    """An attempted write to a protected ref. Never caught by the engine."""

    exit_code = ExitCode.SECURITY_ERROR

    def __init__(self, ref: str, reason: str):
        self.ref = ref
        self.reason = reason
        super().__init__(f"Refusing to write {ref}: {reason}")


class SyncInProgress(RailError):
    """Another sync run holds the lock for this split."""

    help_message = "Wait for the running sync to finish, then try again."

    def __init__(self, split: str, holder: str | None = None):
        self.split = split
        self.holder = holder
        detail = f" (held by {holder})" if holder else ""
        super().__init__(f"A sync of '{split}' is already running{detail}")
