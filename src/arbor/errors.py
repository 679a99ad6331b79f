"""Domain error taxonomy.

Every failure surfaced by the engine is one of these types. Callers decide
on retry and presentation from the class and the ``retryable`` flag; the
message always names the root cause and ``remediation`` tells the user what
to do about it.
"""

from pathlib import Path


class ArborError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False

    def __init__(self, message: str, *, remediation: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.remediation = remediation

    def __str__(self) -> str:
        if self.remediation:
            return f"{self.message}\n{self.remediation}"
        return self.message


class PreconditionError(ArborError):
    """Requested mode conflicts with existing state. Never retried."""


class ConflictError(ArborError):
    """Concurrent mutation or unresolvable collision."""


class LockTimeoutError(ConflictError):
    """Advisory lock not acquired within the bounded wait."""

    retryable = True

    def __init__(self, lock_path: Path, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:g}s waiting for lock: {lock_path}",
            remediation="Another arbor command is running for this repository; retry shortly.",
        )
        self.lock_path = lock_path
        self.timeout = timeout


class NotFoundError(ArborError):
    """Branch, worktree, mapping or origin absent."""


class IntegrityError(ArborError):
    """Stored state and VCS state disagree beyond automatic repair."""


class StorageIOError(ArborError):
    """Filesystem permission, space or other OS-level failure."""

    def __init__(self, message: str, path: Path | str, *, remediation: str | None = None) -> None:
        super().__init__(f"{message}: {path}", remediation=remediation)
        self.path = Path(path)


class UnsafeOperationError(ArborError):
    """Operation would touch an unmanaged branch without explicit force."""


class RollbackIncompleteError(ArborError):
    """Creation failed and compensation could not undo every step.

    The message carries the original cause first, then each artifact that
    still exists and how to remove it by hand.
    """

    def __init__(self, cause: BaseException, leftovers: list[str]) -> None:
        lines = "\n".join(f"  - {item}" for item in leftovers)
        super().__init__(
            str(cause),
            remediation=f"Rollback incomplete; remove these manually:\n{lines}",
        )
        self.cause = cause
        self.leftovers = leftovers


# VCS surface failures, typed by domain meaning.


class VcsError(ArborError):
    """Base for failures reported by the version-control surface."""


class BranchExistsError(VcsError, PreconditionError):
    def __init__(self, branch: str) -> None:
        super().__init__(f"Branch '{branch}' already exists")
        self.branch = branch


class ReferenceNotFoundError(VcsError, NotFoundError):
    def __init__(self, reference: str, detail: str = "") -> None:
        message = f"Reference not found: {reference}"
        super().__init__(f"{message} ({detail})" if detail else message)
        self.reference = reference


class DirtyWorktreeError(VcsError, PreconditionError):
    def __init__(self, path: Path | str) -> None:
        super().__init__(
            f"Worktree has modified or untracked files: {path}",
            remediation="Commit or stash the changes, then retry.",
        )
        self.path = Path(path)


class VcsCommandError(VcsError):
    """Any other non-zero exit of a VCS command."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        super().__init__(f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}")
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
