# src/arbor/git.py
"""
The single entry point for starting git.

Branch names, start points and paths reach git's argument list straight
from the command line, so run_git refuses options that make git execute
another program or override its configuration.
"""

from typing import Final

from .errors import PreconditionError
from .runtime import CommandResult, HostRuntime, Runtime

_runtime: Final[Runtime] = HostRuntime()

GIT_TIMEOUT: Final[int] = 60

_FORBIDDEN_OPTIONS: Final[frozenset[str]] = frozenset(
    {"-c", "--config", "--config-env", "--exec", "--upload-pack", "--receive-pack", "-u"}
)


def check_git_args(args: list[str]) -> None:
    """Raises ValueError if any argument is a forbidden option (``--opt`` or ``--opt=value``)."""
    for arg in args:
        option = arg.split("=", 1)[0]
        if option in _FORBIDDEN_OPTIONS:
            raise ValueError(f"Dangerous git option '{option}' is not allowed")


def run_git(
    args: list[str],
    cwd: str,
    timeout: int = GIT_TIMEOUT,
    read_only: bool = False,
) -> CommandResult:
    """
    Run ``git <args>`` in ``cwd``.

    Queries pass ``read_only=True`` and run concurrently; everything else is
    serialized on the runtime's mutation lock.
    """
    check_git_args(args)
    return _runtime.execute(
        ["git", *args],
        cwd=cwd,
        timeout=timeout,
        exclusive=not read_only,
    )


def ensure_git_available() -> tuple[int, int]:
    try:
        return _runtime.git_version()
    except RuntimeError as e:
        raise PreconditionError(
            str(e), remediation="Install a recent git and make sure it is on PATH."
        ) from e


def get_toplevel(cwd: str) -> str | None:
    result = run_git(["rev-parse", "--show-toplevel"], cwd=cwd, read_only=True)
    return result.stdout.strip() if result.ok else None
