# src/arbor/runtime.py
"""
Subprocess execution for the VCS surface.

Every git process arbor starts goes through HostRuntime.execute:
- Mutating commands hold MUTATION_LOCK so threads of one process never
  interleave writes to the repository's metadata; queries skip it.
- Output is forced to the C locale, since vcs.py types failures by
  matching git's English messages.
- git never prompts; a command that would wait for credentials fails.
"""

import os
import re
import signal
import subprocess
import threading
from typing import Final, Protocol

from msgspec import Struct

MUTATION_LOCK: Final[threading.Lock] = threading.Lock()

# rev-parse --path-format=absolute appeared in git 2.31
MIN_GIT_VERSION: Final[tuple[int, int]] = (2, 31)

_FIXED_ENV: Final[dict[str, str]] = {"LC_ALL": "C", "GIT_TERMINAL_PROMPT": "0"}
_VERSION_RE: Final[re.Pattern[str]] = re.compile(r"git version (\d+)\.(\d+)")


def decode_signal(returncode: int) -> str | None:
    """
    Name the signal that killed a process.

    Examples:
        decode_signal(-15) -> "SIGTERM"
        decode_signal(0) -> None
    """
    if returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"


class CommandResult(Struct, frozen=True):
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def failure_detail(self) -> str:
        """stderr of a failed command, prefixed with the signal if one killed it."""
        if sig := decode_signal(self.returncode):
            return f"terminated by {sig}. {self.stderr.strip()}".strip()
        return self.stderr.strip()


def parse_git_version(output: str) -> tuple[int, int] | None:
    match = _VERSION_RE.search(output)
    if match is None:
        return None
    return int(match[1]), int(match[2])


class Runtime(Protocol):
    def execute(
        self,
        command: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        exclusive: bool = False,
    ) -> CommandResult: ...

    def git_version(self) -> tuple[int, int]: ...


class HostRuntime:
    """Runs commands directly on this machine."""

    __slots__ = ()

    def execute(
        self,
        command: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
        exclusive: bool = False,
    ) -> CommandResult:
        """
        Run ``command`` and capture its output.

        Raises:
            subprocess.TimeoutExpired: If ``timeout`` elapses first.
        """
        run_env = {**os.environ, **_FIXED_ENV, **(env or {})}
        if exclusive:
            with MUTATION_LOCK:
                return self._run(command, cwd, run_env, timeout)
        return self._run(command, cwd, run_env, timeout)

    @staticmethod
    def _run(
        command: list[str], cwd: str | None, env: dict[str, str], timeout: float | None
    ) -> CommandResult:
        completed = subprocess.run(
            command, cwd=cwd, env=env, timeout=timeout, capture_output=True, text=True
        )
        return CommandResult(completed.returncode, completed.stdout, completed.stderr)

    def git_version(self) -> tuple[int, int]:
        """
        (major, minor) of the git on PATH.

        Raises:
            RuntimeError: If git cannot be run or is older than MIN_GIT_VERSION.
        """
        try:
            completed = subprocess.run(["git", "--version"], capture_output=True, text=True)
        except FileNotFoundError as err:
            raise RuntimeError("git not found in PATH") from err
        if completed.returncode != 0:
            raise RuntimeError("git --version failed; is git installed correctly?")

        version = parse_git_version(completed.stdout)
        if version is None:
            raise RuntimeError(f"Unrecognized git version output: {completed.stdout.strip()!r}")
        if version < MIN_GIT_VERSION:
            found = ".".join(map(str, version))
            needed = ".".join(map(str, MIN_GIT_VERSION))
            raise RuntimeError(f"git {found} is too old; arbor needs git {needed} or newer")
        return version
