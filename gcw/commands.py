from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Mapping, Sequence


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stderr, falling back to stdout, for error messages."""
        return (self.stderr or "").strip() or (self.stdout or "").strip() or "<no output>"


# (args, cwd, timeout_s, env) -> CommandResult
Runner = Callable[..., CommandResult]

TIMEOUT_RC = 124
NOT_FOUND_RC = 127


def run_command(
    args: Sequence[str],
    cwd: str | Path | None = None,
    timeout_s: float = 60.0,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run a command without a shell and capture its output.

    Missing executables and timeouts are reported as results with the shell's
    conventional exit codes (127 / 124) instead of raising.
    """
    argv = tuple(str(a) for a in args)
    try:
        completed = subprocess.run(
            list(argv),
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            timeout=timeout_s,
            check=False,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError:
        return CommandResult(argv, NOT_FOUND_RC, "", f"{argv[0]}: command not found")
    except subprocess.TimeoutExpired:
        return CommandResult(argv, TIMEOUT_RC, "", f"{' '.join(argv)} timed out after {timeout_s:.0f}s")
    return CommandResult(argv, completed.returncode, completed.stdout or "", completed.stderr or "")


def run_shell(command: str, cwd: str | Path | None = None, timeout_s: float = 60.0, runner: Runner = run_command) -> CommandResult:
    """Run a user-supplied command line (validation / custom restart) through ``sh -c``."""
    return runner(["sh", "-c", command], cwd=cwd, timeout_s=timeout_s)
