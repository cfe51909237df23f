from __future__ import annotations

import os
from pathlib import Path

from .errors import LockError
from .events import log_event


def read_pid(path: str | os.PathLike[str]) -> int | None:
    """PID recorded in a lockfile, or None when absent/unreadable/garbage."""
    try:
        raw = Path(path).read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        pid = int(raw.split()[0]) if raw else 0
    except ValueError:
        return None
    return pid if pid > 0 else None


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    except OSError:
        return False
    return True


class ProcessLock:
    """Single-instance guard: a file holding the owner's PID.

    A lockfile whose PID is not alive (or unreadable) is stale and reclaimed.
    ``release`` only removes the file while it still records our PID.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)
        self.pid = os.getpid()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _create(self) -> bool:
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(f"{self.pid}\n")
        return True

    def acquire(self) -> None:
        if self._held:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockError(f"Cannot create lock directory for {self.path}: {e}") from e

        # Two passes: the second one follows a stale-lock reclaim.
        for _ in range(2):
            try:
                if self._create():
                    self._held = True
                    log_event("DEBUG", f"Acquired lock {self.path} (pid {self.pid})")
                    return
            except OSError as e:
                raise LockError(f"Cannot create lockfile {self.path}: {e}") from e

            owner = read_pid(self.path)
            if owner is not None and owner != self.pid and pid_alive(owner):
                raise LockError(f"Another instance is already running (pid {owner}, lock {self.path})")
            log_event("WARNING", f"Removing stale lockfile {self.path} (pid {owner})")
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                raise LockError(f"Cannot remove stale lockfile {self.path}: {e}") from e
        raise LockError(f"Could not acquire lock {self.path}")

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        if read_pid(self.path) != self.pid:
            log_event("WARNING", f"Lockfile {self.path} no longer records our pid; leaving it")
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log_event("ERROR", f"Failed to remove lockfile {self.path}: {e}")

    def __enter__(self) -> ProcessLock:
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
