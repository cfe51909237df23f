from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class SyncPhase(str, Enum):
    UNINITIALIZED = "uninitialized"
    CLONING = "cloning"
    UP_TO_DATE = "up_to_date"
    CHANGES_DETECTED = "changes_detected"
    SYNCING = "syncing"
    SYNCED = "synced"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass
class WatchState:
    """Volatile per-service state. Only the owning watch thread mutates it."""

    service: str
    phase: SyncPhase = SyncPhase.UNINITIALIZED
    last_commit: str | None = None
    consecutive_failures: int = 0
    last_restart_at: str | None = None
    last_error: str | None = None
    last_cycle_at: str | None = None
    pending_lifecycle: bool = False
    busy: bool = False  # inside a lifecycle sequence
    cycles: int = 0
    created_at: str = field(default_factory=utc_now)

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.last_error = None

    def record_failure(self, error: BaseException | str, phase: SyncPhase = SyncPhase.FAILED) -> int:
        self.phase = phase
        self.last_error = str(error)
        self.consecutive_failures += 1
        return self.consecutive_failures

    def snapshot(self) -> dict:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


class RuntimeState:
    """Registry of WatchState objects, one per service."""

    def __init__(self) -> None:
        self.lock = Lock()
        self.states: dict[str, WatchState] = {}

    def get(self, service: str) -> WatchState:
        """Return the state for ``service``, creating it on first poll."""
        with self.lock:
            st = self.states.get(service)
            if st is None:
                st = WatchState(service=service)
                self.states[service] = st
            return st

    def find(self, service: str) -> WatchState | None:
        with self.lock:
            return self.states.get(service)

    def drop(self, service: str) -> None:
        with self.lock:
            self.states.pop(service, None)

    def list_states(self) -> list[WatchState]:
        with self.lock:
            return list(self.states.values())

    def failing(self) -> list[str]:
        with self.lock:
            return sorted(
                name for name, st in self.states.items() if st.phase in {SyncPhase.FAILED, SyncPhase.CONFLICT}
            )
