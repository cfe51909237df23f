from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Event
from typing import Callable, TypeVar

from .errors import TerminalError, TransientError
from .events import log_event

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry wrapper shared by every call that crosses a process boundary.

    Only ``TransientError`` is retried. Anything else, ``TerminalError``
    included, is raised on the first occurrence.
    """

    attempts: int = 3
    delay_s: float = 5.0
    backoff: float = 1.0
    stop_event: Event | None = None
    service_name: str | None = None

    def __post_init__(self) -> None:
        self.attempts = max(1, int(self.attempts))
        self.delay_s = max(0.0, float(self.delay_s))

    def _wait(self, seconds: float) -> bool:
        """Sleep between attempts. Returns False if shutdown was requested."""
        if seconds <= 0:
            return not (self.stop_event and self.stop_event.is_set())
        if self.stop_event is None:
            time.sleep(seconds)
            return True
        return not self.stop_event.wait(seconds)

    def call(self, fn: Callable[..., T], *args, description: str = "operation", **kwargs) -> T:
        last: TransientError | None = None
        for attempt in range(1, self.attempts + 1):
            try:
                return fn(*args, **kwargs)
            except TerminalError:
                raise
            except TransientError as e:
                last = e
                if attempt >= self.attempts:
                    break
                wait = self.delay_s * (self.backoff ** (attempt - 1))
                log_event(
                    "WARNING",
                    f"{description} failed (attempt {attempt}/{self.attempts}): {e}; retrying in {wait:.0f}s",
                    service_name=self.service_name,
                )
                if not self._wait(wait):
                    break
        assert last is not None
        log_event("ERROR", f"{description} failed after {attempt} attempt(s): {last}", service_name=self.service_name)
        raise last
