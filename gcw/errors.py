from __future__ import annotations


class WatcherError(Exception):
    """Base class for all watcher failures."""


class TransientError(WatcherError):
    """Marker: the operation may succeed if simply tried again."""


class TerminalError(WatcherError):
    """Marker: retrying within the same cycle cannot help."""


class ConfigError(WatcherError):
    """Configuration document missing, unreadable or invalid."""


class TransientNetworkError(TransientError):
    """Git remote, container engine or heartbeat endpoint unreachable."""


class ContainerNotReady(TransientError):
    """A restarted container has not reached the running state yet."""


class GitError(WatcherError):
    pass


class SyncConflictError(TerminalError):
    """A pull produced merge conflicts; the checkout was rolled back."""

    def __init__(self, message: str, restored_commit: str):
        super().__init__(message)
        self.restored_commit = restored_commit


class RestartError(WatcherError):
    """A lifecycle action was rejected or failed."""


class TerminalRestartError(RestartError, TerminalError):
    """Lifecycle action that cannot succeed on retry (e.g. container missing)."""


class ValidationError(TerminalError):
    """Validation command failed; nothing was mutated."""


class RemediationFailure(TerminalError):
    """Permission/content fix failed, or validation still fails afterwards."""


class LockError(WatcherError):
    """The singleton lock is held by another live process."""


class EngineUnavailable(WatcherError):
    """The container engine cannot be reached."""
