"""Checkout reconciliation: clone, branch alignment, fetch/compare/pull, rollback."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from .commands import TIMEOUT_RC, CommandResult, Runner, run_command
from .config import EffectiveConfig
from .errors import GitError, SyncConflictError, TerminalError, TransientNetworkError
from .events import log_event
from .retry import RetryPolicy
from .runtime import SyncPhase, WatchState

NETWORK_MARKERS = (
    "could not resolve host",
    "could not read from remote",
    "unable to access",
    "connection refused",
    "connection timed out",
    "connection reset",
    "network is unreachable",
    "operation timed out",
    "the remote end hung up",
    "early eof",
    "timed out",
)
CONFLICT_MARKERS = ("conflict", "automatic merge failed", "unmerged paths")

# Never prompt for credentials; give stash/merge an identity inside bare containers.
GIT_ENV_DEFAULTS = {
    "GIT_TERMINAL_PROMPT": "0",
    "GIT_AUTHOR_NAME": "config-watcher",
    "GIT_AUTHOR_EMAIL": "config-watcher@localhost",
    "GIT_COMMITTER_NAME": "config-watcher",
    "GIT_COMMITTER_EMAIL": "config-watcher@localhost",
}


class _PullConflict(TerminalError):
    pass


def git_env() -> dict[str, str]:
    env = dict(os.environ)
    for k, v in GIT_ENV_DEFAULTS.items():
        env.setdefault(k, v)
    env["GIT_TERMINAL_PROMPT"] = "0"
    return env


@dataclass(frozen=True)
class SyncResult:
    phase: SyncPhase
    commit: str
    changed: bool
    cloned: bool = False
    previous_commit: str | None = None


class GitSyncEngine:
    """Per-service checkout state machine driven through the ``git`` CLI."""

    def __init__(self, runner: Runner = run_command, timeout_s: float = 120.0):
        self.runner = runner
        self.timeout_s = timeout_s

    # -- plumbing ---------------------------------------------------------

    def _git(self, args: Sequence[str], cwd: Path | None, check: bool = True) -> CommandResult:
        res = self.runner(["git", *args], cwd=cwd, timeout_s=self.timeout_s, env=git_env())
        if check and not res.ok:
            raise GitError(f"git {' '.join(args)} failed (exit={res.returncode}): {res.output}")
        return res

    def _remote(self, args: Sequence[str], cwd: Path | None) -> CommandResult:
        """A git call that talks to the remote; network failures are transient."""
        res = self._git(args, cwd, check=False)
        if res.ok:
            return res
        text = res.output.lower()
        if res.returncode == TIMEOUT_RC or any(m in text for m in NETWORK_MARKERS):
            raise TransientNetworkError(f"git {args[0]}: {res.output}")
        raise GitError(f"git {' '.join(args)} failed (exit={res.returncode}): {res.output}")

    @staticmethod
    def is_checkout(path: Path) -> bool:
        return (path / ".git").exists()

    def head(self, path: Path) -> str:
        return self._git(["rev-parse", "HEAD"], path).stdout.strip()

    def rev_parse(self, path: Path, ref: str) -> str:
        value = self._git(["rev-parse", ref], path).stdout.strip()
        if not value:
            raise GitError(f"git rev-parse {ref!r} returned empty output")
        return value

    def current_branch(self, path: Path) -> str:
        return self._git(["rev-parse", "--abbrev-ref", "HEAD"], path).stdout.strip()

    def is_dirty(self, path: Path) -> bool:
        return bool(self._git(["status", "--porcelain"], path).stdout.strip())

    def stash_count(self, path: Path) -> int:
        out = self._git(["stash", "list"], path).stdout
        return len([line for line in out.splitlines() if line.strip()])

    def branch_exists(self, path: Path, branch: str) -> bool:
        return self._git(["show-ref", "--verify", "--quiet", f"refs/heads/{branch}"], path, check=False).ok

    def is_ancestor(self, path: Path, older: str, newer: str) -> bool:
        return self._git(["merge-base", "--is-ancestor", older, newer], path, check=False).ok

    def _stash(self, path: Path, reason: str, service: str) -> bool:
        """Stash local modifications. Returns True when a stash entry was created."""
        before = self.stash_count(path)
        res = self._git(["stash", "push", "-m", f"config-watcher: {reason}"], path, check=False)
        if not res.ok:
            log_event("WARNING", f"Failed to stash local changes: {res.output}", service_name=service)
            return False
        return self.stash_count(path) > before

    def _stash_pop(self, path: Path, service: str) -> bool:
        res = self._git(["stash", "pop"], path, check=False)
        if not res.ok:
            # Lenient: the entry stays in the stash list for manual recovery.
            log_event("WARNING", f"Failed to re-apply stashed changes: {res.output}", service_name=service)
            return False
        log_event("INFO", "Re-applied stashed local changes", service_name=service)
        return True

    # -- checkout setup ---------------------------------------------------

    def ensure_checkout(self, cfg: EffectiveConfig, state: WatchState, retry: RetryPolicy) -> bool:
        """Make sure a checkout of the desired branch exists. Returns True if it was just cloned."""
        path = cfg.local_path
        if not self.is_checkout(path):
            self._clone(cfg, state, retry)
            return True

        current = self.current_branch(path)
        if current != cfg.branch:
            self._switch_branch(cfg, current, retry)

        if state.last_commit is None:
            state.last_commit = self.head(path)
            log_event("INFO", f"Using existing checkout at {path} (commit {state.last_commit[:12]})", service_name=cfg.name)
        return False

    def _clone(self, cfg: EffectiveConfig, state: WatchState, retry: RetryPolicy) -> None:
        path = cfg.local_path
        state.phase = SyncPhase.CLONING
        log_event("INFO", f"Cloning {cfg.repo_url} (branch {cfg.branch}) into {path}", service_name=cfg.name)

        def attempt() -> CommandResult:
            _clear_path(path, cfg.name)
            path.parent.mkdir(parents=True, exist_ok=True)
            return self._remote(["clone", "--branch", cfg.branch, cfg.repo_url, str(path)], None)

        retry.call(attempt, description="git clone")
        state.last_commit = self.head(path)
        state.pending_lifecycle = True
        log_event("INFO", f"Clone complete. Current commit: {state.last_commit}", service_name=cfg.name)

    def _switch_branch(self, cfg: EffectiveConfig, current: str, retry: RetryPolicy) -> None:
        path = cfg.local_path
        log_event("WARNING", f"Switching from branch {current} to {cfg.branch}", service_name=cfg.name)
        if self.is_dirty(path):
            log_event("WARNING", "Uncommitted changes found, stashing them", service_name=cfg.name)
            self._stash(path, "auto-stash before branch switch", cfg.name)

        if self.branch_exists(path, cfg.branch):
            self._git(["checkout", cfg.branch], path)
            return

        retry.call(self._remote, ["fetch", "origin", cfg.branch], path, description="git fetch")
        res = self._git(["checkout", "-b", cfg.branch, f"origin/{cfg.branch}"], path, check=False)
        if not res.ok:
            raise GitError(f"Branch {cfg.branch} does not exist or cannot be checked out: {res.output}")

    # -- reconciliation ---------------------------------------------------

    def sync(self, cfg: EffectiveConfig, state: WatchState, retry: RetryPolicy) -> SyncResult:
        """Fetch, compare and (if needed) pull. Never leaves a partially merged tree."""
        path = cfg.local_path
        retry.call(self._remote, ["fetch", "origin", cfg.branch], path, description="git fetch")

        remote = self.rev_parse(path, f"refs/remotes/origin/{cfg.branch}")
        head = self.head(path)
        log_event("DEBUG", f"Remote commit: {remote} / local commit: {head}", service_name=cfg.name)

        if remote == head or self.is_ancestor(path, remote, head):
            state.phase = SyncPhase.UP_TO_DATE
            state.last_commit = head
            return SyncResult(SyncPhase.UP_TO_DATE, head, changed=False)

        state.phase = SyncPhase.CHANGES_DETECTED
        log_event("INFO", f"Changes detected ({head[:12]} -> {remote[:12]}), pulling", service_name=cfg.name)

        previous = head
        stashed = False
        if self.is_dirty(path):
            log_event("WARNING", "Local uncommitted changes detected. Stashing them.", service_name=cfg.name)
            stashed = self._stash(path, "auto-stash before pull", cfg.name)

        state.phase = SyncPhase.SYNCING
        try:
            retry.call(self._pull, cfg, description="git pull")
        except _PullConflict as e:
            state.phase = SyncPhase.CONFLICT
            log_event("ERROR", "Merge conflicts detected. Reverting to previous state.", service_name=cfg.name)
            self._rollback(path, previous, stashed, cfg.name)
            state.phase = SyncPhase.FAILED
            raise SyncConflictError(f"Merge conflict pulling {cfg.branch}: {e}", restored_commit=previous) from e
        except Exception:
            self._rollback(path, previous, stashed, cfg.name, only_if_moved=True)
            state.phase = SyncPhase.FAILED
            raise

        new_head = self.head(path)
        if stashed:
            self._stash_pop(path, cfg.name)

        state.last_commit = new_head
        state.phase = SyncPhase.SYNCED
        state.pending_lifecycle = True
        log_event("INFO", f"Checkout updated to {new_head}", service_name=cfg.name)
        return SyncResult(SyncPhase.SYNCED, new_head, changed=True, previous_commit=previous)

    def _pull(self, cfg: EffectiveConfig) -> CommandResult:
        path = cfg.local_path
        res = self._git(["pull", "--no-rebase", "--no-edit", "origin", cfg.branch], path, check=False)
        if res.ok:
            return res
        text = f"{res.stdout}\n{res.stderr}".lower()
        if any(m in text for m in CONFLICT_MARKERS) or self._merge_in_progress(path):
            raise _PullConflict(res.output)
        if res.returncode == TIMEOUT_RC or any(m in text for m in NETWORK_MARKERS):
            raise TransientNetworkError(f"git pull: {res.output}")
        raise GitError(f"git pull origin {cfg.branch} failed (exit={res.returncode}): {res.output}")

    def _merge_in_progress(self, path: Path) -> bool:
        res = self._git(["rev-parse", "-q", "--verify", "MERGE_HEAD"], path, check=False)
        return res.ok

    def _rollback(self, path: Path, commit: str, stashed: bool, service: str, only_if_moved: bool = False) -> None:
        if only_if_moved:
            head = self._git(["rev-parse", "HEAD"], path, check=False).stdout.strip()
            if head == commit and not self._merge_in_progress(path):
                if stashed:
                    self._stash_pop(path, service)
                return
        res = self._git(["reset", "--hard", commit], path, check=False)
        if not res.ok:
            log_event("ERROR", f"Failed to reset to previous commit {commit}: {res.output}", service_name=service)
            raise GitError(f"rollback to {commit} failed: {res.output}")
        log_event("WARNING", f"Checkout restored to {commit}", service_name=service)
        if stashed:
            self._stash_pop(path, service)


def _clear_path(path: Path, service: str) -> None:
    """Remove whatever non-repository content occupies ``path``."""
    if path.is_symlink() or path.is_file():
        log_event("WARNING", f"{path} is a file, removing it before clone", service_name=service)
        path.unlink()
    elif path.is_dir():
        log_event("WARNING", f"{path} exists but is not a git repository. Removing contents.", service_name=service)
        shutil.rmtree(path)
