"""Container health probe: exit 0 when healthy (warnings allowed), 1 on any critical finding."""

from __future__ import annotations

import os
import shutil
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import psutil

from .config import WatchConfig, parse_config, read_document, resolve_effective
from .docker_ops import ContainerStatus, DockerEngine
from .errors import ConfigError, WatcherError
from .events import log_event
from .lock import pid_alive, read_pid
from .settings import Settings

REQUIRED_COMMANDS = ("git", "docker")
WATCHER_EXECUTABLES = ("gcw", "cli.py")
DEFAULT_GRACE_S = 30
LOG_SCAN_LINES = 100


@dataclass(frozen=True)
class LockStatus:
    ok: bool
    message: str
    warning: bool = False


def lock_status(
    path: str | os.PathLike[str],
    grace_s: int,
    uptime_s: float | None,
    alive: Callable[[int], bool] = pid_alive,
) -> LockStatus:
    """Judge the lockfile. An absent file is only a failure once the grace period is over."""
    p = Path(path)
    if p.exists():
        pid = read_pid(p)
        if pid is None:
            return LockStatus(False, f"Lockfile {p} exists but holds no valid PID")
        if not alive(pid):
            return LockStatus(False, f"Stale lockfile {p} (PID {pid} is not running)")
        return LockStatus(True, f"Watcher running with PID {pid}")

    if uptime_s is None:
        return LockStatus(True, "Cannot determine uptime; skipping grace period check", warning=True)
    if uptime_s > grace_s:
        return LockStatus(False, f"Lockfile {p} missing after the {grace_s}s grace period")
    return LockStatus(True, f"Within the {grace_s}s startup grace period; lockfile not required yet")


def watcher_pids() -> list[int]:
    """PIDs of running ``gcw run`` processes other than this one."""
    me = os.getpid()
    pids: list[int] = []
    for proc in psutil.process_iter(["pid", "cmdline"]):
        cmd = proc.info.get("cmdline") or []
        if proc.info["pid"] == me or "run" not in cmd:
            continue
        if any(Path(part).name in WATCHER_EXECUTABLES for part in cmd):
            pids.append(proc.info["pid"])
    return pids


def read_uptime(path: str = "/proc/uptime") -> float | None:
    try:
        return float(Path(path).read_text().split()[0])
    except (OSError, ValueError, IndexError):
        return None


def tail_errors(log_file: str | os.PathLike[str], lines: int = LOG_SCAN_LINES) -> list[str]:
    """``[ERROR]`` lines among the last ``lines`` lines of the log file."""
    p = Path(log_file)
    if not p.is_file():
        return []
    try:
        with p.open(encoding="utf-8", errors="replace") as fh:
            last = deque(fh, maxlen=lines)
    except OSError:
        return []
    return [line.rstrip("\n") for line in last if "[ERROR]" in line]


@dataclass
class ProbeReport:
    critical: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.critical

    @property
    def exit_code(self) -> int:
        return 0 if self.healthy else 1

    def fail(self, message: str) -> None:
        self.critical.append(message)
        log_event("ERROR", message)

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        log_event("WARNING", message)


def _load(settings: Settings, report: ProbeReport) -> WatchConfig | None:
    try:
        data = read_document(settings.config_path)
    except ConfigError as e:
        report.fail(str(e))
        return None
    if isinstance(data, dict) and not data.get("services"):
        report.warn("No services defined in configuration")
        return None
    try:
        return parse_config(data, source=settings.config_path)
    except ConfigError as e:
        report.fail(str(e))
        return None


def run_probe(
    settings: Settings,
    engine: DockerEngine | None = None,
    which: Callable[[str], str | None] = shutil.which,
    uptime: Callable[[], float | None] = read_uptime,
    processes: Callable[[], list[int]] = watcher_pids,
) -> ProbeReport:
    report = ProbeReport()

    for cmd in REQUIRED_COMMANDS:
        if which(cmd) is None:
            report.fail(f"Required command '{cmd}' not available")

    pids = processes()
    if not pids:
        report.fail("Watcher process is not running")
    else:
        log_event("DEBUG", f"Watcher process running with PID {pids[0]}")

    config = _load(settings, report)
    glob = config.global_settings if config is not None else None

    grace = glob.startup_grace_period if glob is not None else DEFAULT_GRACE_S
    lock_path = (glob.lockfile if glob is not None else None) or settings.lockfile
    ls = lock_status(lock_path, grace, uptime())
    if not ls.ok:
        report.fail(ls.message)
    elif ls.warning:
        report.warn(ls.message)
    else:
        log_event("DEBUG", ls.message)

    work = Path(settings.work_dir)
    if not work.is_dir():
        report.fail(f"Work directory '{work}' does not exist")
    elif not os.access(work, os.W_OK):
        report.fail(f"Work directory '{work}' is not writable")

    effective = (
        [resolve_effective(s, config.global_settings, settings.work_dir) for s in config.services]
        if config is not None
        else []
    )
    engine_ok = False
    if any(not c.disable_restart for c in effective):
        engine = engine or DockerEngine(timeout_s=settings.command_timeout_s)
        engine_ok = engine.available()
        if not engine_ok:
            report.fail("Cannot connect to the Docker engine. Is the socket mounted?")

    for c in effective:
        if not c.local_path.is_dir():
            report.warn(f"Service '{c.name}' checkout does not exist: {c.local_path}")
        elif not (c.local_path / ".git").exists():
            report.warn(f"Service '{c.name}' has no git repository at {c.local_path}")

        if c.disable_restart or not engine_ok or engine is None:
            continue
        try:
            status = engine.status(c.container_name)
        except WatcherError as e:
            report.warn(f"Cannot inspect container '{c.container_name}': {e}")
            continue
        if status is ContainerStatus.MISSING:
            report.warn(f"Container '{c.container_name}' for service '{c.name}' does not exist")
        elif status is ContainerStatus.STOPPED:
            report.warn(f"Container '{c.container_name}' for service '{c.name}' exists but is not running")

    errors = tail_errors(settings.log_file)
    if errors:
        report.warn(f"Found {len(errors)} recent error(s) in {settings.log_file}; last: {errors[-1]}")

    if report.healthy:
        log_event("INFO", f"Health check passed with {len(report.warnings)} warning(s)")
    else:
        log_event(
            "ERROR",
            f"Health check failed with {len(report.critical)} critical issue(s) and {len(report.warnings)} warning(s)",
        )
    return report
