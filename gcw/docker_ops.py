from __future__ import annotations

from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Callable, TypeVar

import docker
import requests
from docker.errors import DockerException, NotFound

from .commands import CommandResult, Runner, run_command
from .errors import TransientNetworkError
from .events import log_event

T = TypeVar("T")

COMPOSE_FILE_CANDIDATES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")


class ContainerStatus(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    MISSING = "missing"


class EngineMode(str, Enum):
    COMPOSE_V2 = "compose_v2"  # docker compose
    COMPOSE_LEGACY = "compose_legacy"  # docker-compose
    DIRECT = "direct"

    @property
    def is_compose(self) -> bool:
        return self is not EngineMode.DIRECT


def probe_engine_mode(runner: Runner = run_command) -> EngineMode:
    """Best available lifecycle mode on this host."""
    if runner(["docker", "compose", "version"], timeout_s=15.0).ok:
        return EngineMode.COMPOSE_V2
    if runner(["docker-compose", "--version"], timeout_s=15.0).ok:
        return EngineMode.COMPOSE_LEGACY
    return EngineMode.DIRECT


def select_mode(requested: str, probed: EngineMode, service_name: str | None = None) -> EngineMode:
    """Map a service's configured engine_mode onto what the host can do."""
    if requested == "direct":
        return EngineMode.DIRECT
    if requested == "compose" and not probed.is_compose:
        log_event(
            "WARNING",
            "Docker Compose requested but not available; falling back to direct container control",
            service_name=service_name,
        )
    return probed


def compose_base(mode: EngineMode) -> list[str]:
    if mode is EngineMode.COMPOSE_V2:
        return ["docker", "compose"]
    if mode is EngineMode.COMPOSE_LEGACY:
        return ["docker-compose"]
    raise ValueError("direct mode has no compose command")


def resolve_compose_file(compose_dir: Path, compose_file: str | None) -> Path | None:
    """The compose file to use, or None when there is none on disk."""
    if compose_file:
        p = Path(compose_file)
        if not p.is_absolute():
            p = compose_dir / p
        return p if p.is_file() else None
    for name in COMPOSE_FILE_CANDIDATES:
        p = compose_dir / name
        if p.is_file():
            return p
    return None


class DockerEngine:
    """Thin adapter over the docker SDK (status/start/restart/logs/exec) and the compose CLI.

    The SDK client is created lazily with ``docker.from_env()`` unless one is
    injected. Connection-level failures surface as ``TransientNetworkError``.
    """

    def __init__(self, client: Any = None, runner: Runner = run_command, timeout_s: float = 60.0):
        self._client = client
        self.runner = runner
        self.timeout_s = timeout_s
        self._mode: EngineMode | None = None
        self._mode_lock = Lock()

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise TransientNetworkError(f"Docker engine unavailable: {e}") from e
        return self._client

    def _call(self, what: str, fn: Callable[[], T]) -> T:
        try:
            return fn()
        except NotFound:
            raise
        except (DockerException, requests.exceptions.RequestException) as e:
            raise TransientNetworkError(f"{what}: {type(e).__name__}: {e}") from e

    @property
    def engine_mode(self) -> EngineMode:
        """Probed on first use and cached for the lifetime of the engine."""
        with self._mode_lock:
            if self._mode is None:
                self._mode = probe_engine_mode(self.runner)
                log_event("INFO", f"Container engine mode: {self._mode.value}")
            return self._mode

    def available(self) -> bool:
        try:
            self._call("ping", lambda: self.client.ping())
            return True
        except TransientNetworkError:
            return False

    def _get(self, name: str) -> Any:
        return self._call(f"inspect {name}", lambda: self.client.containers.get(name))

    def status(self, name: str) -> ContainerStatus:
        try:
            cont = self._get(name)
            self._call(f"inspect {name}", cont.reload)
        except NotFound:
            return ContainerStatus.MISSING
        return ContainerStatus.RUNNING if cont.status == "running" else ContainerStatus.STOPPED

    def restart(self, name: str, timeout: int = 10) -> None:
        cont = self._get(name)
        self._call(f"restart {name}", lambda: cont.restart(timeout=timeout))

    def start(self, name: str) -> None:
        cont = self._get(name)
        self._call(f"start {name}", cont.start)

    def logs(self, name: str, tail: int) -> str:
        """Last ``tail`` lines of stdout and stderr."""
        cont = self._get(name)
        raw = self._call(f"logs {name}", lambda: cont.logs(stdout=True, stderr=True, tail=int(tail)))
        if isinstance(raw, bytes):
            return raw.decode("utf-8", errors="replace")
        return str(raw)

    def exec_root(self, name: str, cmd: list[str]) -> tuple[int, str]:
        """Run ``cmd`` inside the container as root."""
        cont = self._get(name)
        exit_code, output = self._call(f"exec in {name}", lambda: cont.exec_run(cmd, user="root"))
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        return int(exit_code if exit_code is not None else 0), output or ""

    def compose(self, mode: EngineMode, compose_dir: Path, compose_file: Path, *args: str) -> CommandResult:
        argv = [*compose_base(mode), "-f", str(compose_file), *args]
        return self.runner(argv, cwd=compose_dir, timeout_s=self.timeout_s)
