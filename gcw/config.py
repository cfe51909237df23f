"""Configuration document and per-cycle EffectiveConfig resolution."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Literal

import pydantic
import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import ConfigError

EngineModeSetting = Literal["auto", "compose", "direct"]

DURATION_RE = re.compile(r"^\s*(\d+)\s*([smh]?)\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"": 1, "s": 1, "m": 60, "h": 3600}

DEFAULT_CONFIG_FILES = ("/etc/nginx/nginx.conf", "/etc/nginx/conf.d/*.conf")


def parse_duration(value: int | float | str) -> int:
    """Seconds from ``30``, ``"30"``, ``"30s"``, ``"5m"`` or ``"1h"``."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value!r}")
        return int(value)
    m = DURATION_RE.match(str(value))
    if not m:
        raise ValueError(f"Invalid duration: {value!r} (use e.g. 30, '30s', '5m', '1h')")
    return int(m.group(1)) * _UNIT_SECONDS[m.group(2).lower()]


class Permissions(BaseModel):
    fix: bool | None = None
    user: str = "nginx"
    group: str = "nginx"


class GlobalSettings(BaseModel):
    watch_interval: int = Field(60, description="Seconds between polls")
    default_branch: str = "main"
    engine_mode: EngineModeSetting = "direct"
    use_docker_compose: bool | None = Field(None, description="Legacy switch; true means engine_mode=compose")
    auto_fix: bool = False
    fix_permissions: bool = True
    monitor_logs: bool = True
    disable_restart: bool = False
    default_compose_dir: str | None = None
    default_compose_file: str | None = None
    startup_grace_period: int = 30
    lockfile: str | None = None
    retry_attempts: int = Field(3, ge=1, le=20)
    retry_delay: int = 5
    healthcheck_timeout: int = 10
    healthcheck_url: str | None = None
    error_markers: list[str] = Field(default_factory=lambda: ["error"])
    forbidden_markers: list[str] = Field(default_factory=lambda: ["403", "forbidden"])
    forbidden_threshold: int = Field(1, ge=1)

    @field_validator("watch_interval", "startup_grace_period", "retry_delay", "healthcheck_timeout", mode="before")
    @classmethod
    def _durations(cls, v: Any) -> int:
        return parse_duration(v)

    @model_validator(mode="after")
    def _legacy_compose(self) -> GlobalSettings:
        if self.use_docker_compose and self.engine_mode == "direct":
            self.engine_mode = "compose"
        return self


class ServiceSpec(BaseModel):
    name: str = Field(..., min_length=1)
    container_name: str = Field(..., min_length=1)
    repo_url: str = Field(..., min_length=1)
    branch: str | None = None
    local_path: str | None = None

    engine_mode: EngineModeSetting | None = None
    use_docker_compose: bool | None = None
    docker_compose_dir: str | None = None
    docker_compose_file: str | None = None
    restart_command: str | None = None
    validation_command: str | None = None

    disable_restart: bool = False
    healthcheck_url: str | None = None
    auto_fix: bool | None = None
    monitor_logs: bool | None = None
    log_tail_lines: int = Field(100, ge=1, le=100_000)
    permissions: Permissions | None = None
    content_root: str = Field("/var/www/html", validation_alias=pydantic.AliasChoices("content_root", "web_root"))
    config_files: list[str] = Field(default_factory=lambda: list(DEFAULT_CONFIG_FILES))
    watch_interval: int | None = None

    @field_validator("watch_interval", mode="before")
    @classmethod
    def _interval(cls, v: Any) -> int | None:
        return None if v is None else parse_duration(v)

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        if "/" in v or v.strip() != v:
            raise ValueError("service name must not contain '/' or surrounding whitespace")
        return v


class WatchConfig(BaseModel):
    services: list[ServiceSpec]
    global_settings: GlobalSettings = Field(default_factory=GlobalSettings)

    @model_validator(mode="after")
    def _unique_names(self) -> WatchConfig:
        if not self.services:
            raise ValueError("no services defined")
        seen: set[str] = set()
        for s in self.services:
            if s.name in seen:
                raise ValueError(f"duplicate service name: {s.name}")
            seen.add(s.name)
        return self

    def service(self, name: str) -> ServiceSpec | None:
        for s in self.services:
            if s.name == name:
                return s
        return None


def parse_config(data: Any, source: str = "<document>") -> WatchConfig:
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: top level must be a mapping with a 'services' list")
    try:
        return WatchConfig.model_validate(data)
    except pydantic.ValidationError as e:
        raise ConfigError(f"{source}: invalid configuration: {e}") from e


def read_document(path: str | os.PathLike[str]) -> Any:
    """Read a JSON or YAML configuration document without validating it.

    ``.yml``/``.yaml`` files are parsed as YAML, everything else as JSON.
    """
    p = Path(path)
    try:
        raw = p.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigError(f"Configuration file not found: {p}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {p}: {e}") from e

    if not raw.strip():
        raise ConfigError(f"Configuration file is empty: {p}")

    try:
        if p.suffix.lower() in {".yml", ".yaml"}:
            return yaml.safe_load(raw)
        return json.loads(raw)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse configuration file {p}: {e}") from e


def load_config(path: str | os.PathLike[str]) -> WatchConfig:
    return parse_config(read_document(path), source=str(path))


@dataclass(frozen=True)
class EffectiveConfig:
    """A ServiceSpec with every unset field filled from GlobalSettings."""

    name: str
    container_name: str
    repo_url: str
    branch: str
    local_path: Path
    engine_mode: EngineModeSetting
    compose_dir: Path
    compose_file: str | None
    restart_command: str | None
    validation_command: str | None
    disable_restart: bool
    healthcheck_url: str | None
    healthcheck_timeout: int
    auto_fix: bool
    monitor_logs: bool
    log_tail_lines: int
    fix_permissions: bool
    permission_user: str
    permission_group: str
    content_root: str
    config_files: tuple[str, ...]
    watch_interval: int
    retry_attempts: int
    retry_delay: int
    error_markers: tuple[str, ...]
    forbidden_markers: tuple[str, ...]
    forbidden_threshold: int


def resolve_effective(spec: ServiceSpec, glob: GlobalSettings, work_dir: str | os.PathLike[str]) -> EffectiveConfig:
    base = Path(work_dir)
    local = Path(spec.local_path) if spec.local_path else base / spec.name
    if not local.is_absolute():
        local = base / local

    if spec.engine_mode is not None:
        mode = spec.engine_mode
    elif spec.use_docker_compose is not None:
        mode = "compose" if spec.use_docker_compose else "direct"
    else:
        mode = glob.engine_mode

    compose_dir_raw = spec.docker_compose_dir or glob.default_compose_dir
    compose_dir = Path(compose_dir_raw) if compose_dir_raw else local
    if not compose_dir.is_absolute():
        compose_dir = base / compose_dir

    perms = spec.permissions
    return EffectiveConfig(
        name=spec.name,
        container_name=spec.container_name,
        repo_url=spec.repo_url,
        branch=spec.branch or glob.default_branch,
        local_path=local,
        engine_mode=mode,
        compose_dir=compose_dir,
        compose_file=spec.docker_compose_file or glob.default_compose_file,
        restart_command=spec.restart_command,
        validation_command=spec.validation_command,
        disable_restart=spec.disable_restart or glob.disable_restart,
        healthcheck_url=spec.healthcheck_url or glob.healthcheck_url,
        healthcheck_timeout=glob.healthcheck_timeout,
        auto_fix=glob.auto_fix if spec.auto_fix is None else spec.auto_fix,
        monitor_logs=glob.monitor_logs if spec.monitor_logs is None else spec.monitor_logs,
        log_tail_lines=spec.log_tail_lines,
        fix_permissions=perms.fix if perms is not None and perms.fix is not None else glob.fix_permissions,
        permission_user=perms.user if perms is not None else Permissions().user,
        permission_group=perms.group if perms is not None else Permissions().group,
        content_root=spec.content_root,
        config_files=tuple(spec.config_files),
        watch_interval=spec.watch_interval if spec.watch_interval is not None else glob.watch_interval,
        retry_attempts=glob.retry_attempts,
        retry_delay=glob.retry_delay,
        error_markers=tuple(m.lower() for m in glob.error_markers),
        forbidden_markers=tuple(m.lower() for m in glob.forbidden_markers),
        forbidden_threshold=glob.forbidden_threshold,
    )


class ConfigStore:
    """Holds the current document and re-reads it when the file changes.

    A document that fails to load on reload is reported and the last good
    one stays in effect; only the initial load is fatal.
    """

    def __init__(self, path: str | os.PathLike[str] | None, work_dir: str | os.PathLike[str]) -> None:
        self.path = Path(path) if path else None
        self.work_dir = Path(work_dir)
        self._lock = Lock()
        self._mtime: float | None = None
        self._config: WatchConfig | None = None
        self.last_error: str | None = None

    @classmethod
    def from_config(cls, config: WatchConfig, work_dir: str | os.PathLike[str]) -> ConfigStore:
        """A store pinned to an in-memory document (never reloads)."""
        store = cls(path=None, work_dir=work_dir)
        store._config = config
        return store

    def load(self) -> WatchConfig:
        if self.path is None:
            return self.current
        cfg = load_config(self.path)
        with self._lock:
            self._config = cfg
            self._mtime = self._stat_mtime()
            self.last_error = None
        return cfg

    def _stat_mtime(self) -> float | None:
        if self.path is None:
            return None
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def refresh(self) -> bool:
        """Reload if the file changed. Returns True when a new document was adopted."""
        if self.path is None:
            return False
        mtime = self._stat_mtime()
        with self._lock:
            if mtime is None or mtime == self._mtime:
                return False
        try:
            cfg = load_config(self.path)
        except ConfigError as e:
            with self._lock:
                self._mtime = mtime
                self.last_error = str(e)
            raise
        with self._lock:
            self._config = cfg
            self._mtime = mtime
            self.last_error = None
        return True

    @property
    def current(self) -> WatchConfig:
        with self._lock:
            if self._config is None:
                raise ConfigError("configuration has not been loaded")
            return self._config

    def service_names(self) -> list[str]:
        return [s.name for s in self.current.services]

    def effective(self, name: str) -> EffectiveConfig | None:
        cfg = self.current
        spec = cfg.service(name)
        if spec is None:
            return None
        return resolve_effective(spec, cfg.global_settings, self.work_dir)
