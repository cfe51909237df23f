from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    """Process-level inputs. The CLI overrides these with ``dataclasses.replace``."""

    # Paths
    config_path: str = os.getenv("GCW_CONFIG", "/app/services.json")
    work_dir: str = os.getenv("GCW_WORK_DIR", "/app/config")
    lockfile: str = os.getenv("GCW_LOCKFILE", "/var/run/config_watcher.lock")
    log_file: str = os.getenv("GCW_LOG_FILE", "/var/log/watcher.log")

    debug: bool = _env_bool("GCW_DEBUG", False)

    # Read-only status API (0 disables it)
    status_host: str = os.getenv("GCW_STATUS_HOST", "127.0.0.1")
    status_port: int = _env_int("GCW_STATUS_PORT", 0)

    # Timeouts
    shutdown_timeout_s: int = _env_int("GCW_SHUTDOWN_TIMEOUT_S", 30)
    command_timeout_s: int = _env_int("GCW_COMMAND_TIMEOUT_S", 60)


settings = Settings()
