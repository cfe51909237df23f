from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from docker.errors import NotFound

from . import remediation
from .commands import TIMEOUT_RC, CommandResult, Runner, run_command, run_shell
from .config import EffectiveConfig
from .docker_ops import ContainerStatus, DockerEngine, EngineMode, resolve_compose_file, select_mode
from .errors import ContainerNotReady, RemediationFailure, RestartError, TerminalRestartError, ValidationError
from .events import log_event
from .retry import RetryPolicy
from .runtime import WatchState, utc_now


class LifecycleOutcome(str, Enum):
    COMPOSE = "compose"
    RESTARTED = "restarted"
    STARTED = "started"
    CUSTOM = "custom"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class LifecycleResult:
    outcome: LifecycleOutcome
    mode: EngineMode | None = None
    detail: str = ""


def run_validation(cfg: EffectiveConfig, runner: Runner = run_command, timeout_s: float = 60.0) -> CommandResult | None:
    """Run the service's validation command, if any. Never raises for a non-zero exit."""
    if not cfg.validation_command:
        return None
    cwd = cfg.local_path if cfg.local_path.is_dir() else None
    res = run_shell(cfg.validation_command, cwd=cwd, timeout_s=timeout_s, runner=runner)
    if res.returncode == TIMEOUT_RC:
        log_event("ERROR", f"Validation command timed out after {timeout_s:.0f}s", service_name=cfg.name)
    return res


class ContainerLifecycleManager:
    """Applies the restart/rebuild action after a checkout changed."""

    def __init__(self, engine: DockerEngine, runner: Runner = run_command, command_timeout_s: float = 60.0):
        self.engine = engine
        self.runner = runner
        self.command_timeout_s = command_timeout_s

    def validate(self, cfg: EffectiveConfig) -> None:
        res = run_validation(cfg, self.runner, self.command_timeout_s)
        if res is None:
            return
        if not res.ok:
            raise ValidationError(f"Validation command failed (exit={res.returncode}): {res.output}")
        log_event("INFO", "Configuration validation passed", service_name=cfg.name)

    def resolve_mode(self, cfg: EffectiveConfig) -> EngineMode:
        if cfg.engine_mode == "direct":
            return EngineMode.DIRECT
        return select_mode(cfg.engine_mode, self.engine.engine_mode, cfg.name)

    def apply(self, cfg: EffectiveConfig, state: WatchState, retry: RetryPolicy) -> LifecycleResult:
        if cfg.disable_restart:
            log_event("INFO", "Restart disabled; validating only", service_name=cfg.name)
            self.validate(cfg)
            state.pending_lifecycle = False
            return LifecycleResult(LifecycleOutcome.SKIPPED)

        # Nothing is touched when validation fails.
        self.validate(cfg)

        state.busy = True
        try:
            if cfg.restart_command:
                result = self._custom(cfg)
            else:
                mode = self.resolve_mode(cfg)
                if mode.is_compose:
                    result = self._compose(cfg, mode)
                else:
                    result = self._direct(cfg, retry)
            state.last_restart_at = utc_now()
            state.pending_lifecycle = False

            self._after_restart(cfg, retry)
        finally:
            state.busy = False
        return result

    def _custom(self, cfg: EffectiveConfig) -> LifecycleResult:
        log_event("INFO", f"Running restart command: {cfg.restart_command}", service_name=cfg.name)
        cwd = cfg.local_path if cfg.local_path.is_dir() else None
        res = run_shell(cfg.restart_command or "", cwd=cwd, timeout_s=self.command_timeout_s, runner=self.runner)
        if not res.ok:
            raise RestartError(f"Restart command failed (exit={res.returncode}): {res.output}")
        return LifecycleResult(LifecycleOutcome.CUSTOM, detail=cfg.restart_command or "")

    def _compose(self, cfg: EffectiveConfig, mode: EngineMode) -> LifecycleResult:
        compose_file = resolve_compose_file(cfg.compose_dir, cfg.compose_file)
        if compose_file is None:
            raise RestartError(f"No compose file found in {cfg.compose_dir}")

        log_event("INFO", f"Rebuilding with {compose_file.name} in {cfg.compose_dir}", service_name=cfg.name)
        for step in (["down"], ["build"], ["up", "-d"]):
            res = self.engine.compose(mode, cfg.compose_dir, compose_file, *step)
            if not res.ok:
                raise RestartError(f"compose {' '.join(step)} failed (exit={res.returncode}): {res.output}")
        log_event("INFO", "Compose services rebuilt and started", service_name=cfg.name)
        return LifecycleResult(LifecycleOutcome.COMPOSE, mode=mode, detail=str(compose_file))

    def _direct(self, cfg: EffectiveConfig, retry: RetryPolicy) -> LifecycleResult:
        name = cfg.container_name
        status = retry.call(self.engine.status, name, description="container status")
        try:
            if status is ContainerStatus.RUNNING:
                log_event("INFO", f"Restarting container {name}", service_name=cfg.name)
                retry.call(self.engine.restart, name, description="container restart")
                return LifecycleResult(LifecycleOutcome.RESTARTED, mode=EngineMode.DIRECT)
            if status is ContainerStatus.STOPPED:
                log_event("INFO", f"Container {name} is stopped, starting it", service_name=cfg.name)
                retry.call(self.engine.start, name, description="container start")
                return LifecycleResult(LifecycleOutcome.STARTED, mode=EngineMode.DIRECT)
        except NotFound:
            # removed between the status check and the action
            pass
        raise TerminalRestartError(f"Container {name} does not exist and cannot be created without Docker Compose")

    def _require_running(self, name: str) -> None:
        status = self.engine.status(name)
        if status is not ContainerStatus.RUNNING:
            raise ContainerNotReady(f"Container {name} is {status.value}, waiting for it to run")

    def _wait_until_running(self, cfg: EffectiveConfig, retry: RetryPolicy) -> None:
        try:
            retry.call(self._require_running, cfg.container_name, description="wait for container")
        except ContainerNotReady as e:
            raise RemediationFailure(f"Container {cfg.container_name} did not come up after restart: {e}") from e

    def _after_restart(self, cfg: EffectiveConfig, retry: RetryPolicy) -> None:
        if cfg.fix_permissions:
            self._wait_until_running(cfg, retry)
            remediation.fix_permissions(self.engine, cfg)
        res = run_validation(cfg, self.runner, self.command_timeout_s)
        if res is not None and not res.ok:
            raise RemediationFailure(f"Validation failed after restart (exit={res.returncode}): {res.output}")
