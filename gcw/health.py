from __future__ import annotations

from dataclasses import dataclass, field
from threading import Event

import httpx

from . import remediation
from .commands import Runner, run_command
from .config import EffectiveConfig
from .docker_ops import ContainerStatus, DockerEngine
from .errors import RemediationFailure, TransientNetworkError, WatcherError
from .events import log_event
from .lifecycle import run_validation
from .retry import RetryPolicy

MAX_LOGGED_ERRORS = 5


class Heartbeat:
    """Pings an external heartbeat endpoint: ``POST <url>`` on success, ``POST <url>/fail`` on failure.

    Delivery problems are logged as warnings and never raised.
    """

    def __init__(
        self,
        timeout_s: float = 10.0,
        attempts: int = 1,
        delay_s: float = 0.0,
        transport: httpx.BaseTransport | None = None,
        stop_event: Event | None = None,
    ):
        self.timeout_s = timeout_s
        self.attempts = attempts
        self.delay_s = delay_s
        self.transport = transport
        self.stop_event = stop_event

    def _post(self, url: str, body: str) -> None:
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=True, transport=self.transport) as client:
                resp = client.post(url, content=body.encode("utf-8"))
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{type(e).__name__}: {e}") from e
        if resp.status_code >= 500:
            raise TransientNetworkError(f"HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise WatcherError(f"HTTP {resp.status_code}")

    def _send(self, url: str, body: str, service_name: str | None, stop_event: Event | None) -> bool:
        retry = RetryPolicy(
            attempts=self.attempts,
            delay_s=self.delay_s,
            stop_event=stop_event or self.stop_event,
            service_name=service_name,
        )
        try:
            retry.call(self._post, url, body, description="heartbeat")
            return True
        except WatcherError as e:
            log_event("WARNING", f"Failed to ping health check URL {url}: {e}", service_name=service_name)
            return False

    def success(
        self,
        url: str | None,
        message: str = "OK",
        service_name: str | None = None,
        stop_event: Event | None = None,
    ) -> bool:
        if not url:
            return False
        return self._send(url, message, service_name, stop_event)

    def failure(
        self,
        url: str | None,
        error: str,
        service_name: str | None = None,
        stop_event: Event | None = None,
    ) -> bool:
        if not url:
            return False
        return self._send(f"{url.rstrip('/')}/fail", f"Error: {error}", service_name, stop_event)


@dataclass
class HealthReport:
    service: str
    container_status: ContainerStatus | None = None
    error_lines: list[str] = field(default_factory=list)
    forbidden_count: int = 0
    warnings: list[str] = field(default_factory=list)
    content_fixes: list[str] = field(default_factory=list)
    remediated: bool = False


def scan_logs(text: str, error_markers: tuple[str, ...], forbidden_markers: tuple[str, ...]) -> tuple[list[str], int]:
    """Error lines and the number of lines mentioning a forbidden marker (case-insensitive)."""
    errors: list[str] = []
    forbidden = 0
    for line in text.splitlines():
        low = line.lower()
        if any(m in low for m in error_markers):
            errors.append(line.strip())
        if any(m in low for m in forbidden_markers):
            forbidden += 1
    return errors, forbidden


class HealthAndRemediationMonitor:
    """Per-cycle log inspection with heuristic auto-remediation of 403 floods."""

    def __init__(self, engine: DockerEngine, runner: Runner = run_command, command_timeout_s: float = 60.0):
        self.engine = engine
        self.runner = runner
        self.command_timeout_s = command_timeout_s

    def check(self, cfg: EffectiveConfig, retry: RetryPolicy) -> HealthReport:
        report = HealthReport(service=cfg.name)
        if not cfg.monitor_logs:
            return report

        status = retry.call(self.engine.status, cfg.container_name, description="container status")
        report.container_status = status
        if status is not ContainerStatus.RUNNING:
            log_event("WARNING", f"Container {cfg.container_name} is {status.value}; skipping log inspection", service_name=cfg.name)
            return report

        text = retry.call(self.engine.logs, cfg.container_name, cfg.log_tail_lines, description="container logs")
        report.error_lines, report.forbidden_count = scan_logs(text, cfg.error_markers, cfg.forbidden_markers)

        if report.error_lines:
            log_event("WARNING", f"Found {len(report.error_lines)} error line(s) in container logs", service_name=cfg.name)
            for line in report.error_lines[:MAX_LOGGED_ERRORS]:
                log_event("WARNING", f"  {line}", service_name=cfg.name)

        if report.forbidden_count >= cfg.forbidden_threshold:
            log_event("WARNING", f"Detected {report.forbidden_count} forbidden response(s)", service_name=cfg.name)
            report.warnings = remediation.inspect_content(cfg)
            if cfg.auto_fix:
                self.remediate(cfg, report)
            else:
                log_event("INFO", "auto_fix is disabled; not attempting remediation", service_name=cfg.name)
        return report

    def remediate(self, cfg: EffectiveConfig, report: HealthReport) -> None:
        log_event("INFO", "Attempting to fix forbidden responses", service_name=cfg.name)
        report.content_fixes = [str(p) for p in remediation.fix_content(cfg)]
        if cfg.fix_permissions:
            remediation.fix_permissions(self.engine, cfg)

        res = run_validation(cfg, self.runner, self.command_timeout_s)
        if res is not None and not res.ok:
            raise RemediationFailure(f"Validation still failing after remediation (exit={res.returncode}): {res.output}")
        report.remediated = True
        log_event("INFO", "Remediation applied", service_name=cfg.name)
