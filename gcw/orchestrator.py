from __future__ import annotations

import signal
import threading
import time
from threading import Event, Thread

from .config import ConfigStore, EffectiveConfig
from .docker_ops import DockerEngine
from .errors import ConfigError, EngineUnavailable, LockError, WatcherError
from .events import log_event
from .git_sync import GitSyncEngine
from .health import HealthAndRemediationMonitor, Heartbeat
from .lifecycle import ContainerLifecycleManager
from .lock import ProcessLock
from .retry import RetryPolicy
from .runtime import RuntimeState, SyncPhase, utc_now
from .settings import Settings, settings as default_settings
from .status_api import StatusServer, create_app


class WatchUnit:
    """One service's poll loop, running in its own thread."""

    def __init__(self, name: str, orchestrator: Orchestrator):
        self.name = name
        self.orchestrator = orchestrator
        self.stop_event = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self._loop, name=f"gcw-{self.name}", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self.stop_event.set()

    def join(self, timeout_s: float) -> bool:
        """Wait for the thread to exit. Returns True once it has."""
        if self._thr is None:
            return True
        self._thr.join(timeout=max(0.0, timeout_s))
        return not self._thr.is_alive()

    @property
    def alive(self) -> bool:
        return bool(self._thr and self._thr.is_alive())

    def _loop(self) -> None:
        log_event("INFO", "Watch started", service_name=self.name)
        while not self.stop_event.is_set():
            cfg = self.orchestrator.effective(self.name)
            if cfg is None:
                break
            self.orchestrator.run_cycle(self.name, stop_event=self.stop_event)
            self.stop_event.wait(max(1, cfg.watch_interval))
        log_event("INFO", "Watch stopped", service_name=self.name)


class Orchestrator:
    """Owns the lock, the shared adapters and one WatchUnit per configured service."""

    def __init__(
        self,
        store: ConfigStore,
        *,
        settings: Settings = default_settings,
        runtime: RuntimeState | None = None,
        engine: DockerEngine | None = None,
        git: GitSyncEngine | None = None,
        lifecycle: ContainerLifecycleManager | None = None,
        monitor: HealthAndRemediationMonitor | None = None,
        heartbeat: Heartbeat | None = None,
        lock_path: str | None = None,
        config_poll_s: float = 5.0,
    ):
        self.store = store
        self.settings = settings
        self.runtime = runtime or RuntimeState()
        self.engine = engine or DockerEngine(timeout_s=settings.command_timeout_s)
        self.git = git or GitSyncEngine()
        self.lifecycle = lifecycle or ContainerLifecycleManager(self.engine, command_timeout_s=settings.command_timeout_s)
        self.monitor = monitor or HealthAndRemediationMonitor(self.engine, command_timeout_s=settings.command_timeout_s)
        self.heartbeat = heartbeat
        self.lock_path = lock_path
        self.config_poll_s = config_poll_s

        self.lock: ProcessLock | None = None
        self.units: dict[str, WatchUnit] = {}
        self._retiring: dict[str, WatchUnit] = {}
        self.status_server: StatusServer | None = None
        self._stop = Event()
        self._units_lock = threading.Lock()

    # -- setup ------------------------------------------------------------

    def effective(self, name: str) -> EffectiveConfig | None:
        try:
            return self.store.effective(name)
        except ConfigError:
            return None

    def _all_effective(self) -> list[EffectiveConfig]:
        return [c for c in (self.effective(n) for n in self.store.service_names()) if c is not None]

    def setup(self) -> None:
        """Load config, take the lock, check the engine. Raises on any process-fatal condition."""
        try:
            config = self.store.current
        except ConfigError:
            config = self.store.load()
        glob = config.global_settings
        log_event("INFO", f"Loaded configuration with {len(config.services)} service(s)")

        if self.heartbeat is None:
            self.heartbeat = Heartbeat(
                timeout_s=glob.healthcheck_timeout,
                attempts=glob.retry_attempts,
                delay_s=glob.retry_delay,
                stop_event=self._stop,
            )

        self.lock = ProcessLock(self.lock_path or glob.lockfile or self.settings.lockfile)
        self.lock.acquire()

        needs_engine = [c.name for c in self._all_effective() if not c.disable_restart]
        if needs_engine:
            if not self.engine.available():
                raise EngineUnavailable(
                    f"Cannot connect to the Docker engine; restarts are enabled for: {', '.join(needs_engine)}"
                )
            _ = self.engine.engine_mode  # probe compose once, before any unit starts
        else:
            log_event("INFO", "Restarts are disabled for every service; not checking the Docker engine")

        for url in sorted({c.healthcheck_url for c in self._all_effective() if c.healthcheck_url}):
            self.heartbeat.success(url, "Monitoring started")

    # -- one cycle --------------------------------------------------------

    def run_cycle(self, name: str, stop_event: Event | None = None) -> bool:
        """One poll cycle for ``name``. Failures are recorded, never raised."""
        cfg = self.effective(name)
        if cfg is None:
            return False
        state = self.runtime.get(name)
        state.cycles += 1
        state.last_cycle_at = utc_now()
        retry = RetryPolicy(
            attempts=cfg.retry_attempts,
            delay_s=cfg.retry_delay,
            stop_event=stop_event or self._stop,
            service_name=name,
        )

        error: BaseException | None = None
        try:
            self.git.ensure_checkout(cfg, state, retry)
            self.git.sync(cfg, state, retry)
            if state.pending_lifecycle:
                self.lifecycle.apply(cfg, state, retry)
        except WatcherError as e:
            error = e
            state.record_failure(e)
        except Exception as e:
            error = e
            state.record_failure(f"{type(e).__name__}: {e}")

        # Health inspection runs whatever happened above.
        try:
            self.monitor.check(cfg, retry)
        except Exception as e:
            log_event("ERROR", f"Health check failed: {type(e).__name__}: {e}", service_name=name)
            if error is None:
                error = e
                state.record_failure(e, phase=state.phase)

        if error is not None:
            log_event("ERROR", f"Cycle failed: {type(error).__name__}: {error}", service_name=name)
            if self.heartbeat is not None:
                self.heartbeat.failure(
                    cfg.healthcheck_url, str(error), service_name=name, stop_event=retry.stop_event
                )
            return False

        state.record_success()
        if self.heartbeat is not None:
            self.heartbeat.success(
                cfg.healthcheck_url,
                f"OK {state.last_commit or ''}".strip(),
                service_name=name,
                stop_event=retry.stop_event,
            )
        return True

    def run_once(self) -> dict[str, bool]:
        """Run a single cycle for every service, sequentially. Used by ``cli.py run --once``."""
        return {name: self.run_cycle(name) for name in self.store.service_names()}

    # -- units ------------------------------------------------------------

    def _sync_units(self) -> None:
        wanted = set(self.store.service_names())
        with self._units_lock:
            self._retiring = {n: u for n, u in self._retiring.items() if u.alive}
            for name in sorted(set(self.units) - wanted):
                log_event("INFO", "Service removed from configuration; stopping its watch", service_name=name)
                unit = self.units.pop(name)
                unit.stop()
                self._retiring[name] = unit
                self.runtime.drop(name)
            for name in sorted(wanted - set(self.units)):
                if name in self._retiring:
                    # one thread per checkout: wait for the old cycle to end
                    log_event("DEBUG", "Previous watch still running; deferring start", service_name=name)
                    continue
                unit = WatchUnit(name, self)
                self.units[name] = unit
                unit.start()

    def start(self) -> None:
        self._sync_units()
        if self.settings.status_port > 0:
            app = create_app(self.runtime, self.store)
            self.status_server = StatusServer(app, self.settings.status_host, self.settings.status_port)
            self.status_server.start()

    def _reload_config(self) -> None:
        try:
            changed = self.store.refresh()
        except ConfigError as e:
            log_event("ERROR", f"Configuration reload failed, keeping the previous one: {e}")
            return
        if changed:
            log_event("INFO", "Configuration file changed; reloaded")
        if changed or self._retiring:
            self._sync_units()

    def stop(self) -> None:
        self._stop.set()

    def _handle_signal(self, signum, _frame) -> None:
        log_event("INFO", f"Received {signal.Signals(signum).name}, shutting down")
        self.stop()

    def run(self) -> int:
        """Blocking entry point. Returns the process exit code."""
        previous: dict[int, object] = {}
        if threading.current_thread() is threading.main_thread():
            for sig in (signal.SIGINT, signal.SIGTERM):
                previous[sig] = signal.signal(sig, self._handle_signal)
        try:
            try:
                self.setup()
            except (ConfigError, LockError, EngineUnavailable) as e:
                log_event("ERROR", f"Startup failed: {e}")
                return 1
            self.start()
            while not self._stop.wait(self.config_poll_s):
                self._reload_config()
            return 0
        finally:
            self.shutdown()
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def shutdown(self) -> None:
        self._stop.set()
        with self._units_lock:
            units = [*self.units.values(), *self._retiring.values()]
            self.units.clear()
            self._retiring.clear()
        for unit in units:
            unit.stop()

        deadline = time.monotonic() + max(0, self.settings.shutdown_timeout_s)
        for unit in units:
            if unit.join(deadline - time.monotonic()):
                continue
            state = self.runtime.find(unit.name)
            if state is not None and state.busy:
                state.phase = SyncPhase.FAILED
                state.pending_lifecycle = True
                state.last_error = "abandoned during shutdown"
                log_event("ERROR", "Lifecycle action still running at shutdown; abandoned", service_name=unit.name)

        if self.status_server is not None:
            self.status_server.stop()
            self.status_server = None

        if self.lock is not None:
            self.lock.release()
            self.lock = None
        log_event("INFO", "Watcher stopped")
