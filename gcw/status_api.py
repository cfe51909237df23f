"""Read-only HTTP view over the runtime registry and the event journal."""

from __future__ import annotations

from dataclasses import asdict
from threading import Thread

import uvicorn
from fastapi import FastAPI, HTTPException, Query

from .api_models import EventOut, HealthOut, ServiceStatus
from .config import ConfigStore
from .errors import ConfigError
from .events import EventJournal, journal, log_event
from .runtime import RuntimeState, WatchState


def _status(state: WatchState, store: ConfigStore | None) -> ServiceStatus:
    data = state.snapshot()
    data["name"] = data.pop("service")
    data.pop("created_at", None)
    if store is not None:
        try:
            cfg = store.effective(state.service)
        except ConfigError:
            cfg = None
        if cfg is not None:
            data["container_name"] = cfg.container_name
            data["branch"] = cfg.branch
    return ServiceStatus(**data)


def create_app(runtime: RuntimeState, store: ConfigStore | None = None, events: EventJournal = journal) -> FastAPI:
    app = FastAPI(title="Git Config Watcher", version="1.0.0")

    @app.get("/health", response_model=HealthOut)
    def health() -> HealthOut:
        failing = runtime.failing()
        return HealthOut(
            status="degraded" if failing else "ok",
            services=len(runtime.list_states()),
            failing=failing,
            config_error=store.last_error if store is not None else None,
        )

    @app.get("/services", response_model=list[ServiceStatus])
    def services() -> list[ServiceStatus]:
        return [_status(st, store) for st in sorted(runtime.list_states(), key=lambda s: s.service)]

    @app.get("/services/{name}", response_model=ServiceStatus)
    def service(name: str) -> ServiceStatus:
        st = runtime.find(name)
        if st is None:
            raise HTTPException(status_code=404, detail=f"Unknown service '{name}'")
        return _status(st, store)

    @app.get("/events", response_model=list[EventOut])
    def list_events(limit: int = Query(50, ge=1, le=500), service: str | None = None) -> list[EventOut]:
        return [EventOut(**asdict(e)) for e in events.recent(limit=limit, service_name=service)]

    return app


class StatusServer:
    """Runs the status app under uvicorn in a daemon thread."""

    def __init__(self, app: FastAPI, host: str, port: int):
        self.host = host
        self.port = port
        self._server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self._server.run, name="gcw-status-api", daemon=True)
        self._thr.start()
        log_event("INFO", f"Status API listening on http://{self.host}:{self.port}")

    def stop(self, timeout_s: float = 5.0) -> None:
        self._server.should_exit = True
        if self._thr is not None:
            self._thr.join(timeout=timeout_s)
            self._thr = None
