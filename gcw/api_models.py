from __future__ import annotations

from pydantic import BaseModel, Field


class ServiceStatus(BaseModel):
    name: str
    container_name: str | None = Field(None, description="Container managed for this service")
    branch: str | None = None
    phase: str = Field(..., description="Current sync phase, e.g. up_to_date, synced, failed")
    last_commit: str | None = None
    consecutive_failures: int = 0
    last_restart_at: str | None = None
    last_error: str | None = None
    last_cycle_at: str | None = None
    pending_lifecycle: bool = False
    busy: bool = False
    cycles: int = 0


class EventOut(BaseModel):
    ts: str
    level: str
    service_name: str | None = None
    message: str


class HealthOut(BaseModel):
    status: str = Field(..., description="ok|degraded")
    services: int
    failing: list[str] = Field(default_factory=list)
    config_error: str | None = None
