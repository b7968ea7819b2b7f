from __future__ import annotations

from fastapi import FastAPI, HTTPException

from sitework.api.routers import notifications, task_updates
from sitework.infra.audit import AuditMiddleware
from sitework.infra.db import check_db_ready
from sitework.infra.logging_setup import configure_logging
from sitework.infra.redis_state import check_redis_ready

configure_logging()

app = FastAPI(
    title="sitework-platform",
    description="Construction project backend: task-update review workflow.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(task_updates.router, prefix="/api/tasks", tags=["task-updates"])
app.include_router(notifications.router, prefix="/api/notifications", tags=["notifications"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
