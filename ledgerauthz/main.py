from __future__ import annotations

from fastapi import FastAPI, HTTPException

from ledgerauthz.api.routers import auth, directory, platform, records, security
from ledgerauthz.infra.audit import AuditMiddleware
from ledgerauthz.infra.db import check_db_ready
from ledgerauthz.infra.log_config import configure_logging
from ledgerauthz.infra.redis_state import check_redis_ready

configure_logging()

app = FastAPI(
    title="ledgerauthz",
    description="Multi-tenant authorization for procurement ledgers.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(auth.router, prefix="/api/auth", tags=["auth"])
app.include_router(directory.router, prefix="/api/directory", tags=["directory"])
app.include_router(records.router, prefix="/api/records", tags=["records"])
app.include_router(security.router, prefix="/api/security", tags=["security"])
app.include_router(platform.router, prefix="/api/platform", tags=["platform"])


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
