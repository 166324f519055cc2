from __future__ import annotations

from fastapi import FastAPI, HTTPException

from hrbac.api.routers import access, identity, rbac, scopes
from hrbac.infra.audit import AuditMiddleware
from hrbac.infra.db import check_db_ready
from hrbac.infra.log import configure_logging
from hrbac.infra.redis_state import check_redis_ready

configure_logging()

app = FastAPI(
    title="tenant-hrbac",
    description="Multi-tenant identity with role and scope hierarchy based access control.",
    version="0.1.0",
)

app.add_middleware(AuditMiddleware)

app.include_router(identity.router, prefix="/api/identity", tags=["identity"])
app.include_router(rbac.router, prefix="/api/rbac", tags=["rbac"])
app.include_router(scopes.router, prefix="/api/scopes", tags=["scopes"])
app.include_router(access.router, prefix="/api/access", tags=["access"])


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
