"""
Health and diagnostics API.

- GET /healthz: liveness
- GET /readyz: database connectivity and required tables
- GET /api/chains: enabled networks
"""
import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import inspect

from facilitator.api.deps import get_registry
from facilitator.core.database import check_connection, get_engine, metadata
from facilitator.features.payments.registry import ChainRegistry

logger = logging.getLogger("facilitator")

root_router = APIRouter(tags=["health"])
router = APIRouter(prefix="/api", tags=["chains"])


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Ready once the database answers and the ledger tables exist."""
    if not check_connection():
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    inspector = inspect(get_engine())
    missing = sorted(name for name in metadata.tables if not inspector.has_table(name))
    if missing:
        logger.warning("readyz.missing_tables", extra={"reason": ",".join(missing)})
        return JSONResponse(status_code=503, content={"status": "error", "detail": f"missing tables: {', '.join(missing)}"})
    return {"status": "ok"}


@router.get("/chains")
def chains(registry: ChainRegistry = Depends(get_registry)):
    return {"ok": True, "chains": registry.enabled()}
