from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from edition_ledger.api.routes_audit import router as audit_router
from edition_ledger.api.routes_editions import router as editions_router
from edition_ledger.api.routes_orders import router as orders_router
from edition_ledger.core.config import get_settings
from edition_ledger.core.logging import configure_logging
from edition_ledger.domain.editions import CapacityExceededError
from edition_ledger.persistence.pg import TransientIOError, init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    logger.info("%s ready (env=%s)", settings.app_name, settings.env)


@app.exception_handler(CapacityExceededError)
async def capacity_exceeded_handler(_: Request, exc: CapacityExceededError):
    return JSONResponse(
        status_code=409,
        content={
            "detail": str(exc),
            "error": "capacity_exceeded",
            "product_id": exc.product_id,
            "edition_total": exc.edition_total,
            "active_count": exc.active_count,
        },
    )


@app.exception_handler(TransientIOError)
async def transient_io_handler(_: Request, exc: TransientIOError):
    logger.warning("datastore unavailable: %s", exc)
    return JSONResponse(
        status_code=503,
        content={
            "detail": str(exc),
            "error": "datastore_unavailable",
        },
    )


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(orders_router)
app.include_router(editions_router)
app.include_router(audit_router)
