"""
Lead Engine: FastAPI entrypoint
- Lead intake + missed-call webhook
- Two-way SMS conversations (AI dispatcher + operator console)
- Partner referrals / credit ledger
- Cron: lead nurturing, station health
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from leadengine import __version__
from leadengine.errors import LeadEngineError
from leadengine.routes import (
    conversations_router,
    cron_router,
    leads_router,
    referrals_router,
    webhooks_router,
)
from leadengine.runtime import configure_logging, get_logger, install_global_exception_hook, iso_now, log_core_env

configure_logging()
install_global_exception_hook()
log_core_env()

logger = get_logger("main")

app = FastAPI(title="Lead Engine", version=__version__)
app.include_router(webhooks_router)  # → /twilio/...
app.include_router(leads_router)  # → /api/leads
app.include_router(referrals_router)  # → /api/admin/referrals
app.include_router(conversations_router)  # → /api/conversations
app.include_router(cron_router)  # → /api/cron/...


# ─────────────────────────── Errors ────────────────────────────────
@app.exception_handler(LeadEngineError)
async def lead_engine_error_handler(request: Request, exc: LeadEngineError):
    if exc.status_code >= 500:
        logger.error("❌ %s %s failed: %s | detail=%s", request.method, request.url.path, exc, exc.detail)
        message = "Internal server error" if exc.status_code == 500 else "Upstream service failed"
        return JSONResponse(status_code=exc.status_code, content={"error": message})
    logger.info("%s %s rejected (%s): %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("❌ Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


# ─────────────────────────── Health ────────────────────────────────
@app.get("/ping")
async def ping():
    return {"ok": True, "pong": True, "time": iso_now()}


@app.get("/health")
async def health():
    return {"ok": True, "timestamp": iso_now(), "version": __version__}
