"""
dgtledger.api.main — FastAPI application entry point
=====================================================

Run with::

    uvicorn dgtledger.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from dgtledger.api.deps import get_config, get_economy  # noqa: E402
from dgtledger.api.routes.admin import router as admin_router  # noqa: E402
from dgtledger.api.routes.wallet import router as wallet_router  # noqa: E402
from dgtledger.api.routes.webhooks import router as webhooks_router  # noqa: E402
from dgtledger.engine.errors import CooldownActive, EconomyError  # noqa: E402
from dgtledger.services.timeout_sweeper import TimeoutSweeper  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — build the economy, start the sweeper."""
    economy = get_economy()
    sweeper = TimeoutSweeper(economy, interval=get_config().sweep_interval_seconds)
    sweeper.start()
    app.state.sweeper = sweeper
    logger.info("DGT ledger API started — engine ready (%s)", economy.store.engine.url.database)
    yield
    await economy.drain_reports(timeout=5)
    sweeper.stop()
    logger.info("DGT ledger API shutting down")


app = FastAPI(
    title="DGT Ledger API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EconomyError)
async def economy_error_handler(request: Request, exc: EconomyError) -> JSONResponse:
    headers = None
    if isinstance(exc, CooldownActive):
        headers = {"Retry-After": str(exc.remaining_seconds)}
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


# Mount routers
app.include_router(wallet_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
