"""
Token Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import admin_tokens, billing, health, tokens
from services.ledger_errors import LedgerError
from services.token_sweepers import run_expiration_sweep_async

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


async def _periodic_pool_expiration() -> None:
    interval_minutes = max(int(settings.EXPIRY_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await run_expiration_sweep_async()
            if result.get("processed") or result.get("errors"):
                logger.info(
                    "Pool expiration tick: processed=%s expired_tokens=%s errors=%s",
                    result.get("processed", 0),
                    result.get("expired_tokens", 0),
                    len(result.get("errors", [])),
                )
        except Exception as exc:
            logger.exception("Pool expiration tick failed: %s", exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting Token Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    expiration_task = None
    if settings.EXPIRY_SWEEP_ENABLED and int(settings.EXPIRY_SWEEP_INTERVAL_MINUTES) > 0:
        expiration_task = asyncio.create_task(_periodic_pool_expiration())
        logger.info(
            "Pool expiration loop enabled (every %s min).",
            int(settings.EXPIRY_SWEEP_INTERVAL_MINUTES),
        )
    yield
    if expiration_task is not None:
        expiration_task.cancel()
        try:
            await expiration_task
        except asyncio.CancelledError:
            pass
    logger.info("Shutting down API...")


app = FastAPI(
    title="Token Ledger API",
    description="Pooled token ledger with expiry and rollover",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error("Ledger failure on %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_dict()})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(tokens.router, prefix="/tokens", tags=["Tokens"])
app.include_router(admin_tokens.router, prefix="/admin/tokens", tags=["Admin"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Token Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
