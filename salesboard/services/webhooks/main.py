"""
Salesboard Webhook Service (port 8300)
---------------------------------------
Receives deliveries from external platforms and the admin configuration API:
  1. Any configured sender → POST /webhook?connection_id=<id>
  2. Dashboard            → /api/connections, /api/datasets, /api/webhook-logs ...

Runs a background maintenance loop that purges expired rate-limit windows.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from salesboard.services.shared.database import create_all_tables

logging.basicConfig(level=logging.INFO)
logger = structlog.get_logger()

CLEANUP_INTERVAL    = int(os.getenv("RATE_LIMIT_CLEANUP_INTERVAL_SECONDS", "600"))  # 10 minutes
RETENTION_MINUTES   = int(os.getenv("RATE_LIMIT_RETENTION_MINUTES",        "60"))


async def _run_cleanup_loop(interval: int) -> None:
    """Background loop: drop rate-limit windows older than the retention period."""
    while True:
        await asyncio.sleep(interval)
        try:
            loop = asyncio.get_event_loop()
            await loop.run_in_executor(None, _call_rate_limit_cleanup)
        except Exception as exc:
            logger.error("rate_limit_cleanup_loop_error", error=str(exc))


def _call_rate_limit_cleanup() -> None:
    from salesboard.services.shared.database import SessionLocal
    from salesboard.services.webhooks.rate_limit import cleanup_rate_limits

    db = SessionLocal()
    try:
        deleted = cleanup_rate_limits(db, older_than_minutes=RETENTION_MINUTES)
        if deleted:
            logger.info("rate_limit_windows_purged", count=deleted)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("salesboard_webhooks_starting")
    create_all_tables()
    logger.info("salesboard_webhooks_tables_ready")

    cleanup_task = asyncio.create_task(_run_cleanup_loop(CLEANUP_INTERVAL))
    logger.info("rate_limit_cleanup_loop_started", interval=CLEANUP_INTERVAL)

    yield

    cleanup_task.cancel()
    logger.info("salesboard_webhooks_stopping")


app = FastAPI(
    title="Salesboard Webhook Service",
    version="0.1.0",
    description="Verifies, deduplicates and enriches inbound webhook deliveries.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routes ────────────────────────────────────────────────────────────────────
from salesboard.services.webhooks.routes_webhook import router as webhook_router  # noqa: E402
from salesboard.services.webhooks.routes_admin   import router as admin_router    # noqa: E402
from salesboard.services.webhooks.routes_logs    import router as logs_router     # noqa: E402

app.include_router(webhook_router,                tags=["Webhooks"])
app.include_router(admin_router,   prefix="/api", tags=["Configuration"])
app.include_router(logs_router,    prefix="/api", tags=["Logs"])


@app.get("/health", tags=["Health"])
def health():
    return {"status": "healthy", "service": "salesboard-webhooks", "version": "0.1.0"}
