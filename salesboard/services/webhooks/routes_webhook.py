"""
Public webhook receiver.

POST /webhook?connection_id=<id>[&force=true]

The raw body is read once, before any parsing, so signatures are checked
against the exact bytes the sender signed. The synchronous pipeline then runs
in the default executor, bounded by WEBHOOK_PROCESSING_TIMEOUT_SECONDS.
"""

import asyncio
import os
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from salesboard.services.shared.database import get_session_factory
from salesboard.services.webhooks.pipeline import handle_delivery

router = APIRouter()
logger = structlog.get_logger()

PROCESSING_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_PROCESSING_TIMEOUT_SECONDS", "25"))


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    connection_id: Optional[str] = None,
    force: bool = False,
    session_factory=Depends(get_session_factory),
):
    raw_body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    peer = request.client.host if request.client else None

    loop = asyncio.get_event_loop()
    try:
        # The worker thread is left to finish on timeout
        result = await asyncio.wait_for(
            loop.run_in_executor(None, handle_delivery, session_factory, connection_id, force, raw_body, headers, peer),
            timeout=PROCESSING_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("webhook_processing_timeout", connection_id=connection_id, timeout=PROCESSING_TIMEOUT_SECONDS)
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)
