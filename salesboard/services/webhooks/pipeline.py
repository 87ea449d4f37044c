"""
Webhook delivery pipeline
--------------------------
One synchronous pass per inbound delivery:

  connection lookup → rate limit → JSON parse → signature check
  → stats bump → field extraction → dedup/record store → enrichments → audit log

The pipeline never raises to its caller. Every outcome, including rejections,
is returned as a DeliveryResponse; unexpected exceptions become a generic 500.
Runs inside a worker thread with its own Session (see routes_webhook).
"""

import json
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

import structlog
from sqlalchemy import select, update

from salesboard.services.shared.models import (
    DatasetField, DeliveryStatus, FieldSource, WebhookConnection,
)
from salesboard.services.webhooks.delivery_log import client_ip, log_delivery
from salesboard.services.webhooks.enrichment import run_enrichments
from salesboard.services.webhooks.extraction import extract_fields
from salesboard.services.webhooks.rate_limit import check_rate_limit
from salesboard.services.webhooks.records import payload_hash, store_record
from salesboard.services.webhooks.signatures import verify_delivery

logger = structlog.get_logger()

RATE_LIMIT_ENDPOINT = "generic-webhook"
REJECTED_LOG_SAMPLE_RATE = int(os.getenv("WEBHOOK_REJECTED_LOG_SAMPLE_RATE", "10"))


@dataclass
class DeliveryResponse:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def _error(status_code: int, message: str, **extra) -> DeliveryResponse:
    return DeliveryResponse(status_code, {"error": message, **extra})


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def get_active_connection(db, connection_id: str) -> Optional[WebhookConnection]:
    return db.execute(
        select(WebhookConnection).where(
            WebhookConnection.id == connection_id,
            WebhookConnection.is_active == True,  # noqa: E712
        )
    ).scalar_one_or_none()


def bump_delivery_stats(db, connection_id: str) -> None:
    db.execute(
        update(WebhookConnection)
        .where(WebhookConnection.id == connection_id)
        .values(
            webhook_count=WebhookConnection.webhook_count + 1,
            last_webhook_at=datetime.now(timezone.utc),
        )
    )
    db.commit()


def list_mapped_fields(db, dataset_id: int) -> list[DatasetField]:
    return list(
        db.execute(
            select(DatasetField)
            .where(DatasetField.dataset_id == dataset_id, DatasetField.source_type == FieldSource.mapped)
            .order_by(DatasetField.sort_order, DatasetField.id)
        ).scalars()
    )


def _process(db, connection_id: Optional[str], force: bool, raw_body: bytes,
             headers: Mapping[str, str], peer: Optional[str], started: float) -> DeliveryResponse:
    if not connection_id:
        return _error(400, "Missing connection_id")

    connection = get_active_connection(db, connection_id)
    if connection is None:
        logger.warning("webhook_unknown_connection", connection_id=connection_id)
        return _error(404, "Connection not found or inactive")

    ip = client_ip(headers, peer)
    audit = {
        "connection_id":   connection.id,
        "organization_id": connection.organization_id,
        "headers":         headers,
        "ip_address":      ip,
    }

    # ── Admission ────────────────────────────────────────────────────────────
    limit = check_rate_limit(
        db, f"{ip}:{connection.id}", RATE_LIMIT_ENDPOINT, max_requests=connection.rate_limit_per_minute,
    )
    if not limit.allowed:
        logger.warning(
            "webhook_rate_limited",
            connection_id=connection.id,
            ip_address=ip,
            current_count=limit.current_count,
        )
        if limit.current_count % REJECTED_LOG_SAMPLE_RATE == 0:
            log_delivery(
                db, DeliveryStatus.error,
                raw_payload={
                    "message": "Rate limited - payload not parsed",
                    "sample": f"1 of {REJECTED_LOG_SAMPLE_RATE}",
                },
                error_message="Rate limit exceeded",
                processing_time_ms=_elapsed_ms(started),
                **audit,
            )
        retry_after = limit.retry_after_seconds()
        response = _error(429, "Rate limit exceeded", retry_after=limit.reset_at.isoformat())
        response.headers["Retry-After"] = str(retry_after)
        return response

    # ── Parse + authenticate ─────────────────────────────────────────────────
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as exc:
        logger.warning("webhook_invalid_json", connection_id=connection.id, error=str(exc))
        log_delivery(
            db, DeliveryStatus.error,
            raw_payload={"raw": raw_body[:2048].decode("utf-8", errors="replace")},
            error_message="Invalid JSON payload",
            processing_time_ms=_elapsed_ms(started),
            **audit,
        )
        return _error(400, "Invalid JSON payload")

    content_hash = payload_hash(payload)

    signature = verify_delivery(connection, raw_body, headers)
    if not signature.accepted:
        logger.warning("webhook_signature_rejected", connection_id=connection.id, reason=signature.reason)
        log_delivery(
            db, DeliveryStatus.error,
            raw_payload=payload,
            error_message=f"Invalid signature: {signature.reason}",
            processing_time_ms=_elapsed_ms(started),
            payload_hash=content_hash,
            **audit,
        )
        return _error(401, "Invalid signature")

    bump_delivery_stats(db, connection.id)

    if connection.dataset_id is None:
        log_delivery(
            db, DeliveryStatus.success,
            raw_payload=payload,
            processing_time_ms=_elapsed_ms(started),
            payload_hash=content_hash,
            **audit,
        )
        return DeliveryResponse(200, {
            "success":            True,
            "dataset_record_id":  None,
            "extracted_fields":   0,
            "enrichments":        [],
            "deduplicated":       False,
            "forced":             force,
            "processing_time_ms": _elapsed_ms(started),
            "message":            "No dataset linked to this connection",
        })

    # ── Extract, store, enrich ───────────────────────────────────────────────
    extracted = extract_fields(payload, list_mapped_fields(db, connection.dataset_id))
    record = store_record(db, connection, payload, extracted, force=force)

    enrichments: list[dict[str, Any]] = []
    if record.created:
        enrichments = run_enrichments(db, connection, record.extracted_data)

    failed = not record.success or any(e["error"] for e in enrichments)
    errors = [record.error] if record.error else []
    errors += [f"enrichment {e['enrichment_id']}: {e['error']}" for e in enrichments if e["error"]]
    elapsed = _elapsed_ms(started)

    log_delivery(
        db, DeliveryStatus.partial if failed else DeliveryStatus.success,
        raw_payload=payload,
        extracted_data=record.extracted_data,
        error_message="; ".join(errors) or None,
        processing_time_ms=elapsed,
        payload_hash=None if force else content_hash,
        dataset_record_id=record.record_id,
        **audit,
    )
    logger.info(
        "webhook_processed",
        connection_id=connection.id,
        record_id=record.record_id,
        deduplicated=record.deduplicated,
        reconciled=record.reconciled,
        enrichments=len(enrichments),
        forced=force,
        processing_time_ms=elapsed,
    )

    body = {
        "success":            record.success,
        "dataset_record_id":  record.record_id,
        "extracted_fields":   len(record.extracted_data),
        "enrichments":        enrichments,
        "deduplicated":       record.deduplicated,
        "forced":             force,
        "processing_time_ms": elapsed,
    }
    if record.error:
        body["error"] = "Failed to store record"
    return DeliveryResponse(200, body)


def handle_delivery(
    session_factory: Callable,
    connection_id: Optional[str],
    force: bool,
    raw_body: bytes,
    headers: Mapping[str, str],
    peer: Optional[str] = None,
) -> DeliveryResponse:
    """
    Process one delivery end to end. `headers` must use lower-case keys.
    Always returns a DeliveryResponse; internal failures surface as 500.
    """
    started = time.monotonic()
    db = session_factory()
    try:
        return _process(db, connection_id, force, raw_body, headers, peer, started)
    except Exception as exc:
        logger.exception("webhook_processing_failed", connection_id=connection_id, error=str(exc))
        db.rollback()
        log_delivery(
            db, DeliveryStatus.error,
            connection_id=connection_id,
            error_message=str(exc),
            processing_time_ms=_elapsed_ms(started),
            headers=headers,
            ip_address=client_ip(headers, peer),
        )
        return _error(500, "Internal server error")
    finally:
        db.close()
