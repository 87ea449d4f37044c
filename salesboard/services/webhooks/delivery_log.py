"""
Delivery audit trail (webhook_logs).

log_delivery() is best-effort: it opens no transaction of its own beyond a
single INSERT + COMMIT, and a failure to write the log is logged and dropped
so it can never change the response the sender receives.
"""

from typing import Any, Mapping, Optional

import structlog

from salesboard.services.shared.models import DeliveryStatus, WebhookLog

logger = structlog.get_logger()

# Never persisted to the delivery log
SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "x-webhook-token"})


def sanitize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items() if k.lower() not in SENSITIVE_HEADERS}


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Originating client address, preferring proxy-supplied headers."""
    for name in ("cf-connecting-ip", "x-real-ip"):
        value = headers.get(name)
        if value:
            return value.strip()
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return peer or "unknown"


def log_delivery(
    db,
    status: DeliveryStatus,
    connection_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    raw_payload: Any = None,
    extracted_data: Optional[dict] = None,
    error_message: Optional[str] = None,
    processing_time_ms: Optional[int] = None,
    headers: Optional[Mapping[str, str]] = None,
    ip_address: Optional[str] = None,
    payload_hash: Optional[str] = None,
    dataset_record_id: Optional[int] = None,
) -> Optional[int]:
    """Append one WebhookLog row. Returns its id, or None if the write failed."""
    try:
        entry = WebhookLog(
            connection_id=connection_id,
            organization_id=organization_id,
            status=status,
            raw_payload=raw_payload,
            extracted_data=extracted_data,
            error_message=error_message,
            processing_time_ms=processing_time_ms,
            headers=sanitize_headers(headers) if headers is not None else None,
            ip_address=ip_address,
            payload_hash=payload_hash,
            dataset_record_id=dataset_record_id,
        )
        db.add(entry)
        db.commit()
        return entry.id
    except Exception as exc:
        db.rollback()
        logger.error("delivery_log_write_failed", connection_id=connection_id, error=str(exc))
        return None
