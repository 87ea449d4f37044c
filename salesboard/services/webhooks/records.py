"""
Deduplicated record storage.

The content hash of the raw payload is the idempotency key, scoped to
(dataset_id, connection_id). Outcomes:

  created                  new DatasetRecord inserted
  deduplicated             identical payload already stored, nothing written
  deduplicated+reconciled  identical payload already stored, but the dataset's
                           field set has grown: new keys merged in, existing
                           keys never overwritten

Concurrent identical deliveries collapse onto one row through
INSERT ... ON CONFLICT DO NOTHING RETURNING id; the loser re-fetches.
"""

import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from salesboard.services.shared.database import dialect_insert
from salesboard.services.shared.models import DatasetRecord, ProcessingStatus

logger = structlog.get_logger()


def payload_hash(payload: Any) -> str:
    """SHA-256 hex of the canonical JSON encoding (sorted keys, no whitespace)."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class RecordOutcome:
    record_id: Optional[int]
    extracted_data: dict[str, Any] = field(default_factory=dict)
    created: bool = False
    deduplicated: bool = False
    reconciled: bool = False
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.record_id is not None


def merge_additive(stored: dict[str, Any], fresh: dict[str, Any]) -> dict[str, Any]:
    """New keys from `fresh` are added; keys already in `stored` keep their value."""
    merged = dict(fresh)
    merged.update(stored)
    return merged


def find_existing(db, dataset_id: int, connection_id: str, content_hash: str) -> Optional[DatasetRecord]:
    return db.execute(
        select(DatasetRecord)
        .where(
            DatasetRecord.dataset_id == dataset_id,
            DatasetRecord.connection_id == connection_id,
            DatasetRecord.payload_hash == content_hash,
        )
        .limit(1)
    ).scalar_one_or_none()


def _reuse(db, existing: DatasetRecord, extracted: dict[str, Any]) -> RecordOutcome:
    stored = dict(existing.extracted_data or {})
    if len(extracted) <= len(stored):
        return RecordOutcome(record_id=existing.id, extracted_data=stored, deduplicated=True)

    record_id = existing.id
    merged = merge_additive(stored, extracted)
    existing.extracted_data = merged
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.warning("dataset_record_reconcile_failed", record_id=record_id, error=str(exc))
        return RecordOutcome(record_id=record_id, extracted_data=stored, deduplicated=True)
    logger.info(
        "dataset_record_reconciled",
        record_id=record_id,
        stored_fields=len(stored),
        merged_fields=len(merged),
    )
    return RecordOutcome(record_id=record_id, extracted_data=merged, deduplicated=True, reconciled=True)


def _insert(db, values: dict[str, Any]) -> Optional[int]:
    """
    Insert one record. Returns the new id, or None when a row with the same
    (dataset_id, connection_id, payload_hash) already exists.
    """
    stmt = dialect_insert(db, DatasetRecord)
    if stmt is not None:
        stmt = (
            stmt.values(**values)
                .on_conflict_do_nothing(index_elements=["dataset_id", "connection_id", "payload_hash"])
                .returning(DatasetRecord.id)
        )
        new_id = db.execute(stmt).scalar_one_or_none()
        db.commit()
        return new_id

    record = DatasetRecord(**values)
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    return record.id


def store_record(
    db,
    connection,
    payload: Any,
    extracted: dict[str, Any],
    force: bool = False,
) -> RecordOutcome:
    """
    Create or reuse the DatasetRecord for one delivery.
    `connection.dataset_id` must be set. With force=True the hash lookup is
    skipped and the row is stored with payload_hash=NULL.
    """
    content_hash = payload_hash(payload)

    if not force:
        existing = find_existing(db, connection.dataset_id, connection.id, content_hash)
        if existing is not None:
            return _reuse(db, existing, extracted)

    values = {
        "dataset_id":        connection.dataset_id,
        "organization_id":   connection.organization_id,
        "connection_id":     connection.id,
        "raw_payload":       payload,
        "extracted_data":    extracted,
        "payload_hash":      None if force else content_hash,
        "processing_status": ProcessingStatus.success,
    }

    try:
        new_id = _insert(db, values)
    except Exception as exc:
        db.rollback()
        logger.error("dataset_record_insert_failed", connection_id=connection.id, error=str(exc))
        return RecordOutcome(record_id=None, extracted_data=extracted, error=str(exc))

    if new_id is not None:
        logger.info("dataset_record_created", record_id=new_id, connection_id=connection.id, forced=force)
        return RecordOutcome(record_id=new_id, extracted_data=extracted, created=True)

    # Lost the insert race to a concurrent identical delivery
    existing = find_existing(db, connection.dataset_id, connection.id, content_hash)
    if existing is None:
        return RecordOutcome(record_id=None, extracted_data=extracted, error="conflicting record not found")
    logger.info("dataset_record_insert_race", record_id=existing.id, connection_id=connection.id)
    return _reuse(db, existing, extracted)
