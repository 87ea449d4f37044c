"""
Salesboard SQLAlchemy ORM models - all data models in one file.
Uses SQLAlchemy 2.0 Mapped + mapped_column for full type-checker support.

Webhook ingestion tables:
  WebhookConnection, Dataset, DatasetField, DatasetRecord,
  EnrichmentRule, WebhookLog, RateLimitWindow, OrgApiKey

Enrichment target tables (the only tables an EnrichmentRule may touch):
  Lead, Closer, SalesEvent, Payment

Idempotency invariant:
  at most one DatasetRecord per (dataset_id, connection_id, payload_hash).
  Force-mode inserts store payload_hash = NULL and never collide.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Enum as SAEnum, Float, ForeignKey,
    Index, Integer, JSON, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from salesboard.services.shared.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────────────────────

class ConnectionType(str, enum.Enum):
    generic = "generic"
    stripe  = "stripe"    # timestamped HMAC from stripe-signature
    whop    = "whop"      # HMAC from x-whop-signature
    other   = "other"


class SignatureType(str, enum.Enum):
    none         = "none"
    hmac_sha256  = "hmac_sha256"
    header_token = "header_token"


class FieldType(str, enum.Enum):
    string  = "string"
    number  = "number"
    boolean = "boolean"
    date    = "date"


class FieldSource(str, enum.Enum):
    mapped     = "mapped"       # extracted from the payload by json_path
    calculated = "calculated"
    enriched   = "enriched"


class ProcessingStatus(str, enum.Enum):
    success = "success"
    error   = "error"


class DeliveryStatus(str, enum.Enum):
    success = "success"
    error   = "error"
    partial = "partial"


# ── Connections ───────────────────────────────────────────────────────────────

class WebhookConnection(Base):
    """
    One inbound webhook endpoint, addressed as POST /webhook?connection_id=<id>.
    Created by dashboard administrators; the receiver only bumps
    last_webhook_at / webhook_count.
    """
    __tablename__ = "webhook_connections"

    id:                    Mapped[str]                = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id:       Mapped[str]                = mapped_column(String(255), nullable=False, index=True)
    name:                  Mapped[str]                = mapped_column(String(255), nullable=False)
    connection_type:       Mapped[ConnectionType]     = mapped_column(SAEnum(ConnectionType), nullable=False, default=ConnectionType.generic)
    signature_type:        Mapped[SignatureType]      = mapped_column(SAEnum(SignatureType), nullable=False, default=SignatureType.none)
    signature_secret:      Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    rate_limit_per_minute: Mapped[Optional[int]]      = mapped_column(Integer, nullable=True)
    dataset_id:            Mapped[Optional[int]]      = mapped_column(Integer, ForeignKey("datasets.id", ondelete="SET NULL"), nullable=True)
    is_active:             Mapped[bool]               = mapped_column(Boolean, nullable=False, default=True)
    last_webhook_at:       Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    webhook_count:         Mapped[int]                = mapped_column(Integer, nullable=False, default=0)
    created_at:            Mapped[datetime]           = mapped_column(DateTime, default=_utcnow)
    updated_at:            Mapped[datetime]           = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)


# ── Datasets ──────────────────────────────────────────────────────────────────

class Dataset(Base):
    """A logical collection of DatasetRecords sharing one field schema."""
    __tablename__ = "datasets"

    id:              Mapped[int]           = mapped_column(Integer, primary_key=True, index=True)
    organization_id: Mapped[str]           = mapped_column(String(255), nullable=False, index=True)
    name:            Mapped[str]           = mapped_column(String(255), nullable=False)
    description:     Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at:      Mapped[datetime]      = mapped_column(DateTime, default=_utcnow)


class DatasetField(Base):
    """
    Declares how one named field is pulled out of a delivery.
    Only source_type=mapped fields with a json_path take part in extraction.
    """
    __tablename__ = "dataset_fields"

    id:              Mapped[int]           = mapped_column(Integer, primary_key=True, index=True)
    dataset_id:      Mapped[int]           = mapped_column(Integer, ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False)
    organization_id: Mapped[str]           = mapped_column(String(255), nullable=False, index=True)
    field_slug:      Mapped[str]           = mapped_column(String(255), nullable=False)
    field_name:      Mapped[str]           = mapped_column(String(255), nullable=False)
    field_type:      Mapped[FieldType]     = mapped_column(SAEnum(FieldType), nullable=False, default=FieldType.string)
    source_type:     Mapped[FieldSource]   = mapped_column(SAEnum(FieldSource), nullable=False, default=FieldSource.mapped)
    json_path:       Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    sort_order:      Mapped[int]           = mapped_column(Integer, nullable=False, default=0)
    created_at:      Mapped[datetime]      = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("dataset_id", "field_slug", name="uq_dataset_field_slug"),
    )


class DatasetRecord(Base):
    """
    The canonical, deduplicated outcome of one logical delivery.
    extracted_data is only ever merged additively on redelivery.
    """
    __tablename__ = "dataset_records"

    id:                Mapped[int]              = mapped_column(Integer, primary_key=True, index=True)
    dataset_id:        Mapped[int]              = mapped_column(Integer, ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False)
    organization_id:   Mapped[str]              = mapped_column(String(255), nullable=False, index=True)
    connection_id:     Mapped[Optional[str]]    = mapped_column(String(36), ForeignKey("webhook_connections.id", ondelete="SET NULL"), nullable=True)
    raw_payload:       Mapped[Any]              = mapped_column(JSON, nullable=False)
    extracted_data:    Mapped[dict[str, Any]]   = mapped_column(JSON, default=dict)
    payload_hash:      Mapped[Optional[str]]    = mapped_column(String(64), nullable=True)
    processing_status: Mapped[ProcessingStatus] = mapped_column(SAEnum(ProcessingStatus), nullable=False, default=ProcessingStatus.success)
    error_message:     Mapped[Optional[str]]    = mapped_column(Text, nullable=True)
    created_at:        Mapped[datetime]         = mapped_column(DateTime, default=_utcnow, index=True)

    __table_args__ = (
        UniqueConstraint("dataset_id", "connection_id", "payload_hash", name="uq_dataset_record_payload"),
    )


class EnrichmentRule(Base):
    """
    Resolve-or-create instruction against one allow-listed target table.
    field_mappings: [{"source_field": <slug>, "target_column": <column>}, ...]
    """
    __tablename__ = "dataset_enrichments"

    id:                     Mapped[int]             = mapped_column(Integer, primary_key=True, index=True)
    dataset_id:             Mapped[int]             = mapped_column(Integer, ForeignKey("datasets.id", ondelete="CASCADE"), nullable=False)
    organization_id:        Mapped[str]             = mapped_column(String(255), nullable=False, index=True)
    target_table:           Mapped[str]             = mapped_column(String(64), nullable=False)
    match_field:            Mapped[str]             = mapped_column(String(255), nullable=False)
    target_field:           Mapped[str]             = mapped_column(String(255), nullable=False)
    field_mappings:         Mapped[list[Any]]       = mapped_column(JSON, default=list)
    auto_create_if_missing: Mapped[bool]            = mapped_column(Boolean, nullable=False, default=False)
    is_active:              Mapped[bool]            = mapped_column(Boolean, nullable=False, default=True)
    created_at:             Mapped[datetime]        = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("ix_enrichment_dataset_active", "dataset_id", "is_active"),
    )


# ── Delivery audit trail ──────────────────────────────────────────────────────

class WebhookLog(Base):
    """
    Append-only record of each delivery attempt, including rejected ones.
    Rate-limited rejections are sampled; signature failures are always written.
    """
    __tablename__ = "webhook_logs"

    id:                 Mapped[int]                      = mapped_column(Integer, primary_key=True, index=True)
    connection_id:      Mapped[Optional[str]]            = mapped_column(String(36), nullable=True, index=True)
    organization_id:    Mapped[Optional[str]]            = mapped_column(String(255), nullable=True, index=True)
    status:             Mapped[DeliveryStatus]           = mapped_column(SAEnum(DeliveryStatus), nullable=False)
    raw_payload:        Mapped[Optional[Any]]            = mapped_column(JSON, nullable=True)
    extracted_data:     Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    error_message:      Mapped[Optional[str]]            = mapped_column(Text, nullable=True)
    processing_time_ms: Mapped[Optional[int]]            = mapped_column(Integer, nullable=True)
    headers:            Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    ip_address:         Mapped[Optional[str]]            = mapped_column(String(64), nullable=True)
    payload_hash:       Mapped[Optional[str]]            = mapped_column(String(64), nullable=True)
    dataset_record_id:  Mapped[Optional[int]]            = mapped_column(Integer, nullable=True)
    created_at:         Mapped[datetime]                 = mapped_column(DateTime, default=_utcnow, index=True)

    __table_args__ = (
        Index("ix_webhook_log_connection_ts", "connection_id", "created_at"),
    )


class RateLimitWindow(Base):
    """One counter row per (identifier, endpoint, fixed window)."""
    __tablename__ = "rate_limits"

    id:            Mapped[int]      = mapped_column(Integer, primary_key=True, index=True)
    identifier:    Mapped[str]      = mapped_column(String(512), nullable=False)
    endpoint:      Mapped[str]      = mapped_column(String(255), nullable=False)
    request_count: Mapped[int]      = mapped_column(Integer, nullable=False, default=1)
    window_start:  Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    created_at:    Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("identifier", "endpoint", "window_start", name="uq_rate_limit_window"),
    )


# ── Multi-Tenancy ──────────────────────────────────────────────────────────────

class OrgApiKey(Base):
    """
    Stores hashed admin API keys per organization.
    Plain-text keys are NEVER stored; only bcrypt hashes.
    The organization_id is derived from this record - callers cannot spoof it.
    """
    __tablename__ = "org_api_keys"

    id:              Mapped[int]           = mapped_column(Integer, primary_key=True, index=True)
    organization_id: Mapped[str]           = mapped_column(String(255), nullable=False, index=True)
    key_hash:        Mapped[str]           = mapped_column(String(255), nullable=False)
    description:     Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    created_at:      Mapped[datetime]      = mapped_column(DateTime, default=_utcnow)
    active:          Mapped[bool]          = mapped_column(Boolean, default=True)


# ── Enrichment targets ────────────────────────────────────────────────────────

class Lead(Base):
    __tablename__ = "leads"

    id:              Mapped[int]                = mapped_column(Integer, primary_key=True, index=True)
    organization_id: Mapped[str]                = mapped_column(String(255), nullable=False, index=True)
    email:           Mapped[Optional[str]]      = mapped_column(String(320), nullable=True)
    full_name:       Mapped[Optional[str]]      = mapped_column(String(255), nullable=True)
    phone:           Mapped[Optional[str]]      = mapped_column(String(64), nullable=True)
    source:          Mapped[Optional[str]]      = mapped_column(String(255), nullable=True)
    status:          Mapped[Optional[str]]      = mapped_column(String(64), nullable=True)
    created_at:      Mapped[datetime]           = mapped_column(DateTime, default=_utcnow)
    updated_at:      Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("email", "organization_id", name="uq_lead_email_org"),
    )


class Closer(Base):
    __tablename__ = "closers"

    id:              Mapped[int]                = mapped_column(Integer, primary_key=True, index=True)
    organization_id: Mapped[str]                = mapped_column(String(255), nullable=False, index=True)
    name:            Mapped[Optional[str]]      = mapped_column(String(255), nullable=True)
    email:           Mapped[Optional[str]]      = mapped_column(String(320), nullable=True)
    is_active:       Mapped[bool]               = mapped_column(Boolean, default=True)
    created_at:      Mapped[datetime]           = mapped_column(DateTime, default=_utcnow)
    updated_at:      Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("name", "organization_id", name="uq_closer_name_org"),
    )


class SalesEvent(Base):
    """Booked call / meeting. No natural unique key, so auto-create uses plain insert."""
    __tablename__ = "events"

    id:              Mapped[int]                = mapped_column(Integer, primary_key=True, index=True)
    organization_id: Mapped[str]                = mapped_column(String(255), nullable=False, index=True)
    external_id:     Mapped[Optional[str]]      = mapped_column(String(255), nullable=True)
    lead_email:      Mapped[Optional[str]]      = mapped_column(String(320), nullable=True)
    closer_name:     Mapped[Optional[str]]      = mapped_column(String(255), nullable=True)
    event_name:      Mapped[Optional[str]]      = mapped_column(String(255), nullable=True)
    call_status:     Mapped[Optional[str]]      = mapped_column(String(64), nullable=True)
    scheduled_at:    Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at:      Mapped[datetime]           = mapped_column(DateTime, default=_utcnow)
    updated_at:      Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class Payment(Base):
    __tablename__ = "payments"

    id:              Mapped[int]                = mapped_column(Integer, primary_key=True, index=True)
    organization_id: Mapped[str]                = mapped_column(String(255), nullable=False, index=True)
    invoice_id:      Mapped[Optional[str]]      = mapped_column(String(255), nullable=True)
    customer_email:  Mapped[Optional[str]]      = mapped_column(String(320), nullable=True)
    amount:          Mapped[Optional[float]]    = mapped_column(Float, nullable=True)
    payment_status:  Mapped[Optional[str]]      = mapped_column(String(64), nullable=True)
    payment_date:    Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    refunded:        Mapped[Optional[bool]]     = mapped_column(Boolean, nullable=True)
    created_at:      Mapped[datetime]           = mapped_column(DateTime, default=_utcnow)
    updated_at:      Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("invoice_id", "organization_id", name="uq_payment_invoice_org"),
    )
