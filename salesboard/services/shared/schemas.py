"""
Pydantic request/response schemas for the Salesboard admin API.
The public receiver (POST /webhook) answers with plain dicts; see pipeline.py.
"""

from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field

from pydantic import ConfigDict
from salesboard.services.shared.models import (
    ConnectionType, SignatureType, FieldType, FieldSource, DeliveryStatus, ProcessingStatus,
)


# ── WebhookConnection ────────────────────────────────────────────────────────

class ConnectionCreate(BaseModel):
    name: str
    connection_type: ConnectionType = ConnectionType.generic
    signature_type: SignatureType = SignatureType.none
    signature_secret: Optional[str] = None
    rate_limit_per_minute: Optional[int] = Field(default=None, gt=0)
    dataset_id: Optional[int] = None


class ConnectionUpdate(BaseModel):
    name: Optional[str] = None
    signature_type: Optional[SignatureType] = None
    signature_secret: Optional[str] = None
    rate_limit_per_minute: Optional[int] = Field(default=None, gt=0)
    dataset_id: Optional[int] = None
    is_active: Optional[bool] = None


class ConnectionOut(BaseModel):
    """Secrets are never echoed back; has_secret tells the dashboard one is set."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    organization_id: str
    name: str
    connection_type: ConnectionType
    signature_type: SignatureType
    has_secret: bool = False
    rate_limit_per_minute: Optional[int] = None
    dataset_id: Optional[int] = None
    is_active: bool
    last_webhook_at: Optional[datetime] = None
    webhook_count: int
    created_at: datetime


# ── Dataset / DatasetField ───────────────────────────────────────────────────

class DatasetCreate(BaseModel):
    name: str
    description: Optional[str] = None


class DatasetOut(BaseModel):
    id: int
    organization_id: str
    name: str
    description: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class DatasetFieldCreate(BaseModel):
    field_slug: str = Field(..., pattern=r"^[a-z0-9_]+$", examples=["customer_email"])
    field_name: str
    field_type: FieldType = FieldType.string
    source_type: FieldSource = FieldSource.mapped
    json_path: Optional[str] = Field(default=None, examples=["data.customer[0].email"])
    sort_order: int = 0


class DatasetFieldOut(BaseModel):
    id: int
    dataset_id: int
    field_slug: str
    field_name: str
    field_type: FieldType
    source_type: FieldSource
    json_path: Optional[str]
    sort_order: int

    class Config:
        from_attributes = True


class DatasetRecordOut(BaseModel):
    id: int
    dataset_id: int
    connection_id: Optional[str]
    raw_payload: Any
    extracted_data: dict[str, Any]
    payload_hash: Optional[str]
    processing_status: ProcessingStatus
    error_message: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


# ── EnrichmentRule ───────────────────────────────────────────────────────────

class FieldMapping(BaseModel):
    source_field: str
    target_column: str


class EnrichmentCreate(BaseModel):
    target_table: str = Field(..., examples=["payments"])
    match_field: str
    target_field: str
    field_mappings: list[FieldMapping] = []
    auto_create_if_missing: bool = False


class EnrichmentUpdate(BaseModel):
    is_active: Optional[bool] = None
    auto_create_if_missing: Optional[bool] = None
    field_mappings: Optional[list[FieldMapping]] = None


class EnrichmentOut(BaseModel):
    id: int
    dataset_id: int
    target_table: str
    match_field: str
    target_field: str
    field_mappings: list[dict[str, Any]]
    auto_create_if_missing: bool
    is_active: bool
    created_at: datetime

    class Config:
        from_attributes = True


# ── WebhookLog ───────────────────────────────────────────────────────────────

class WebhookLogOut(BaseModel):
    id: int
    connection_id: Optional[str]
    status: DeliveryStatus
    raw_payload: Optional[Any] = None
    extracted_data: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    processing_time_ms: Optional[int] = None
    headers: Optional[dict[str, Any]] = None
    ip_address: Optional[str] = None
    payload_hash: Optional[str] = None
    dataset_record_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True
