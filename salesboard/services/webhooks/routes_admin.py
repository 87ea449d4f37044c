"""
Admin configuration routes: connections, datasets, field definitions and
enrichment rules. Every query is scoped to the caller's organization.

Enrichment rules are validated against the target-table allow-list when they
are written, so the receiver only ever sees known tables and columns.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from salesboard.services.shared.auth import get_organization
from salesboard.services.shared.database import get_db
from salesboard.services.shared.models import Dataset, DatasetField, EnrichmentRule, WebhookConnection
from salesboard.services.shared.schemas import (
    ConnectionCreate, ConnectionOut, ConnectionUpdate,
    DatasetCreate, DatasetFieldCreate, DatasetFieldOut, DatasetOut,
    EnrichmentCreate, EnrichmentOut, EnrichmentUpdate,
)
from salesboard.services.webhooks.target_store import EnrichmentConfigError, validate_target

router = APIRouter()
logger = structlog.get_logger()


def _connection_out(row: WebhookConnection) -> ConnectionOut:
    out = ConnectionOut.model_validate(row)
    out.has_secret = bool(row.signature_secret)
    return out


def _get_connection(db, connection_id: str, organization_id: str) -> WebhookConnection:
    row = db.query(WebhookConnection).filter_by(id=connection_id, organization_id=organization_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Connection not found")
    return row


def _get_dataset(db, dataset_id: int, organization_id: str) -> Dataset:
    row = db.query(Dataset).filter_by(id=dataset_id, organization_id=organization_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Dataset not found")
    return row


def _validate_rule(target_table: str, target_field: str, mappings) -> None:
    try:
        validate_target(target_table, [target_field] + [m.target_column for m in mappings])
    except EnrichmentConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


# ── Connections ───────────────────────────────────────────────────────────────

@router.post("/connections", response_model=ConnectionOut, status_code=201)
def create_connection(
    req: ConnectionCreate,
    organization_id: str = Depends(get_organization),
    db=Depends(get_db),
):
    if req.dataset_id is not None:
        _get_dataset(db, req.dataset_id, organization_id)
    row = WebhookConnection(organization_id=organization_id, **req.model_dump())
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("connection_created", connection_id=row.id, organization_id=organization_id)
    return _connection_out(row)


@router.get("/connections", response_model=list[ConnectionOut])
def list_connections(
    is_active: Optional[bool] = None,
    organization_id: str = Depends(get_organization),
    db=Depends(get_db),
):
    q = db.query(WebhookConnection).filter(WebhookConnection.organization_id == organization_id)
    if is_active is not None:
        q = q.filter(WebhookConnection.is_active == is_active)
    return [_connection_out(r) for r in q.order_by(WebhookConnection.created_at.desc()).all()]


@router.get("/connections/{connection_id}", response_model=ConnectionOut)
def get_connection(connection_id: str, organization_id: str = Depends(get_organization), db=Depends(get_db)):
    return _connection_out(_get_connection(db, connection_id, organization_id))


@router.patch("/connections/{connection_id}", response_model=ConnectionOut)
def update_connection(
    connection_id: str,
    req: ConnectionUpdate,
    organization_id: str = Depends(get_organization),
    db=Depends(get_db),
):
    row = _get_connection(db, connection_id, organization_id)
    changes = req.model_dump(exclude_unset=True)
    if changes.get("dataset_id") is not None:
        _get_dataset(db, changes["dataset_id"], organization_id)
    for key, value in changes.items():
        setattr(row, key, value)
    db.commit()
    db.refresh(row)
    logger.info("connection_updated", connection_id=row.id, fields=sorted(changes))
    return _connection_out(row)


# ── Datasets + fields ────────────────────────────────────────────────────────

@router.post("/datasets", response_model=DatasetOut, status_code=201)
def create_dataset(req: DatasetCreate, organization_id: str = Depends(get_organization), db=Depends(get_db)):
    row = Dataset(organization_id=organization_id, **req.model_dump())
    db.add(row)
    db.commit()
    db.refresh(row)
    return DatasetOut.model_validate(row)


@router.get("/datasets", response_model=list[DatasetOut])
def list_datasets(organization_id: str = Depends(get_organization), db=Depends(get_db)):
    rows = db.query(Dataset).filter(Dataset.organization_id == organization_id).order_by(Dataset.id).all()
    return [DatasetOut.model_validate(r) for r in rows]


@router.post("/datasets/{dataset_id}/fields", response_model=DatasetFieldOut, status_code=201)
def create_field(
    dataset_id: int,
    req: DatasetFieldCreate,
    organization_id: str = Depends(get_organization),
    db=Depends(get_db),
):
    _get_dataset(db, dataset_id, organization_id)
    existing = db.query(DatasetField).filter_by(dataset_id=dataset_id, field_slug=req.field_slug).first()
    if existing:
        raise HTTPException(status_code=409, detail="Field slug already exists in this dataset")
    row = DatasetField(dataset_id=dataset_id, organization_id=organization_id, **req.model_dump())
    db.add(row)
    db.commit()
    db.refresh(row)
    return DatasetFieldOut.model_validate(row)


@router.get("/datasets/{dataset_id}/fields", response_model=list[DatasetFieldOut])
def list_fields(dataset_id: int, organization_id: str = Depends(get_organization), db=Depends(get_db)):
    _get_dataset(db, dataset_id, organization_id)
    rows = (
        db.query(DatasetField)
          .filter(DatasetField.dataset_id == dataset_id)
          .order_by(DatasetField.sort_order, DatasetField.id)
          .all()
    )
    return [DatasetFieldOut.model_validate(r) for r in rows]


# ── Enrichment rules ─────────────────────────────────────────────────────────

@router.post("/datasets/{dataset_id}/enrichments", response_model=EnrichmentOut, status_code=201)
def create_enrichment(
    dataset_id: int,
    req: EnrichmentCreate,
    organization_id: str = Depends(get_organization),
    db=Depends(get_db),
):
    _get_dataset(db, dataset_id, organization_id)
    _validate_rule(req.target_table, req.target_field, req.field_mappings)
    row = EnrichmentRule(
        dataset_id=dataset_id,
        organization_id=organization_id,
        target_table=req.target_table,
        match_field=req.match_field,
        target_field=req.target_field,
        field_mappings=[m.model_dump() for m in req.field_mappings],
        auto_create_if_missing=req.auto_create_if_missing,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info("enrichment_created", enrichment_id=row.id, target_table=row.target_table)
    return EnrichmentOut.model_validate(row)


@router.get("/datasets/{dataset_id}/enrichments", response_model=list[EnrichmentOut])
def list_enrichments(
    dataset_id: int,
    include_inactive: bool = Query(default=False),
    organization_id: str = Depends(get_organization),
    db=Depends(get_db),
):
    _get_dataset(db, dataset_id, organization_id)
    q = db.query(EnrichmentRule).filter(EnrichmentRule.dataset_id == dataset_id)
    if not include_inactive:
        q = q.filter(EnrichmentRule.is_active == True)  # noqa: E712
    return [EnrichmentOut.model_validate(r) for r in q.order_by(EnrichmentRule.id).all()]


@router.patch("/enrichments/{enrichment_id}", response_model=EnrichmentOut)
def update_enrichment(
    enrichment_id: int,
    req: EnrichmentUpdate,
    organization_id: str = Depends(get_organization),
    db=Depends(get_db),
):
    row = db.query(EnrichmentRule).filter_by(id=enrichment_id, organization_id=organization_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Enrichment not found")
    changes = req.model_dump(exclude_unset=True)
    if req.field_mappings is not None:
        _validate_rule(row.target_table, row.target_field, req.field_mappings)
        changes["field_mappings"] = [m.model_dump() for m in req.field_mappings]
    for key, value in changes.items():
        setattr(row, key, value)
    db.commit()
    db.refresh(row)
    return EnrichmentOut.model_validate(row)
