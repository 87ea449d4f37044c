"""
Delivery log and record query routes.
Read-only views over webhook_logs and dataset_records.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from salesboard.services.shared.auth import get_organization
from salesboard.services.shared.database import get_db
from salesboard.services.shared.models import Dataset, DatasetRecord, DeliveryStatus, WebhookLog
from salesboard.services.shared.schemas import DatasetRecordOut, WebhookLogOut

router = APIRouter()


@router.get("/webhook-logs", response_model=list[WebhookLogOut])
def list_webhook_logs(
    connection_id: Optional[str] = None,
    status: Optional[DeliveryStatus] = None,
    limit: int = Query(default=50, le=500),
    offset: int = 0,
    organization_id: str = Depends(get_organization),
    db=Depends(get_db),
):
    """
    Query the delivery log, newest first.
    Rejected deliveries for unknown connections carry no organization and are not listed.
    """
    q = db.query(WebhookLog).filter(WebhookLog.organization_id == organization_id)
    if connection_id:
        q = q.filter(WebhookLog.connection_id == connection_id)
    if status:
        q = q.filter(WebhookLog.status == status)
    rows = q.order_by(WebhookLog.created_at.desc(), WebhookLog.id.desc()).offset(offset).limit(limit).all()
    return [WebhookLogOut.model_validate(r) for r in rows]


@router.get("/datasets/{dataset_id}/records", response_model=list[DatasetRecordOut])
def list_dataset_records(
    dataset_id: int,
    connection_id: Optional[str] = None,
    limit: int = Query(default=50, le=500),
    offset: int = 0,
    organization_id: str = Depends(get_organization),
    db=Depends(get_db),
):
    dataset = db.query(Dataset).filter_by(id=dataset_id, organization_id=organization_id).first()
    if not dataset:
        raise HTTPException(status_code=404, detail="Dataset not found")
    q = db.query(DatasetRecord).filter(DatasetRecord.dataset_id == dataset_id)
    if connection_id:
        q = q.filter(DatasetRecord.connection_id == connection_id)
    rows = q.order_by(DatasetRecord.created_at.desc(), DatasetRecord.id.desc()).offset(offset).limit(limit).all()
    return [DatasetRecordOut.model_validate(r) for r in rows]
