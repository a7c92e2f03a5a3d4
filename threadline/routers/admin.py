"""Admin endpoints for maintenance sweeps and manual outbox runs."""

from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from threadline.config import settings
from threadline.database import get_db
from threadline.schemas.maintenance import OutboxRunRequest, OutboxRunResponse, StaleSweepRequest, StaleSweepResponse
from threadline.services.inbound_dedupe_service import reset_stale_processing
from threadline.services.outbound_service import reset_stale_pending_sends
from threadline.services.outbox_service import process_outbox_batch

router = APIRouter(prefix="/admin", tags=["admin"])


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    if not settings.admin_token:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not x_admin_token or x_admin_token != settings.admin_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


@router.post("/maintenance/stale-inbound", response_model=StaleSweepResponse, dependencies=[Depends(require_admin_token)])
def sweep_stale_inbound(body: Optional[StaleSweepRequest] = None, db: Session = Depends(get_db)):
    minutes = (body.older_than_minutes if body else None) or settings.inbound_stale_minutes
    swept = reset_stale_processing(db, timedelta(minutes=minutes))
    return StaleSweepResponse(swept=swept, older_than_minutes=minutes)


@router.post("/maintenance/stale-outbound", response_model=StaleSweepResponse, dependencies=[Depends(require_admin_token)])
def sweep_stale_outbound(body: Optional[StaleSweepRequest] = None, db: Session = Depends(get_db)):
    minutes = (body.older_than_minutes if body else None) or settings.outbound_stale_minutes
    if minutes * 60 <= settings.provider_timeout_seconds:
        raise HTTPException(status_code=422, detail="older_than_minutes must exceed the provider send timeout")
    swept = reset_stale_pending_sends(db, timedelta(minutes=minutes))
    return StaleSweepResponse(swept=swept, older_than_minutes=minutes)


@router.post("/outbox/run", response_model=OutboxRunResponse, dependencies=[Depends(require_admin_token)])
def run_outbox(body: Optional[OutboxRunRequest] = None, db: Session = Depends(get_db)):
    counts = process_outbox_batch(db, limit=body.limit if body else None)
    return OutboxRunResponse(
        claimed=counts["claimed"],
        sent=counts["SENT"],
        skipped=counts["SKIPPED"],
        failed=counts["FAILED"],
        retried=counts["retry"],
    )
