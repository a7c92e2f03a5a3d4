from datetime import timedelta

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from threadline.database import get_db
from threadline.routers.admin import require_admin_token
from threadline.schemas.cooldown import CooldownCheckRequest, CooldownCheckResponse
from threadline.services import cooldown_service

router = APIRouter(prefix="/automation", tags=["automation"], dependencies=[Depends(require_admin_token)])


@router.post("/cooldown/check", response_model=CooldownCheckResponse)
def check_cooldown(body: CooldownCheckRequest, db: Session = Depends(get_db)):
    """Check a rule's cooldown for a target and optionally record the run when allowed."""
    result = cooldown_service.check(db, body.rule_key, body.target_id, timedelta(minutes=body.min_interval_minutes))

    recorded_run_id = None
    if result.allowed and body.record:
        run = cooldown_service.record_run(db, body.rule_key, body.target_id, body.status, details=body.details)
        db.commit()
        recorded_run_id = run.id

    return CooldownCheckResponse(
        allowed=result.allowed,
        remaining_seconds=int(result.remaining.total_seconds()) if result.remaining else None,
        last_run_at=result.last_run_at,
        reason=result.reason,
        recorded_run_id=recorded_run_id,
    )
