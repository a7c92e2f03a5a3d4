from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class CooldownCheckRequest(BaseModel):
    rule_key: str
    target_id: int
    min_interval_minutes: float = Field(gt=0)
    record: bool = False
    status: Literal["SUCCESS", "SKIPPED", "FAILED"] = "SUCCESS"
    details: Optional[dict[str, Any]] = None


class CooldownCheckResponse(BaseModel):
    allowed: bool
    remaining_seconds: Optional[int] = None
    last_run_at: Optional[datetime] = None
    reason: Optional[str] = None
    recorded_run_id: Optional[int] = None
