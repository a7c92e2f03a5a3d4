from typing import Optional

from pydantic import BaseModel, Field


class StaleSweepRequest(BaseModel):
    older_than_minutes: Optional[int] = Field(default=None, gt=0)


class StaleSweepResponse(BaseModel):
    swept: int
    older_than_minutes: int


class OutboxRunRequest(BaseModel):
    limit: Optional[int] = Field(default=None, gt=0, le=500)


class OutboxRunResponse(BaseModel):
    claimed: int
    sent: int
    skipped: int
    failed: int
    retried: int
