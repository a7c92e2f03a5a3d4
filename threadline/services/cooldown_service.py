"""
Automation cooldown tracker.

Scheduled automation rules (reminders, follow-ups) record every run in an
append-only log and check the last successful run before acting again.

The log is read-then-append with no atomic gate, so two racing runs of the same
rule can both pass check(). Messages those runs send still go through the
outbound ledger and leave the system at most once.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.orm import Session

from threadline.database import as_utc, utcnow
from threadline.logging_config import get_logger
from threadline.models import AutomationRunLog

logger = get_logger("cooldown_service")

RUN_STATUSES = ("SUCCESS", "SKIPPED", "FAILED")


@dataclass
class CooldownCheck:
    allowed: bool
    remaining: Optional[timedelta] = None
    last_run_at: Optional[datetime] = None
    reason: Optional[str] = None


def check(
    db: Session,
    rule_key: str,
    target_id: int,
    min_interval: timedelta,
    now: Optional[datetime] = None,
) -> CooldownCheck:
    """Allow the run unless a SUCCESS run for (rule_key, target_id) is younger than min_interval."""
    now = as_utc(now) if now else utcnow()
    last_run = (
        db.query(AutomationRunLog)
        .filter(
            AutomationRunLog.rule_key == rule_key,
            AutomationRunLog.target_id == target_id,
            AutomationRunLog.status == "SUCCESS",
        )
        .order_by(AutomationRunLog.ran_at.desc())
        .first()
    )
    if last_run is None:
        return CooldownCheck(allowed=True)

    last_run_at = as_utc(last_run.ran_at)
    elapsed = now - last_run_at
    if elapsed >= min_interval:
        return CooldownCheck(allowed=True, last_run_at=last_run_at)

    remaining = min_interval - elapsed
    logger.info(
        "Automation rule in cooldown",
        extra={
            "context": {
                "rule_key": rule_key,
                "target_id": target_id,
                "remaining_seconds": int(remaining.total_seconds()),
            }
        },
    )
    return CooldownCheck(
        allowed=False,
        remaining=remaining,
        last_run_at=last_run_at,
        reason=f"Cooldown active: last run {int(elapsed.total_seconds())}s ago, "
        f"{int(remaining.total_seconds())}s remaining",
    )


def record_run(
    db: Session,
    rule_key: str,
    target_id: int,
    status: str,
    reason: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
    ran_at: Optional[datetime] = None,
) -> AutomationRunLog:
    if status not in RUN_STATUSES:
        raise ValueError(f"Unknown run status: {status}")

    run = AutomationRunLog(
        rule_key=rule_key,
        target_id=target_id,
        status=status,
        reason=reason,
        details=details,
        ran_at=ran_at or utcnow(),
    )
    db.add(run)
    db.flush()
    return run
