from __future__ import annotations

from datetime import timedelta
from typing import Any, Callable

from sqlalchemy import text, update
from sqlalchemy.orm import Session

from threadline.config import settings
from threadline.database import insert_for, utcnow
from threadline.logging_config import get_logger
from threadline.models import OutboundJob
from threadline.services.auto_reply_service import AutoReplyJob, AutoReplyOutcome, handle_inbound_auto_reply
from threadline.services.errors import ConfigurationError
from threadline.services.state_machine import ReplyState

logger = get_logger("outbox_service")

JOB_STATUS_BY_STATE = {
    ReplyState.REPLIED: "SENT",
    ReplyState.SKIPPED: "SKIPPED",
    ReplyState.ESCALATED: "SKIPPED",
    ReplyState.FAILED: "FAILED",
}


def enqueue_outbound_job(db: Session, job: AutoReplyJob) -> bool:
    """Persist an auto-reply job. Returns False when the same inbound message was already queued."""
    now = utcnow()
    stmt = (
        insert_for(db, OutboundJob)
        .values(
            conversation_id=job.conversation_id,
            inbound_message_id=job.inbound_message_id,
            inbound_provider_message_id=job.trigger_provider_message_id,
            channel=job.channel,
            idempotency_key=job.idempotency_key,
            payload_json=job.to_payload(),
            status="PENDING",
            attempts=0,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["idempotency_key"])
        .returning(OutboundJob.id)
    )
    return db.execute(stmt).first() is not None


def _claim_pending_postgres(db: Session, limit: int) -> list[dict[str, Any]]:
    return (
        db.execute(
            text(
                """
                WITH cte AS (
                    SELECT id
                    FROM outbound_jobs
                    WHERE status = 'PENDING'
                      AND (next_attempt_at IS NULL OR next_attempt_at <= NOW())
                    ORDER BY created_at
                    LIMIT :limit
                    FOR UPDATE SKIP LOCKED
                )
                UPDATE outbound_jobs
                SET status = 'PROCESSING',
                    attempts = attempts + 1,
                    updated_at = NOW()
                FROM cte
                WHERE outbound_jobs.id = cte.id
                RETURNING outbound_jobs.id,
                          outbound_jobs.conversation_id,
                          outbound_jobs.payload_json,
                          outbound_jobs.attempts
                """
            ),
            {"limit": limit},
        )
        .mappings()
        .all()
    )


def _claim_pending_generic(db: Session, limit: int) -> list[dict[str, Any]]:
    now = utcnow()
    candidates = (
        db.query(OutboundJob.id)
        .filter(
            OutboundJob.status == "PENDING",
            (OutboundJob.next_attempt_at.is_(None)) | (OutboundJob.next_attempt_at <= now),
        )
        .order_by(OutboundJob.created_at)
        .limit(limit)
        .all()
    )

    claimed = []
    for (job_id,) in candidates:
        row = db.execute(
            update(OutboundJob)
            .where(OutboundJob.id == job_id, OutboundJob.status == "PENDING")
            .values(status="PROCESSING", attempts=OutboundJob.attempts + 1, updated_at=now)
            .returning(OutboundJob.id, OutboundJob.conversation_id, OutboundJob.payload_json, OutboundJob.attempts)
            .execution_options(synchronize_session=False)
        ).first()
        if row is not None:
            claimed.append(dict(row._mapping))
    return claimed


def claim_pending_jobs(db: Session, *, limit: int = 10) -> list[dict[str, Any]]:
    if db.get_bind().dialect.name == "postgresql":
        rows = _claim_pending_postgres(db, limit)
    else:
        rows = _claim_pending_generic(db, limit)
    db.commit()
    return rows


def mark_job_status(
    db: Session,
    *,
    job_id: int,
    status: str,
    last_error: str | None = None,
    retry_in: timedelta | None = None,
) -> None:
    now = utcnow()
    values: dict[str, Any] = {"status": status, "last_error": last_error, "updated_at": now}
    if retry_in is not None:
        values["next_attempt_at"] = now + retry_in
    db.execute(
        update(OutboundJob)
        .where(OutboundJob.id == job_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def retry_delay(attempts: int) -> timedelta:
    return timedelta(seconds=settings.outbox_retry_backoff_seconds * (2 ** max(attempts - 1, 0)))


def _retry_or_fail(db: Session, job_id: int, attempts: int, error: str | None) -> str:
    if attempts < settings.outbox_max_attempts:
        mark_job_status(db, job_id=job_id, status="PENDING", last_error=error, retry_in=retry_delay(attempts))
        return "retry"
    mark_job_status(db, job_id=job_id, status="FAILED", last_error=error)
    return "FAILED"


def process_outbox_batch(
    db: Session,
    *,
    limit: int | None = None,
    handler: Callable[[Session, AutoReplyJob], AutoReplyOutcome] = handle_inbound_auto_reply,
) -> dict[str, int]:
    """Claim due jobs and run each through the auto-reply pipeline. Returns counts per result."""
    counts = {"claimed": 0, "SENT": 0, "SKIPPED": 0, "FAILED": 0, "retry": 0}
    rows = claim_pending_jobs(db, limit=limit or settings.outbox_process_limit)
    counts["claimed"] = len(rows)

    for row in rows:
        job_id = row["id"]
        attempts = row["attempts"]
        job = AutoReplyJob.from_payload(row["payload_json"])
        job.final_attempt = attempts >= settings.outbox_max_attempts

        try:
            outcome = handler(db, job)
        except ConfigurationError as e:
            db.rollback()
            logger.error(f"Outbox job {job_id} failed on configuration: {e}")
            mark_job_status(db, job_id=job_id, status="FAILED", last_error=str(e))
            counts["FAILED"] += 1
            continue
        except Exception as e:
            db.rollback()
            logger.exception(f"Outbox job {job_id} crashed", extra={"context": {"attempts": attempts}})
            counts[_retry_or_fail(db, job_id, attempts, f"{e.__class__.__name__}: {e}")] += 1
            continue

        status = JOB_STATUS_BY_STATE.get(outcome.state, "FAILED")
        if status == "FAILED" and outcome.retryable:
            counts[_retry_or_fail(db, job_id, attempts, outcome.error)] += 1
            continue

        mark_job_status(db, job_id=job_id, status=status, last_error=outcome.error)
        counts[status] += 1

    if rows:
        logger.info("Outbox batch processed", extra={"context": counts})
    return counts
