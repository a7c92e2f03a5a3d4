from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from threadline.database import insert_for, utcnow
from threadline.logging_config import get_logger
from threadline.models import InboundMessageDedup

logger = get_logger("inbound_dedupe_service")

PROCESSING = "PROCESSING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"


@dataclass
class AdmissionResult:
    is_duplicate: bool
    record_id: Optional[int] = None
    conversation_id: Optional[int] = None


def admit(
    db: Session,
    provider: str,
    provider_message_id: str,
    conversation_id: Optional[int] = None,
) -> AdmissionResult:
    """
    Admission gate for one inbound provider message.

    Creating the dedup row is the gate: the insert either returns a new id
    (admitted) or nothing (another delivery of the same message got there
    first). The row is committed immediately so retries arriving while this
    one is still processing are rejected.
    """
    stmt = (
        insert_for(db, InboundMessageDedup)
        .values(
            provider=provider,
            provider_message_id=provider_message_id,
            conversation_id=conversation_id,
            processing_status=PROCESSING,
            created_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=["provider", "provider_message_id"])
        .returning(InboundMessageDedup.id)
    )
    row = db.execute(stmt).first()
    db.commit()

    if row is not None:
        logger.info(
            "Inbound message admitted",
            extra={"context": {"provider": provider, "provider_message_id": provider_message_id, "record_id": row[0]}},
        )
        return AdmissionResult(is_duplicate=False, record_id=row[0], conversation_id=conversation_id)

    existing = (
        db.query(InboundMessageDedup)
        .filter(
            InboundMessageDedup.provider == provider,
            InboundMessageDedup.provider_message_id == provider_message_id,
        )
        .first()
    )
    logger.info(
        "Duplicate inbound message rejected",
        extra={
            "context": {
                "provider": provider,
                "provider_message_id": provider_message_id,
                "record_id": existing.id if existing else None,
                "processing_status": existing.processing_status if existing else None,
            }
        },
    )
    return AdmissionResult(
        is_duplicate=True,
        record_id=existing.id if existing else None,
        conversation_id=existing.conversation_id if existing else None,
    )


def attach_conversation(db: Session, record_id: int, conversation_id: int) -> None:
    db.execute(
        update(InboundMessageDedup)
        .where(InboundMessageDedup.id == record_id)
        .values(conversation_id=conversation_id)
        .execution_options(synchronize_session=False)
    )


def finalize(
    db: Session,
    provider: str,
    provider_message_id: str,
    success: bool,
    error: Optional[str] = None,
) -> bool:
    """
    Move an admitted message out of PROCESSING.

    Runs from a finally block, so it logs instead of raising. Returns False when
    the row was not PROCESSING any more (already finalized or swept as stale).
    """
    try:
        result = db.execute(
            update(InboundMessageDedup)
            .where(
                InboundMessageDedup.provider == provider,
                InboundMessageDedup.provider_message_id == provider_message_id,
                InboundMessageDedup.processing_status == PROCESSING,
            )
            .values(
                processing_status=COMPLETED if success else FAILED,
                processed_at=utcnow(),
                error=(error or "")[:1000] or None,
            )
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Failed to finalize inbound message: {e}",
            extra={"context": {"provider": provider, "provider_message_id": provider_message_id}},
        )
        return False

    return result.rowcount > 0


def reset_stale_processing(db: Session, older_than: timedelta, now: Optional[datetime] = None) -> int:
    """Mark PROCESSING rows older than the timeout FAILED. Returns the number of rows swept."""
    cutoff = (now or utcnow()) - older_than
    result = db.execute(
        update(InboundMessageDedup)
        .where(
            InboundMessageDedup.processing_status == PROCESSING,
            InboundMessageDedup.created_at < cutoff,
        )
        .values(processing_status=FAILED, processed_at=utcnow(), error="stale_processing")
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if result.rowcount:
        logger.warning(
            "Stale inbound processing rows reset",
            extra={"context": {"count": result.rowcount, "cutoff": cutoff.isoformat()}},
        )
    return result.rowcount
