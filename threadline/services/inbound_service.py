from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from threadline.database import as_utc, utcnow
from threadline.logging_config import get_logger
from threadline.models import Message
from threadline.services import conversation_service, inbound_dedupe_service
from threadline.services.auto_reply_service import AutoReplyJob
from threadline.services.job_queue import JobQueue

logger = get_logger("inbound_service")


@dataclass
class InboundEvent:
    provider: str
    provider_message_id: str
    contact_id: int
    channel: str
    text: Optional[str] = None
    external_thread_id: Optional[str] = None
    lead_id: Optional[int] = None
    sender: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass
class InboundResult:
    success: bool
    duplicate: bool
    conversation_id: Optional[int] = None
    message_id: Optional[int] = None
    enqueued: bool = False


def process_inbound_event(db: Session, event: InboundEvent, job_queue: JobQueue) -> InboundResult:
    """
    Admit, thread, record and queue one inbound message.

    Duplicates stop at admission. Admitted messages are always finalized,
    COMPLETED or FAILED, whatever happens after admission.
    """
    channel = conversation_service.normalize_channel(event.channel)
    admission = inbound_dedupe_service.admit(db, event.provider, event.provider_message_id)
    if admission.is_duplicate:
        return InboundResult(success=True, duplicate=True, conversation_id=admission.conversation_id)

    received_at = as_utc(event.timestamp) if event.timestamp else utcnow()
    success = False
    error = None
    try:
        conversation_id = conversation_service.resolve_or_create(
            db,
            contact_id=event.contact_id,
            channel=channel,
            external_thread_id=event.external_thread_id,
            lead_id=event.lead_id,
            timestamp=received_at,
            direction="inbound",
        )
        inbound_dedupe_service.attach_conversation(db, admission.record_id, conversation_id)

        message = Message(
            conversation_id=conversation_id,
            lead_id=event.lead_id,
            contact_id=event.contact_id,
            direction="INBOUND",
            channel=channel,
            body=event.text,
            provider_message_id=event.provider_message_id,
            status="RECEIVED",
            created_at=received_at,
        )
        db.add(message)
        db.commit()

        job = AutoReplyJob(
            conversation_id=conversation_id,
            trigger_provider_message_id=event.provider_message_id,
            channel=channel,
            text=event.text,
            inbound_message_id=message.id,
            lead_id=event.lead_id,
            contact_id=event.contact_id,
            destination=event.sender,
        )
        enqueued = job_queue.enqueue(db, job)
        db.commit()
        success = True
    except Exception as e:
        db.rollback()
        error = f"{e.__class__.__name__}: {e}"
        logger.error(
            f"Inbound processing failed: {error}",
            extra={"context": {"provider": event.provider, "provider_message_id": event.provider_message_id}},
        )
        raise
    finally:
        inbound_dedupe_service.finalize(db, event.provider, event.provider_message_id, success, error)

    logger.info(
        "Inbound message accepted",
        extra={
            "context": {
                "provider": event.provider,
                "provider_message_id": event.provider_message_id,
                "conversation_id": conversation_id,
                "message_id": message.id,
                "queue": job_queue.name,
            }
        },
    )
    return InboundResult(
        success=True,
        duplicate=False,
        conversation_id=conversation_id,
        message_id=message.id,
        enqueued=enqueued,
    )
