from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from threadline.database import get_db
from threadline.logging_config import get_logger
from threadline.schemas.webhook import InboundEventRequest, InboundEventResponse
from threadline.services.inbound_service import InboundEvent, process_inbound_event

logger = get_logger("webhook")

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/inbound", response_model=InboundEventResponse)
def receive_inbound(
    body: InboundEventRequest,
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Accept a normalized inbound event.

    Duplicates are acknowledged with 200 so the provider stops retrying.
    """
    event = InboundEvent(
        provider=body.provider,
        provider_message_id=body.provider_message_id,
        contact_id=body.contact_id,
        channel=body.channel,
        text=body.text,
        external_thread_id=body.external_thread_id,
        lead_id=body.lead_id,
        sender=body.sender,
        timestamp=body.timestamp,
    )
    result = process_inbound_event(db, event, request.app.state.job_queue)

    if result.duplicate:
        logger.info(f"Duplicate inbound acknowledged: {body.provider}/{body.provider_message_id}")

    return InboundEventResponse(
        success=result.success,
        duplicate=result.duplicate,
        conversation_id=result.conversation_id,
    )
