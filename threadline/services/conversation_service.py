from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from threadline.database import insert_for, utcnow
from threadline.logging_config import get_logger
from threadline.models import Conversation

logger = get_logger("conversation_service")

CHANNELS = ("whatsapp", "email", "instagram", "facebook", "webchat")

CHANNEL_ALIASES = {
    "whatsapp": "whatsapp",
    "wa": "whatsapp",
    "whatsapp_business": "whatsapp",
    "email": "email",
    "e_mail": "email",
    "mail": "email",
    "instagram": "instagram",
    "ig": "instagram",
    "instagram_dm": "instagram",
    "facebook": "facebook",
    "fb": "facebook",
    "messenger": "facebook",
    "webchat": "webchat",
    "web_chat": "webchat",
    "web": "webchat",
    "website": "webchat",
}


def normalize_channel(channel: Optional[str]) -> str:
    """Map a provider/channel label onto the fixed lowercase vocabulary."""
    key = (channel or "").strip().lower().replace("-", "_").replace(" ", "_")
    normalized = CHANNEL_ALIASES.get(key)
    if normalized is None:
        raise ValueError(f"Unknown channel: {channel!r}")
    return normalized


def _touched_timestamps(direction: str, timestamp: datetime) -> dict[str, Any]:
    values: dict[str, Any] = {"last_message_at": timestamp, "updated_at": timestamp}
    if direction == "outbound":
        values["last_outbound_at"] = timestamp
    else:
        values["last_inbound_at"] = timestamp
    return values


def resolve_or_create(
    db: Session,
    *,
    contact_id: int,
    channel: str,
    external_thread_id: Optional[str] = None,
    lead_id: Optional[int] = None,
    status: Optional[str] = None,
    timestamp: Optional[datetime] = None,
    direction: str = "inbound",
) -> int:
    """
    Resolve the conversation for (contact, channel[, external thread]) or create it.

    Both paths are single statements (UPDATE ... RETURNING, then
    INSERT ... ON CONFLICT DO UPDATE ... RETURNING), so concurrent callers
    for the same key always end up on one row. The stored channel is
    rewritten in normalized form on every call.
    """
    channel_lower = normalize_channel(channel)
    timestamp = timestamp or utcnow()
    touched = _touched_timestamps(direction, timestamp)
    is_inbound = direction != "outbound"

    if external_thread_id:
        values: dict[str, Any] = {**touched, "channel": channel_lower}
        if lead_id is not None:
            values["lead_id"] = lead_id
        if status:
            values["status"] = status
        if is_inbound:
            values["unread_count"] = Conversation.unread_count + 1

        stmt = (
            update(Conversation)
            .where(
                Conversation.contact_id == contact_id,
                Conversation.channel == channel_lower,
                Conversation.external_thread_id == external_thread_id,
            )
            .values(**values)
            .returning(Conversation.id)
            .execution_options(synchronize_session="fetch")
        )
        row = db.execute(stmt).first()
        if row is not None:
            logger.info(
                "Conversation updated by external thread",
                extra={
                    "context": {
                        "conversation_id": row[0],
                        "contact_id": contact_id,
                        "channel": channel_lower,
                        "external_thread_id": external_thread_id,
                    }
                },
            )
            return row[0]

    insert_stmt = insert_for(db, Conversation).values(
        contact_id=contact_id,
        lead_id=lead_id,
        channel=channel_lower,
        external_thread_id=external_thread_id,
        status=status or "open",
        unread_count=1 if is_inbound else 0,
        known_fields={},
        created_at=timestamp,
        **touched,
    )
    set_values: dict[str, Any] = {
        **touched,
        "channel": channel_lower,
        "status": status or "open",
        "lead_id": func.coalesce(insert_stmt.excluded.lead_id, Conversation.lead_id),
        "external_thread_id": func.coalesce(
            insert_stmt.excluded.external_thread_id, Conversation.external_thread_id
        ),
    }
    if is_inbound:
        set_values["unread_count"] = Conversation.unread_count + 1

    stmt = insert_stmt.on_conflict_do_update(
        index_elements=["contact_id", "channel"],
        set_=set_values,
    ).returning(Conversation.id)
    conversation_id = db.execute(stmt).scalar_one()

    logger.info(
        "Conversation upserted",
        extra={
            "context": {
                "conversation_id": conversation_id,
                "contact_id": contact_id,
                "channel": channel_lower,
                "external_thread_id": external_thread_id,
                "lead_id": lead_id,
            }
        },
    )
    return conversation_id


def touch_outbound(db: Session, conversation_id: int, sent_at: Optional[datetime] = None) -> None:
    """Record an outbound send on the thread timestamps."""
    sent_at = sent_at or utcnow()
    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation_id)
        .values(last_outbound_at=sent_at, last_message_at=sent_at, updated_at=sent_at)
        .execution_options(synchronize_session="fetch")
    )


def mark_known_field(db: Session, conversation_id: int, key: str, value: Any) -> bool:
    """Set a known field once. Returns False when it was already set."""
    conversation = (
        db.query(Conversation).filter(Conversation.id == conversation_id).with_for_update().first()
    )
    if conversation is None:
        return False

    known_fields = dict(conversation.known_fields or {})
    if known_fields.get(key):
        return False

    known_fields[key] = value
    conversation.known_fields = known_fields
    conversation.updated_at = utcnow()
    db.flush()
    return True


def get_known_field(db: Session, conversation_id: int, key: str) -> Any:
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if conversation is None or not conversation.known_fields:
        return None
    return conversation.known_fields.get(key)
