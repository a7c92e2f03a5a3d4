"""
Outbound dedupe ledger.

Every outbound send goes through send_with_idempotency. The PENDING ledger row
is inserted (and committed) before the provider is called; the unique
outbound_dedupe_key makes that insert the single point where concurrent or
retried sends of the same logical message are told apart. A sender that gets no
row back never touches the network.
"""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from sqlalchemy import String, cast, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from threadline.config import settings
from threadline.database import insert_for, utcnow
from threadline.logging_config import get_logger
from threadline.models import Message, OutboundJob, OutboundMessageLog
from threadline.services import conversation_service
from threadline.services.errors import DuplicateError, ProviderSendError
from threadline.services.providers import MessagingProvider, get_provider

logger = get_logger("outbound_service")

PENDING = "PENDING"
SENT = "SENT"
FAILED = "FAILED"

REPLY_TYPES = ("greeting", "question", "answer", "closing", "manual", "followup", "reminder")

NEUTRAL_QUESTION = "How can I help you today?"

FIRST_GREETING_FIELD = "first_greeting_sent_at"

# "(Family Visa / Visit Visa / Golden Visa)" style option lists
_PAREN_OPTION_LIST = re.compile(r"\s*\([^()\n]*?/[^()\n]*?/[^()\n]*?\)")
_NUMBERED_LINE = re.compile(r"^\s*\d{1,2}[.)]\s+\S")
_FENCED_JSON = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


@dataclass
class SanitizedText:
    text: str
    was_json: bool = False
    removed_list: bool = False


@dataclass
class OutboundSendOptions:
    conversation_id: int
    destination: str
    text: Any
    channel: str
    contact_id: Optional[int] = None
    lead_id: Optional[int] = None
    trigger_provider_message_id: Optional[str] = None
    reply_type: Optional[str] = None
    last_question_key: Optional[str] = None
    flow_step: Optional[str] = None
    greeting: Optional[str] = None
    prohibited_phrases: Iterable[str] = field(default_factory=tuple)


@dataclass
class OutboundSendResult:
    success: bool
    was_duplicate: bool = False
    provider_message_id: Optional[str] = None
    outbound_log_id: Optional[int] = None
    text: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _extract_reply(obj: Any) -> Optional[str]:
    if isinstance(obj, dict):
        for key in ("reply", "text"):
            if isinstance(obj.get(key), str):
                return obj[key].strip()
    return None


def normalize_outbound_text(value: Any) -> str:
    """Unwrap {"reply": ...} / {"text": ...} payloads (JSON string or dict) into plain text."""
    if value is None:
        return ""
    if isinstance(value, dict):
        extracted = _extract_reply(value)
        return extracted if extracted is not None else ""
    text = str(value).strip()
    if text.startswith("{") and ('"reply"' in text or '"text"' in text):
        try:
            extracted = _extract_reply(json.loads(text))
        except ValueError:
            extracted = None
        if extracted is not None:
            return extracted
    return text


def _strip_structured_wrapper(text: str) -> tuple[str, bool]:
    candidate = text.strip()
    fenced = _FENCED_JSON.match(candidate)
    if fenced:
        candidate = fenced.group(1).strip()
    if not candidate.startswith("{"):
        return text, False
    try:
        parsed = json.loads(candidate)
    except ValueError:
        return text, False
    extracted = _extract_reply(parsed)
    if extracted is None:
        return "", True
    return extracted, True


def _remove_numbered_menus(text: str) -> tuple[str, bool]:
    lines = text.split("\n")
    kept: list[str] = []
    run: list[str] = []
    removed = False

    def flush_run():
        nonlocal removed
        if len(run) >= 3:
            removed = True
        else:
            kept.extend(run)
        run.clear()

    for line in lines:
        if _NUMBERED_LINE.match(line):
            run.append(line)
            continue
        flush_run()
        kept.append(line)
    flush_run()
    return "\n".join(kept), removed


def _collapse_whitespace(text: str) -> str:
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" +([,.!?;:])", r"\1", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def sanitize_reply_text(
    text: Any,
    prohibited_phrases: Iterable[str] = (),
    banned_terms: Optional[dict[str, str]] = None,
) -> SanitizedText:
    """
    Last line of defense before a reply leaves the system.

    Strips structured-data wrappers, enumerated option lists and prohibited
    phrases, substitutes banned terms, and never returns empty text.
    """
    raw = normalize_outbound_text(text)
    cleaned, was_json = _strip_structured_wrapper(raw)

    without_parens = _PAREN_OPTION_LIST.sub("", cleaned)
    removed_list = without_parens != cleaned
    cleaned, removed_menu = _remove_numbered_menus(without_parens)
    removed_list = removed_list or removed_menu

    for phrase in prohibited_phrases or ():
        if phrase and phrase.strip():
            cleaned = re.sub(re.escape(phrase.strip()), "", cleaned, flags=re.IGNORECASE)

    terms = settings.banned_terms if banned_terms is None else banned_terms
    for term, replacement in terms.items():
        cleaned = re.sub(re.escape(term), replacement, cleaned, flags=re.IGNORECASE)

    cleaned = _collapse_whitespace(cleaned)
    if not cleaned:
        cleaned = NEUTRAL_QUESTION

    if was_json or removed_list:
        logger.warning(
            "Reply text sanitized",
            extra={"context": {"was_json": was_json, "removed_list": removed_list, "preview": cleaned[:120]}},
        )
    return SanitizedText(text=cleaned, was_json=was_json, removed_list=removed_list)


def day_bucket_for(moment: Optional[datetime] = None) -> str:
    return (moment or utcnow()).strftime("%Y-%m-%d")


def compute_job_idempotency_key(conversation_id: int, inbound_provider_message_id: str, channel: str) -> str:
    """Key shared by the job queue and the ledger for replies to one inbound message."""
    parts = [
        f"conv:{conversation_id}",
        f"inbound:{inbound_provider_message_id}",
        f"channel:{channel}",
        "purpose:auto_reply",
    ]
    return _sha256("|".join(parts))


def compute_dedupe_key(
    conversation_id: int,
    channel: str,
    trigger_provider_message_id: Optional[str] = None,
    reply_type: Optional[str] = None,
    question_key: Optional[str] = None,
    text: str = "",
    day_bucket: Optional[str] = None,
) -> str:
    """
    Triggered sends key on the inbound message, so any text for the same
    trigger is the same logical send. Untriggered sends key on type, question,
    day and a short hash of the normalized text.
    """
    if trigger_provider_message_id:
        return compute_job_idempotency_key(conversation_id, trigger_provider_message_id, channel)

    normalized_question = re.sub(r"\s+", "_", question_key.strip().lower()) if question_key else "none"
    text_for_hash = re.sub(r"\s+", " ", normalize_outbound_text(text).lower())
    text_hash = _sha256(text_for_hash)[:16]
    parts = [
        f"conv:{conversation_id}",
        f"type:{reply_type or 'unknown'}",
        f"q:{normalized_question}",
        f"id:{day_bucket or day_bucket_for()}",
        f"text:{text_hash}",
    ]
    return _sha256("|".join(parts))


def _apply_greeting(db: Session, options: OutboundSendOptions, text: str) -> tuple[str, bool]:
    greeting = (options.greeting or "").strip()
    if not greeting:
        return text, False
    if conversation_service.get_known_field(db, options.conversation_id, FIRST_GREETING_FIELD):
        return text, False
    if text.lower().startswith(greeting.lower()):
        return text, True
    return f"{greeting}\n\n{text}", True


def _recent_question_sent(db: Session, conversation_id: int, question_key: str, now: datetime) -> Optional[OutboundMessageLog]:
    window = timedelta(minutes=settings.question_dedupe_window_minutes)
    return (
        db.query(OutboundMessageLog)
        .filter(
            OutboundMessageLog.conversation_id == conversation_id,
            OutboundMessageLog.reply_type == "question",
            OutboundMessageLog.last_question_key == question_key,
            OutboundMessageLog.status == SENT,
            OutboundMessageLog.sent_at >= now - window,
        )
        .order_by(OutboundMessageLog.sent_at.desc())
        .first()
    )


def _existing_log_id(db: Session, dedupe_key: str) -> Optional[int]:
    existing = db.query(OutboundMessageLog.id).filter(OutboundMessageLog.outbound_dedupe_key == dedupe_key).first()
    return existing[0] if existing else None


def _check_recent_question(db: Session, options: OutboundSendOptions, now: datetime) -> None:
    if options.reply_type != "question" or not options.last_question_key:
        return
    recent = _recent_question_sent(db, options.conversation_id, options.last_question_key, now)
    if recent is not None:
        raise DuplicateError(
            f"Duplicate question blocked: {options.last_question_key} was sent recently",
            existing_id=recent.id,
        )


def _check_job_sent(db: Session, options: OutboundSendOptions, dedupe_key: str) -> None:
    if not options.trigger_provider_message_id:
        return
    job = db.query(OutboundJob.status).filter(OutboundJob.idempotency_key == dedupe_key).first()
    if job is not None and job.status == SENT:
        raise DuplicateError(
            "Outbound job already SENT for this inbound message",
            existing_id=_existing_log_id(db, dedupe_key),
        )


def _insert_pending(
    db: Session,
    options: OutboundSendOptions,
    channel: str,
    text: str,
    dedupe_key: str,
    day_bucket: str,
    now: datetime,
) -> int:
    """Claim the dedupe key with a committed PENDING row. Raises DuplicateError when it is taken."""
    stmt = (
        insert_for(db, OutboundMessageLog)
        .values(
            provider=channel,
            conversation_id=options.conversation_id,
            trigger_provider_message_id=options.trigger_provider_message_id,
            outbound_text_hash=_sha256(text.lower()),
            outbound_dedupe_key=dedupe_key,
            logical_dedupe_key=dedupe_key,
            status=PENDING,
            reply_type=options.reply_type,
            last_question_key=options.last_question_key,
            flow_step=options.flow_step,
            day_bucket=day_bucket,
            created_at=now,
        )
        .on_conflict_do_nothing(index_elements=["outbound_dedupe_key"])
        .returning(OutboundMessageLog.id)
    )
    row = db.execute(stmt).first()
    db.commit()

    if row is None:
        raise DuplicateError(
            "Duplicate outbound message blocked by dedupe key",
            existing_id=_existing_log_id(db, dedupe_key),
        )
    return row[0]


def _mark_failed(db: Session, log_id: int, dedupe_key: str, error: str) -> None:
    db.execute(
        update(OutboundMessageLog)
        .where(OutboundMessageLog.id == log_id, OutboundMessageLog.status == PENDING)
        .values(
            status=FAILED,
            error=error[:1000],
            failed_at=utcnow(),
            outbound_dedupe_key=f"{dedupe_key}:failed:{log_id}",
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()


def _record_sent_message(
    db: Session,
    options: OutboundSendOptions,
    text: str,
    provider_message_id: Optional[str],
    sent_at: datetime,
    greeting_applied: bool,
) -> None:
    try:
        db.add(
            Message(
                conversation_id=options.conversation_id,
                lead_id=options.lead_id,
                contact_id=options.contact_id,
                direction="OUTBOUND",
                channel=options.channel,
                body=text,
                provider_message_id=provider_message_id,
                status="SENT",
                created_at=sent_at,
                sent_at=sent_at,
            )
        )
        conversation_service.touch_outbound(db, options.conversation_id, sent_at)
        if greeting_applied:
            conversation_service.mark_known_field(
                db, options.conversation_id, FIRST_GREETING_FIELD, sent_at.isoformat()
            )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"Post-send bookkeeping failed, send stays SENT: {e}",
            extra={"context": {"conversation_id": options.conversation_id, "provider_message_id": provider_message_id}},
        )


def send_with_idempotency(
    db: Session,
    options: OutboundSendOptions,
    provider: Optional[MessagingProvider] = None,
) -> OutboundSendResult:
    """
    Send one outbound message at most once per logical send.

    Raises ConfigurationError (before any ledger row exists) when the channel
    has no configured provider. Every other outcome is reported on the result.
    """
    channel = conversation_service.normalize_channel(options.channel)
    options.channel = channel
    if options.reply_type is not None and options.reply_type not in REPLY_TYPES:
        raise ValueError(f"Unknown reply type: {options.reply_type}")
    provider = provider or get_provider(channel)
    log_context = {
        "conversation_id": options.conversation_id,
        "channel": channel,
        "trigger_provider_message_id": options.trigger_provider_message_id,
        "reply_type": options.reply_type,
    }

    sanitized = sanitize_reply_text(options.text, prohibited_phrases=options.prohibited_phrases)
    text, greeting_applied = _apply_greeting(db, options, sanitized.text)

    now = utcnow()
    day_bucket = day_bucket_for(now)
    dedupe_key = compute_dedupe_key(
        options.conversation_id,
        channel,
        trigger_provider_message_id=options.trigger_provider_message_id,
        reply_type=options.reply_type,
        question_key=options.last_question_key,
        text=text,
        day_bucket=day_bucket,
    )

    try:
        _check_recent_question(db, options, now)
        _check_job_sent(db, options, dedupe_key)
        log_id = _insert_pending(db, options, channel, text, dedupe_key, day_bucket, now)
    except DuplicateError as e:
        logger.info(
            f"Outbound send blocked: {e}",
            extra={"context": {**log_context, "outbound_log_id": e.existing_id}},
        )
        return OutboundSendResult(success=False, was_duplicate=True, outbound_log_id=e.existing_id, error=str(e))

    logger.info(
        "Sending outbound message",
        extra={"context": {**log_context, "outbound_log_id": log_id, "text_length": len(text)}},
    )

    try:
        provider_message_id = provider.send_text(options.destination, text)
    except ProviderSendError as e:
        _mark_failed(db, log_id, dedupe_key, str(e))
        logger.error(
            f"Outbound send failed: {e}",
            extra={"context": {**log_context, "outbound_log_id": log_id, "retryable": e.retryable}},
        )
        return OutboundSendResult(
            success=False, outbound_log_id=log_id, text=text, error=str(e), retryable=e.retryable
        )
    except Exception as e:
        _mark_failed(db, log_id, dedupe_key, f"{e.__class__.__name__}: {e}")
        logger.exception("Outbound send crashed", extra={"context": {**log_context, "outbound_log_id": log_id}})
        return OutboundSendResult(success=False, outbound_log_id=log_id, text=text, error=str(e) or e.__class__.__name__)

    sent_at = utcnow()
    marked = db.execute(
        update(OutboundMessageLog)
        .where(OutboundMessageLog.id == log_id, OutboundMessageLog.status == PENDING)
        .values(status=SENT, provider_message_id=provider_message_id, sent_at=sent_at)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if marked.rowcount:
        logger.info(
            "Outbound message sent",
            extra={"context": {**log_context, "outbound_log_id": log_id, "provider_message_id": provider_message_id}},
        )
    else:
        # Stale sweep already failed the row and released its key; it stays FAILED
        logger.error(
            "Provider accepted a send after its ledger row was swept",
            extra={"context": {**log_context, "outbound_log_id": log_id, "provider_message_id": provider_message_id}},
        )

    _record_sent_message(db, options, text, provider_message_id, sent_at, greeting_applied)

    return OutboundSendResult(
        success=True,
        provider_message_id=provider_message_id,
        outbound_log_id=log_id,
        text=text,
    )


def reset_stale_pending_sends(db: Session, older_than: timedelta, now: Optional[datetime] = None) -> int:
    """Fail PENDING ledger rows older than the timeout and release their keys."""
    cutoff = (now or utcnow()) - older_than
    result = db.execute(
        update(OutboundMessageLog)
        .where(OutboundMessageLog.status == PENDING, OutboundMessageLog.created_at < cutoff)
        .values(
            status=FAILED,
            error="stale_pending",
            failed_at=utcnow(),
            outbound_dedupe_key=OutboundMessageLog.outbound_dedupe_key
            + ":failed:"
            + cast(OutboundMessageLog.id, String),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if result.rowcount:
        logger.warning(
            "Stale pending sends reset",
            extra={"context": {"count": result.rowcount, "cutoff": cutoff.isoformat()}},
        )
    return result.rowcount
