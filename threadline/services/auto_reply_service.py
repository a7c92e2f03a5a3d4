from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from threadline.database import utcnow
from threadline.logging_config import LoggerAdapter, get_logger
from threadline.models import AgentProfile, AutoReplyLog, Contact, Lead, Message, OutboundMessageLog
from threadline.services import outbound_service
from threadline.services.errors import ConfigurationError, ThreadlineError
from threadline.services.generation_service import build_fallback_reply, generate_reply
from threadline.services.llm import LLMProvider
from threadline.services.policy_service import PolicyContext, evaluate
from threadline.services.providers import MessagingProvider
from threadline.services.retrieval_service import retrieve_and_guard
from threadline.services.state_machine import ReplyState, ReplyStateTracker
from threadline.services.task_service import create_agent_task

logger = get_logger("auto_reply_service")

LOG_TEXT_LIMIT = 500

ESCALATION_ACK_TEXT = "Thanks for your message. A member of our team will get back to you shortly."


@dataclass
class AutoReplyJob:
    conversation_id: int
    trigger_provider_message_id: str
    channel: str
    text: Optional[str]
    inbound_message_id: Optional[int] = None
    lead_id: Optional[int] = None
    contact_id: Optional[int] = None
    destination: Optional[str] = None
    # False while the outbox still has retries left for this job
    final_attempt: bool = field(default=True, compare=False)

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("final_attempt")
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AutoReplyJob":
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in payload.items() if k in fields})

    @property
    def idempotency_key(self) -> str:
        return outbound_service.compute_job_idempotency_key(
            self.conversation_id, self.trigger_provider_message_id, self.channel
        )


@dataclass
class AutoReplyOutcome:
    state: ReplyState
    decision: str
    reason: Optional[str] = None
    auto_reply_log_id: Optional[int] = None
    outbound_log_id: Optional[int] = None
    task_id: Optional[int] = None
    used_fallback: bool = False
    error: Optional[str] = None
    retryable: bool = False


def resolve_agent_profile(db: Session, lead: Optional[Lead]) -> Optional[AgentProfile]:
    """Lead's own active profile, else the active default profile."""
    if lead is not None and lead.agent_profile is not None and lead.agent_profile.is_active:
        return lead.agent_profile
    return (
        db.query(AgentProfile)
        .filter(AgentProfile.is_default.is_(True), AgentProfile.is_active.is_(True))
        .order_by(AgentProfile.id)
        .first()
    )


def resolve_destination(contact: Optional[Contact], channel: str) -> Optional[str]:
    if contact is None:
        return None
    if channel == "whatsapp":
        return contact.phone
    if channel in ("instagram", "facebook"):
        return contact.instagram_id
    if channel == "email":
        return contact.email
    return None


def is_first_contact(db: Session, conversation_id: int) -> bool:
    inbound_count = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id, Message.direction == "INBOUND")
        .count()
    )
    return inbound_count <= 1


def already_replied(db: Session, trigger_provider_message_id: str, exclude_log_id: Optional[int] = None) -> bool:
    query = db.query(AutoReplyLog.id).filter(
        AutoReplyLog.trigger_provider_message_id == trigger_provider_message_id,
        AutoReplyLog.decision == "replied",
    )
    if exclude_log_id is not None:
        query = query.filter(AutoReplyLog.id != exclude_log_id)
    if query.first() is not None:
        return True

    sent = (
        db.query(OutboundMessageLog.id)
        .filter(
            OutboundMessageLog.trigger_provider_message_id == trigger_provider_message_id,
            OutboundMessageLog.status == outbound_service.SENT,
        )
        .first()
    )
    return sent is not None


def _update_log(db: Session, log: AutoReplyLog, **values) -> None:
    for key, value in values.items():
        setattr(log, key, value)
    log.updated_at = utcnow()
    db.flush()


def _finish(
    db: Session,
    tracker: ReplyStateTracker,
    log: AutoReplyLog,
    state: ReplyState,
    reason: Optional[str] = None,
    **outcome_fields,
) -> AutoReplyOutcome:
    tracker.advance(state)
    log_values = {"decision": tracker.decision, "decision_reason": reason}
    if state == ReplyState.SKIPPED:
        log_values["skipped_reason"] = reason
    if outcome_fields.get("error"):
        log_values["error"] = outcome_fields["error"][:1000]
    _update_log(db, log, **log_values)
    db.commit()

    return AutoReplyOutcome(
        state=tracker.state,
        decision=tracker.decision,
        reason=reason,
        auto_reply_log_id=log.id,
        **outcome_fields,
    )


def _send(
    db: Session,
    job: AutoReplyJob,
    text: str,
    destination: str,
    profile: Optional[AgentProfile],
    provider: Optional[MessagingProvider],
    reply_type: str = "answer",
) -> outbound_service.OutboundSendResult:
    options = outbound_service.OutboundSendOptions(
        conversation_id=job.conversation_id,
        destination=destination,
        text=text,
        channel=job.channel,
        contact_id=job.contact_id,
        lead_id=job.lead_id,
        trigger_provider_message_id=job.trigger_provider_message_id,
        reply_type=reply_type,
        greeting=profile.custom_greeting if profile else None,
        prohibited_phrases=(profile.prohibited_phrases or ()) if profile else (),
    )
    return outbound_service.send_with_idempotency(db, options, provider=provider)


def _handle_escalation(
    db: Session,
    job: AutoReplyJob,
    tracker: ReplyStateTracker,
    log: AutoReplyLog,
    reason: str,
    task_reason: str,
    profile: Optional[AgentProfile],
    destination: Optional[str],
    provider: Optional[MessagingProvider],
    log_adapter: LoggerAdapter,
) -> AutoReplyOutcome:
    task_id = create_agent_task(
        db,
        job.lead_id,
        task_reason,
        detail=reason,
        conversation_id=job.conversation_id,
        message_text=job.text,
    )
    _update_log(db, log, human_task_created=True, human_task_id=task_id)
    db.commit()
    log_adapter.info("Escalated to human", context={"task_id": task_id, "reason": reason})

    outbound_log_id = None
    if profile is not None and profile.send_escalation_ack and destination:
        try:
            result = _send(db, job, ESCALATION_ACK_TEXT, destination, profile, provider, reply_type="manual")
        except ThreadlineError as e:
            log_adapter.warning(f"Escalation acknowledgment not sent: {e}")
        else:
            outbound_log_id = result.outbound_log_id
            _update_log(
                db,
                log,
                reply_text=ESCALATION_ACK_TEXT,
                send_outcome="duplicate" if result.was_duplicate else ("sent" if result.success else "failed"),
                outbound_log_id=outbound_log_id,
            )

    return _finish(db, tracker, log, ReplyState.ESCALATED, reason, task_id=task_id, outbound_log_id=outbound_log_id)


def handle_inbound_auto_reply(
    db: Session,
    job: AutoReplyJob,
    provider: Optional[MessagingProvider] = None,
    llm: Optional[LLMProvider] = None,
    now: Optional[datetime] = None,
) -> AutoReplyOutcome:
    """
    Run one admitted inbound message through the auto-reply pipeline.

    The AutoReplyLog row is written at entry and updated at every stage, so
    each evaluated message leaves exactly one audit record with its terminal
    decision. ConfigurationError propagates after the log is finalized.
    """
    now = now or utcnow()
    tracker = ReplyStateTracker()
    log_adapter = LoggerAdapter(
        logger,
        {
            "conversation_id": job.conversation_id,
            "lead_id": job.lead_id,
            "trigger_provider_message_id": job.trigger_provider_message_id,
            "channel": job.channel,
        },
    )

    log = AutoReplyLog(
        lead_id=job.lead_id,
        contact_id=job.contact_id,
        conversation_id=job.conversation_id,
        message_id=job.inbound_message_id,
        trigger_provider_message_id=job.trigger_provider_message_id,
        channel=job.channel,
        message_text=(job.text or "")[:LOG_TEXT_LIMIT],
        decision="processing",
        created_at=now,
        updated_at=now,
    )
    db.add(log)
    db.flush()

    lead = db.get(Lead, job.lead_id) if job.lead_id else None
    profile = resolve_agent_profile(db, lead)
    contact = db.get(Contact, job.contact_id) if job.contact_id else None
    destination = job.destination or resolve_destination(contact, job.channel)

    tracker.advance(ReplyState.EVALUATING)
    decision = evaluate(
        PolicyContext(
            text=job.text,
            now=now,
            lead=lead,
            profile=profile,
            is_first_contact=is_first_contact(db, job.conversation_id),
            already_replied=already_replied(db, job.trigger_provider_message_id, exclude_log_id=log.id),
        )
    )
    log_adapter.info(
        "Policy decision",
        context={"state": decision.state.value, "reason": decision.reason, "agent_profile_id": profile.id if profile else None},
    )

    if decision.state == ReplyState.SKIPPED:
        return _finish(db, tracker, log, ReplyState.SKIPPED, decision.reason)

    if decision.state == ReplyState.ESCALATED:
        return _handle_escalation(
            db,
            job,
            tracker,
            log,
            decision.reason,
            decision.escalation_reason or "human_request",
            profile,
            destination,
            provider,
            log_adapter,
        )

    tracker.advance(ReplyState.REPLYING)

    retrieval = retrieve_and_guard(job.text, similarity_threshold=profile.similarity_threshold if profile else None)
    _update_log(
        db,
        log,
        retrieval_found=retrieval.can_respond,
        retrieval_score=retrieval.score,
        retrieval_reason=retrieval.reason,
        retrieval_doc_count=len(retrieval.documents),
    )

    generated = generate_reply(db, job.conversation_id, job.text, profile=profile, retrieval=retrieval, llm=llm)
    used_fallback = not generated.ok
    if generated.ok:
        reply_text = generated.value.text
    else:
        log_adapter.warning(
            f"Generation unavailable, using fallback: {generated.error}", context={"code": generated.error_code}
        )
        reply_text = build_fallback_reply(job.text, contact.full_name if contact else None)
    _update_log(db, log, used_fallback=used_fallback, reply_text=reply_text[:LOG_TEXT_LIMIT])

    review_task_id = None
    if generated.error_code == "low_confidence":
        review_task_id = create_agent_task(
            db,
            job.lead_id,
            "low_confidence",
            detail=retrieval.reason,
            conversation_id=job.conversation_id,
            message_text=job.text,
        )
        _update_log(db, log, human_task_created=True, human_task_id=review_task_id)

    if not reply_text.strip() or not destination:
        reason = "No reply text produced" if not reply_text.strip() else "No destination address for contact"
        task_id = create_agent_task(
            db, job.lead_id, "send_failed", detail=reason, conversation_id=job.conversation_id, message_text=job.text
        )
        _update_log(db, log, human_task_created=True, human_task_id=task_id)
        return _finish(
            db, tracker, log, ReplyState.FAILED, reason, task_id=task_id, used_fallback=used_fallback, error=reason
        )

    try:
        result = _send(db, job, reply_text, destination, profile, provider)
    except ConfigurationError as e:
        _finish(db, tracker, log, ReplyState.FAILED, "Messaging provider not configured", error=str(e))
        raise

    if result.was_duplicate:
        _update_log(db, log, send_outcome="duplicate", outbound_log_id=result.outbound_log_id)
        return _finish(
            db,
            tracker,
            log,
            ReplyState.SKIPPED,
            result.error or "Reply already sent",
            outbound_log_id=result.outbound_log_id,
            task_id=review_task_id,
            used_fallback=used_fallback,
        )

    if not result.success:
        task_id = review_task_id
        if not result.retryable or job.final_attempt:
            task_id = create_agent_task(
                db,
                job.lead_id,
                "send_failed",
                detail=f"Send failed: {result.error}",
                conversation_id=job.conversation_id,
                message_text=job.text,
            )
            _update_log(db, log, human_task_created=True, human_task_id=task_id)
        _update_log(db, log, send_outcome="failed", outbound_log_id=result.outbound_log_id)
        log_adapter.error(f"Auto-reply send failed: {result.error}", context={"retryable": result.retryable})
        return _finish(
            db,
            tracker,
            log,
            ReplyState.FAILED,
            "Send failed",
            outbound_log_id=result.outbound_log_id,
            task_id=task_id,
            used_fallback=used_fallback,
            error=result.error,
            retryable=result.retryable,
        )

    if lead is not None:
        lead.last_auto_reply_at = utcnow()
    _update_log(
        db,
        log,
        send_outcome="sent",
        outbound_log_id=result.outbound_log_id,
        reply_text=(result.text or reply_text)[:LOG_TEXT_LIMIT],
    )
    log_adapter.info("Auto-reply sent", context={"outbound_log_id": result.outbound_log_id, "used_fallback": used_fallback})
    return _finish(
        db,
        tracker,
        log,
        ReplyState.REPLIED,
        "Reply sent",
        outbound_log_id=result.outbound_log_id,
        task_id=review_task_id,
        used_fallback=used_fallback,
    )
