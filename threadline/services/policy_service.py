import json
import re
from dataclasses import dataclass
from datetime import datetime, time
from typing import Iterable, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from threadline.config import settings
from threadline.database import as_utc
from threadline.logging_config import get_logger
from threadline.models import AgentProfile, Lead
from threadline.services.state_machine import ReplyState

logger = get_logger("policy_service")

HIGH_RISK_LENGTH = 200

PAYMENT_DISPUTE_PATTERN = re.compile(r"\b(refund|chargeback|dispute|fraud|scam|stolen|unauthorized)\b")
LEGAL_ANGER_PATTERN = re.compile(r"\b(angry|furious|complaint|sue|lawyer|legal action|court)\b")
COMPLEX_PATTERN = re.compile(r"\b(complicated|complex|detailed|explain|clarify|confused)\b")


@dataclass
class PolicyContext:
    text: Optional[str]
    now: datetime
    lead: Optional[Lead] = None
    profile: Optional[AgentProfile] = None
    is_first_contact: bool = False
    already_replied: bool = False


@dataclass
class PolicyDecision:
    state: ReplyState
    reason: Optional[str] = None
    escalation_reason: Optional[str] = None


def _load_patterns(patterns: Union[None, str, Iterable[str]]) -> list[str]:
    if not patterns:
        return []
    if isinstance(patterns, str):
        try:
            loaded = json.loads(patterns)
        except ValueError:
            return [p.strip() for p in patterns.splitlines() if p.strip()]
        patterns = loaded if isinstance(loaded, list) else [str(loaded)]
    return [str(p).strip() for p in patterns if p and str(p).strip()]


def matches_patterns(text: Optional[str], patterns: Union[None, str, Iterable[str]]) -> bool:
    """
    Case-insensitive match against literal substrings or "/regex/" entries.
    An invalid regex is matched as a literal substring of its body.
    """
    if not text:
        return False
    lower = text.lower()

    for pattern in _load_patterns(patterns):
        if len(pattern) > 2 and pattern.startswith("/") and pattern.endswith("/"):
            body = pattern[1:-1]
            try:
                if re.search(body, text, re.IGNORECASE):
                    return True
            except re.error:
                if body.lower() in lower:
                    return True
            continue
        if pattern.lower() in lower:
            return True
    return False


def detect_high_risk(text: Optional[str]) -> Optional[str]:
    """Return the escalation reason for payment disputes, legal threats or long complex requests."""
    if not text:
        return None
    lower = text.lower()

    if PAYMENT_DISPUTE_PATTERN.search(lower):
        return "Payment dispute detected"
    if LEGAL_ANGER_PATTERN.search(lower):
        return "Urgent/legal matter detected"
    if COMPLEX_PATTERN.search(lower) and len(text) > HIGH_RISK_LENGTH:
        return "Complex request detected"
    return None


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.strip().split(":", 1)
    return time(int(hours), int(minutes))


def _profile_zone(profile: AgentProfile) -> ZoneInfo:
    try:
        return ZoneInfo(profile.timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {profile.timezone!r} on agent profile {profile.id}, using UTC")
        return ZoneInfo("UTC")


def is_within_business_hours(profile: AgentProfile, now: datetime) -> bool:
    """Local-time check of the profile's window; windows crossing midnight are supported."""
    local_now = as_utc(now).astimezone(_profile_zone(profile)).time()
    start = _parse_hhmm(profile.business_hours_start)
    end = _parse_hhmm(profile.business_hours_end)

    if start == end:
        return True
    if start < end:
        return start <= local_now < end
    return local_now >= start or local_now < end


def _outside_hours_allowed(lead: Optional[Lead], profile: Optional[AgentProfile]) -> bool:
    if lead is not None and lead.allow_outside_hours:
        return True
    if profile is None:
        return True
    return bool(profile.allow_outside_hours) or profile.business_hours_mode == "always"


def evaluate(ctx: PolicyContext) -> PolicyDecision:
    """Decide what to do with one inbound message. First matching rule wins."""
    lead, profile = ctx.lead, ctx.profile

    if not ctx.text or not ctx.text.strip():
        return PolicyDecision(ReplyState.SKIPPED, "Empty message text")

    if ctx.already_replied:
        return PolicyDecision(ReplyState.SKIPPED, "Already replied to this exact message")

    if lead is not None and lead.auto_reply_enabled is False:
        return PolicyDecision(ReplyState.SKIPPED, "Auto-reply disabled for this lead")

    muted_until = as_utc(lead.muted_until) if lead is not None else None
    if muted_until is not None and muted_until > as_utc(ctx.now):
        return PolicyDecision(ReplyState.SKIPPED, f"Lead muted until {muted_until.isoformat()}")

    if profile is not None and matches_patterns(ctx.text, profile.skip_auto_reply_rules):
        return PolicyDecision(ReplyState.SKIPPED, "Message matches skip pattern")

    last_reply = as_utc(lead.last_auto_reply_at) if lead is not None else None
    if not ctx.is_first_contact and last_reply is not None:
        limit = settings.auto_reply_rate_limit_seconds
        if profile is not None and profile.rate_limit_seconds is not None:
            limit = profile.rate_limit_seconds
        elapsed = (as_utc(ctx.now) - last_reply).total_seconds()
        if elapsed < limit:
            return PolicyDecision(ReplyState.SKIPPED, f"Rate limit: replied {elapsed:.0f} seconds ago")

    if not ctx.is_first_contact and not _outside_hours_allowed(lead, profile):
        if not is_within_business_hours(profile, ctx.now):
            return PolicyDecision(
                ReplyState.SKIPPED,
                f"Outside business hours ({profile.business_hours_start}-{profile.business_hours_end} {profile.timezone})",
            )

    if profile is not None and matches_patterns(ctx.text, profile.escalate_to_human_rules):
        return PolicyDecision(
            ReplyState.ESCALATED, "Message matches escalate pattern", escalation_reason="human_request"
        )

    risk = detect_high_risk(ctx.text)
    if risk is not None:
        task_reason = "complex_query" if risk == "Complex request detected" else "human_request"
        return PolicyDecision(ReplyState.ESCALATED, risk, escalation_reason=task_reason)

    return PolicyDecision(ReplyState.REPLYING)
