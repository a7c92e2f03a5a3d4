import re
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.orm import Session

from threadline.config import settings
from threadline.logging_config import get_logger
from threadline.models import AgentProfile, Message
from threadline.services.errors import GenerationError
from threadline.services.llm import LLMProvider, OpenAIProvider
from threadline.services.result import Result
from threadline.services.retrieval_service import RetrievalResult, format_grounding_context

logger = get_logger("generation_service")

MAX_HISTORY_MESSAGES = 10
MAX_GROUNDING_CHARS = 4000

DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful assistant for a service business. "
    "Answer briefly and only with facts you were given."
)

TONE_INSTRUCTIONS = {
    "professional": "Keep a professional, courteous tone.",
    "friendly": "Keep a warm, friendly tone.",
    "short": "Answer in one or two short sentences.",
}

# Model replies with this marker when the grounding does not cover the question
LOW_CONFIDENCE_MARKER = "NEED_HUMAN"

UNGROUNDED_HINT = (
    "No reference information matched this message. Do not invent prices, requirements or timelines. "
    f"If the message needs facts you do not have, reply with exactly {LOW_CONFIDENCE_MARKER}."
)

# Canned phrasing that reads like a form letter; such replies are discarded
TEMPLATE_PATTERNS = (
    "thank you for your interest",
    "to better assist you",
    "could you please share",
    "what specific service",
    "what is your timeline",
    "looking forward to helping you",
    "please share: 1.",
    "please share: 2.",
)

GREETING_WORDS = {"hi", "hello", "hey", "salam", "good morning", "good evening", "good afternoon", "marhaba"}
PRICING_HINTS = ("price", "pricing", "cost", "how much", "fee", "fees", "charge", "quote")
DOCUMENT_HINTS = ("document", "documents", "passport", "papers", "requirement", "requirements", "what do i need")
STATUS_HINTS = ("status", "update", "progress", "any news", "ready yet", "where is my", "when will")

FALLBACK_REPLIES = {
    "greeting": "Hi {name}, thanks for reaching out! How can I help you today?",
    "pricing": "Hi {name}, pricing depends on the details of your case. Which service are you asking about?",
    "documents": (
        "Hi {name}, the documents needed depend on your situation. "
        "Which service is this for so I can tell you exactly what to prepare?"
    ),
    "status": "Hi {name}, thanks for checking in. A team member will review your file and update you shortly.",
    "generic": "Hi {name}, I received your message. Let me get back to you with the information you need.",
}


@dataclass
class GeneratedReply:
    text: str
    model: str
    grounded: bool


def get_llm_provider() -> LLMProvider:
    if not settings.openai_api_key:
        raise GenerationError("LLM is not configured (OPENAI_API_KEY missing)")
    return OpenAIProvider(
        api_key=settings.openai_api_key,
        default_model=settings.openai_model,
        timeout_seconds=settings.llm_timeout_seconds,
    )


def get_conversation_history(db: Session, conversation_id: int, limit: int = MAX_HISTORY_MESSAGES) -> List[dict]:
    """Get recent conversation history."""
    messages = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(limit)
        .all()
    )

    history = []
    for msg in reversed(messages):
        if not msg.body:
            continue
        role = "assistant" if msg.direction == "OUTBOUND" else "user"
        history.append({"role": role, "content": msg.body})
    return history


def build_prompt_messages(
    user_message: str,
    profile: Optional[AgentProfile] = None,
    retrieval: Optional[RetrievalResult] = None,
    history: Optional[List[dict]] = None,
) -> List[dict]:
    system_prompt = (profile.system_prompt if profile and profile.system_prompt else None) or DEFAULT_SYSTEM_PROMPT
    parts = [system_prompt]

    tone = profile.tone if profile else None
    if tone in TONE_INSTRUCTIONS:
        parts.append(TONE_INSTRUCTIONS[tone])

    if retrieval and retrieval.can_respond and retrieval.documents:
        parts.append(format_grounding_context(retrieval.documents)[:MAX_GROUNDING_CHARS])
    else:
        parts.append(UNGROUNDED_HINT)

    messages = [{"role": "system", "content": "\n\n".join(parts)}]
    history = history or []
    messages.extend(history)
    if not history or history[-1].get("content") != user_message:
        messages.append({"role": "user", "content": user_message})
    return messages


def is_templated_reply(text: str) -> bool:
    lower = text.lower()
    return any(pattern in lower for pattern in TEMPLATE_PATTERNS)


def generate_reply(
    db: Session,
    conversation_id: int,
    user_message: str,
    profile: Optional[AgentProfile] = None,
    retrieval: Optional[RetrievalResult] = None,
    llm: Optional[LLMProvider] = None,
) -> Result[GeneratedReply]:
    """
    Generate a grounded reply.

    Failures come back as Result.failure with error_code "not_configured",
    "llm_error", "empty_reply", "low_confidence" or "templated_reply".
    """
    try:
        llm = llm or get_llm_provider()
    except GenerationError as e:
        return Result.from_exception(e, "not_configured")

    try:
        history = get_conversation_history(db, conversation_id)
        messages = build_prompt_messages(user_message, profile=profile, retrieval=retrieval, history=history)
        logger.debug(f"Calling {llm.name} with {len(messages)} messages")
        response = llm.generate(messages)
        content = response.content
        if content is not None and not isinstance(content, str):
            raise GenerationError(f"LLM returned non-text content: {type(content).__name__}")
    except GenerationError as e:
        logger.warning(f"LLM call failed: {e}")
        return Result.from_exception(e, "llm_error")
    except Exception as e:
        logger.exception("Generation crashed", extra={"context": {"conversation_id": conversation_id}})
        return Result.from_exception(e, "llm_error")

    text = (content or "").strip()
    if not text:
        return Result.failure("LLM returned empty reply", "empty_reply")
    if LOW_CONFIDENCE_MARKER in text:
        return Result.failure("Model could not answer from the available information", "low_confidence")
    if is_templated_reply(text):
        logger.warning(f"Rejected templated reply: {text[:120]}")
        return Result.failure("Generated reply matched a canned template", "templated_reply")

    return Result.success(
        GeneratedReply(
            text=text,
            model=response.model,
            grounded=bool(retrieval and retrieval.can_respond),
        )
    )


def classify_fallback_intent(text: str) -> str:
    normalized = re.sub(r"[^\w\s']", " ", (text or "").lower())
    normalized = re.sub(r"\s+", " ", normalized).strip()

    if len(normalized) < 3 or normalized in GREETING_WORDS:
        return "greeting"
    if any(hint in normalized for hint in PRICING_HINTS):
        return "pricing"
    if any(hint in normalized for hint in DOCUMENT_HINTS):
        return "documents"
    if any(hint in normalized for hint in STATUS_HINTS):
        return "status"
    return "generic"


def build_fallback_reply(text: str, contact_name: Optional[str] = None) -> str:
    """Context-aware reply used when generation is unavailable. Never empty."""
    name = (contact_name or "").strip().split(" ")[0] or "there"
    return FALLBACK_REPLIES[classify_fallback_intent(text)].format(name=name)
