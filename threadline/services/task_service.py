from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from threadline.database import utcnow
from threadline.logging_config import get_logger
from threadline.models import Task

logger = get_logger("task_service")

# reason -> (title template, default detail, priority, due in)
TASK_TEMPLATES = {
    "human_request": (
        "Customer requested a human agent - lead {lead}",
        "Customer asked to speak to a person or the message needs a human. Please respond promptly.",
        "HIGH",
        timedelta(0),
    ),
    "complex_query": (
        "Complex query - lead {lead} needs review",
        "Customer query looks too complex for an automatic reply. Please review.",
        "NORMAL",
        timedelta(days=1),
    ),
    "low_confidence": (
        "Low AI confidence - review lead {lead}",
        "No grounded answer was available. Please review and respond manually.",
        "NORMAL",
        timedelta(days=1),
    ),
    "send_failed": (
        "Reply failed to send - lead {lead}",
        "An automatic reply could not be delivered. Please reply manually.",
        "HIGH",
        timedelta(0),
    ),
}


def create_agent_task(
    db: Session,
    lead_id: Optional[int],
    reason: str,
    detail: Optional[str] = None,
    conversation_id: Optional[int] = None,
    message_text: Optional[str] = None,
) -> int:
    """Create a human-attention task. Returns the task id."""
    if reason not in TASK_TEMPLATES:
        raise ValueError(f"Unknown task reason: {reason}")

    title_template, default_detail, priority, due_in = TASK_TEMPLATES[reason]
    description = detail or default_detail
    if message_text:
        description += f'\n\nLast message: "{message_text[:200]}"'

    now = utcnow()
    task = Task(
        lead_id=lead_id,
        conversation_id=conversation_id,
        reason=reason,
        title=title_template.format(lead=lead_id if lead_id is not None else "unknown"),
        detail=description,
        priority=priority,
        status="OPEN",
        due_at=now + due_in,
        created_at=now,
    )
    db.add(task)
    db.flush()

    logger.info(
        f"Created agent task {task.id}",
        extra={"context": {"task_id": task.id, "lead_id": lead_id, "reason": reason, "priority": priority}},
    )
    return task.id
