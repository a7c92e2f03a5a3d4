from abc import ABC, abstractmethod
from typing import Callable

from sqlalchemy.orm import Session

from threadline.config import Settings
from threadline.logging_config import get_logger
from threadline.services import outbox_service
from threadline.services.auto_reply_service import AutoReplyJob, AutoReplyOutcome, handle_inbound_auto_reply
from threadline.services.errors import ConfigurationError

logger = get_logger("job_queue")


class JobQueue(ABC):
    """Hands accepted inbound messages to the auto-reply pipeline."""

    name = "abstract"

    @abstractmethod
    def enqueue(self, db: Session, job: AutoReplyJob) -> bool:
        """Queue the job. Returns False when the same job was already queued."""
        pass


class OutboxJobQueue(JobQueue):
    """Durable queue: jobs are rows in outbound_jobs drained by the outbox worker."""

    name = "outbox"

    def enqueue(self, db: Session, job: AutoReplyJob) -> bool:
        created = outbox_service.enqueue_outbound_job(db, job)
        if not created:
            logger.info(
                "Auto-reply job already queued",
                extra={"context": {"conversation_id": job.conversation_id, "inbound": job.trigger_provider_message_id}},
            )
        return created


class InlineJobQueue(JobQueue):
    """Runs the pipeline in the caller's request. Used for local development and tests."""

    name = "inline"

    def __init__(self, handler: Callable[[Session, AutoReplyJob], AutoReplyOutcome] = handle_inbound_auto_reply):
        self.handler = handler

    def enqueue(self, db: Session, job: AutoReplyJob) -> bool:
        self.handler(db, job)
        return True


def build_job_queue(settings: Settings) -> JobQueue:
    backend = (settings.job_queue_backend or "").strip().lower()
    if backend == "outbox":
        return OutboxJobQueue()
    if backend == "inline":
        return InlineJobQueue()
    raise ConfigurationError(f"Unknown job queue backend: {settings.job_queue_backend}")
