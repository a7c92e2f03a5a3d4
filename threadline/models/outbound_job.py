from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text

from threadline.database import Base, JSONType


class OutboundJob(Base):
    __tablename__ = "outbound_jobs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    inbound_message_id = Column(Integer, ForeignKey("messages.id"))
    inbound_provider_message_id = Column(Text)
    channel = Column(Text, nullable=False)
    idempotency_key = Column(Text, nullable=False, unique=True)
    payload_json = Column(JSONType, nullable=False)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, PROCESSING, SENT, SKIPPED, FAILED
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime(timezone=True))
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
