from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text

from threadline.database import Base


class OutboundMessageLog(Base):
    __tablename__ = "outbound_message_logs"
    __table_args__ = (
        Index("ix_outbound_logs_question", "conversation_id", "reply_type", "last_question_key", "sent_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(Text, nullable=False)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    trigger_provider_message_id = Column(Text)
    outbound_text_hash = Column(Text, nullable=False)
    # Released (suffixed) when the row fails so the logical send can be retried
    outbound_dedupe_key = Column(Text, nullable=False, unique=True)
    logical_dedupe_key = Column(Text, nullable=False, index=True)
    status = Column(Text, nullable=False, default="PENDING")  # PENDING, SENT, FAILED
    provider_message_id = Column(Text)
    reply_type = Column(Text)  # greeting, question, answer, closing, manual, followup, reminder
    last_question_key = Column(Text)
    flow_step = Column(Text)
    day_bucket = Column(Text, nullable=False)
    error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    sent_at = Column(DateTime(timezone=True))
    failed_at = Column(DateTime(timezone=True))
