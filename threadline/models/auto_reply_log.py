from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, Text

from threadline.database import Base


class AutoReplyLog(Base):
    __tablename__ = "auto_reply_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey("leads.id"))
    contact_id = Column(Integer, ForeignKey("contacts.id"))
    conversation_id = Column(Integer, ForeignKey("conversations.id"))
    message_id = Column(Integer, ForeignKey("messages.id"))
    trigger_provider_message_id = Column(Text, index=True)
    channel = Column(Text)
    message_text = Column(Text)
    decision = Column(Text, nullable=False, default="processing")  # processing, replied, skipped, notified_human, failed
    decision_reason = Column(Text)
    skipped_reason = Column(Text)
    used_fallback = Column(Boolean, nullable=False, default=False)
    retrieval_found = Column(Boolean)
    retrieval_score = Column(Float)
    retrieval_reason = Column(Text)
    retrieval_doc_count = Column(Integer)
    reply_text = Column(Text)
    human_task_created = Column(Boolean, nullable=False, default=False)
    human_task_id = Column(Integer)
    send_outcome = Column(Text)  # sent, failed, duplicate
    outbound_log_id = Column(Integer)
    error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
