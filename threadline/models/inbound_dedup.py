from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text, UniqueConstraint

from threadline.database import Base


class InboundMessageDedup(Base):
    __tablename__ = "inbound_message_dedup"
    __table_args__ = (
        UniqueConstraint("provider", "provider_message_id", name="uq_inbound_dedup_provider_message"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(Text, nullable=False)
    provider_message_id = Column(Text, nullable=False)
    conversation_id = Column(Integer, ForeignKey("conversations.id"))
    processing_status = Column(Text, nullable=False, default="PROCESSING")  # PROCESSING, COMPLETED, FAILED
    error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False)
    processed_at = Column(DateTime(timezone=True))
