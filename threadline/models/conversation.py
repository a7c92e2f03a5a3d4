from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint, text
from sqlalchemy.orm import relationship

from threadline.database import Base, JSONType


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("contact_id", "channel", name="uq_conversations_contact_channel"),
        Index(
            "uq_conversations_contact_channel_thread",
            "contact_id",
            "channel",
            "external_thread_id",
            unique=True,
            postgresql_where=text("external_thread_id IS NOT NULL"),
            sqlite_where=text("external_thread_id IS NOT NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False)
    lead_id = Column(Integer, ForeignKey("leads.id"))
    channel = Column(Text, nullable=False)  # whatsapp, email, instagram, facebook, webchat
    external_thread_id = Column(Text)
    status = Column(Text, nullable=False, default="open")  # open, closed
    unread_count = Column(Integer, nullable=False, default=0)
    known_fields = Column(JSONType, nullable=False, default=dict)
    last_message_at = Column(DateTime(timezone=True))
    last_inbound_at = Column(DateTime(timezone=True))
    last_outbound_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    messages = relationship("Message", back_populates="conversation")
