from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship

from threadline.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    lead_id = Column(Integer, ForeignKey("leads.id"))
    contact_id = Column(Integer, ForeignKey("contacts.id"))
    direction = Column(Text, nullable=False)  # INBOUND, OUTBOUND
    channel = Column(Text, nullable=False)
    body = Column(Text)
    provider_message_id = Column(Text, unique=True)
    status = Column(Text)  # RECEIVED, SENT
    created_at = Column(DateTime(timezone=True), nullable=False)
    sent_at = Column(DateTime(timezone=True))

    conversation = relationship("Conversation", back_populates="messages")
