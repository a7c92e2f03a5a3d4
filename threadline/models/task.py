from sqlalchemy import Column, DateTime, ForeignKey, Integer, Text

from threadline.database import Base


class Task(Base):
    __tablename__ = "tasks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey("leads.id"))
    conversation_id = Column(Integer, ForeignKey("conversations.id"))
    reason = Column(Text, nullable=False)  # human_request, complex_query, low_confidence, send_failed
    title = Column(Text, nullable=False)
    detail = Column(Text)
    priority = Column(Text, nullable=False, default="NORMAL")  # LOW, NORMAL, HIGH, URGENT
    status = Column(Text, nullable=False, default="OPEN")
    due_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)
