from sqlalchemy import Boolean, Column, DateTime, Float, Integer, Text

from threadline.database import Base, JSONType


class AgentProfile(Base):
    __tablename__ = "agent_profiles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_default = Column(Boolean, nullable=False, default=False)
    system_prompt = Column(Text)
    tone = Column(Text, nullable=False, default="friendly")  # professional, friendly, short
    timezone = Column(Text, nullable=False, default="UTC")
    business_hours_start = Column(Text, nullable=False, default="09:00")
    business_hours_end = Column(Text, nullable=False, default="18:00")
    # always, restricted; no default, set per tenant
    business_hours_mode = Column(Text, nullable=False)
    allow_outside_hours = Column(Boolean, nullable=False, default=False)
    rate_limit_seconds = Column(Float)
    similarity_threshold = Column(Float)
    skip_auto_reply_rules = Column(JSONType)
    escalate_to_human_rules = Column(JSONType)
    prohibited_phrases = Column(JSONType)
    custom_greeting = Column(Text)
    send_escalation_ack = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True))
