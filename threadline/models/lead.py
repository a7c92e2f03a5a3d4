from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship

from threadline.database import Base


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(Text)
    phone = Column(Text)
    email = Column(Text)
    instagram_id = Column(Text)
    created_at = Column(DateTime(timezone=True))

    leads = relationship("Lead", back_populates="contact")


class Lead(Base):
    __tablename__ = "leads"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contact_id = Column(Integer, ForeignKey("contacts.id"), nullable=False)
    agent_profile_id = Column(Integer, ForeignKey("agent_profiles.id"))
    auto_reply_enabled = Column(Boolean)  # NULL means enabled
    muted_until = Column(DateTime(timezone=True))
    last_auto_reply_at = Column(DateTime(timezone=True))
    allow_outside_hours = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True))

    contact = relationship("Contact", back_populates="leads")
    agent_profile = relationship("AgentProfile")
