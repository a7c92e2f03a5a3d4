from sqlalchemy import Column, DateTime, Index, Integer, Text

from threadline.database import Base, JSONType


class AutomationRunLog(Base):
    __tablename__ = "automation_run_logs"
    __table_args__ = (Index("ix_automation_run_logs_rule_target_ran", "rule_key", "target_id", "ran_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    rule_key = Column(Text, nullable=False)
    target_id = Column(Integer, nullable=False)  # lead id
    status = Column(Text, nullable=False)  # SUCCESS, SKIPPED, FAILED
    reason = Column(Text)
    details = Column(JSONType)
    ran_at = Column(DateTime(timezone=True), nullable=False)
