from sqlalchemy import Column, DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from assistant.database import Base


class GroupSummary(Base):
    __tablename__ = "group_summaries"
    __table_args__ = (UniqueConstraint("chat_id", "summary_period", "start_date", name="uq_group_summary_window"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    chat_id = Column(String(255), nullable=False, index=True)
    summary_period = Column(String(20), nullable=False)  # 24h, 48h, 1week
    summary_text = Column(Text, nullable=False)
    message_count = Column(Integer, nullable=False, default=0)
    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
