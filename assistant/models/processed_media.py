from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from assistant.database import Base


class ProcessedMedia(Base):
    __tablename__ = "processed_media"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(
        String(255),
        ForeignKey("messages.message_id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    media_type = Column(String(50), nullable=False)
    original_url = Column(Text)
    transcription = Column(Text)
    description = Column(Text)
    summary = Column(Text)
    processing_status = Column(String(50), nullable=False, default="pending")  # pending, completed, failed
    processing_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    message = relationship("Message", back_populates="processed_media")
