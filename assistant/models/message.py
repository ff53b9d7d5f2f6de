from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from assistant.database import Base


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(255), unique=True, nullable=False, index=True)
    chat_id = Column(String(255), nullable=False, index=True)
    sender_id = Column(String(255))
    sender_name = Column(String(255))
    message_type = Column(String(50), nullable=False)  # text, image, audio, video, document, sticker, unknown
    content = Column(Text)
    media_url = Column(Text)
    media_type = Column(String(50))
    is_group = Column(Boolean, nullable=False, default=False)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True))
    instance_id = Column(String(255))
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    processed_media = relationship("ProcessedMedia", back_populates="message", uselist=False)
