from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ProcessedMediaOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    media_type: str
    original_url: Optional[str] = None
    transcription: Optional[str] = None
    description: Optional[str] = None
    summary: Optional[str] = None
    processing_status: str
    processing_error: Optional[str] = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    message_id: str
    chat_id: str
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    message_type: str
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    is_group: bool
    processed: bool
    processed_at: Optional[datetime] = None
    created_at: datetime


class MessageDetail(MessageOut):
    processed_media: Optional[ProcessedMediaOut] = None


class MessageListResponse(BaseModel):
    chat_id: str
    count: int
    messages: list[MessageOut]


class RespondRequest(BaseModel):
    context: dict = {}
