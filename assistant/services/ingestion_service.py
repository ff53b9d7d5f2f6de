"""Gateway event decoding and the dedup gate in front of the router."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from assistant.errors import EventValidationError
from assistant.logging_config import get_logger
from assistant.models import Message
from assistant.schemas.webhook import MessageData, WebhookEvent
from assistant.services.message_service import MessageRecord, get_message_by_id, save_message

logger = get_logger("ingestion_service")

GROUP_SUFFIX = "@g.us"


class IngestStatus(str, Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    IGNORED = "ignored"


@dataclass
class IngestResult:
    status: IngestStatus
    message: Optional[Message] = None
    message_id: Optional[str] = None


@dataclass
class DecodedBody:
    """One variant of the gateway message body."""

    message_type: str
    content: str = ""
    media_url: Optional[str] = None
    media_type: Optional[str] = None


# body key -> (message type, carries caption)
MEDIA_BODIES = {
    "imageMessage": ("image", True),
    "videoMessage": ("video", True),
    "documentMessage": ("document", True),
    "audioMessage": ("audio", False),
    "stickerMessage": ("sticker", False),
}


def decode_message_body(body: Optional[dict[str, Any]]) -> DecodedBody:
    if not body:
        return DecodedBody(message_type="unknown")

    if "conversation" in body:
        return DecodedBody(message_type="text", content=body.get("conversation") or "")
    if "extendedTextMessage" in body:
        extended = body.get("extendedTextMessage") or {}
        return DecodedBody(message_type="text", content=extended.get("text") or "")

    for key, (message_type, has_caption) in MEDIA_BODIES.items():
        if key in body:
            media = body.get(key) or {}
            return DecodedBody(
                message_type=message_type,
                content=(media.get("caption") or "") if has_caption else "",
                media_url=media.get("url"),
                media_type=message_type,
            )

    return DecodedBody(message_type="unknown")


def _provider_timestamp(value: Optional[int]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def extract_message_record(event: WebhookEvent) -> MessageRecord:
    """Build the canonical record. Raises EventValidationError on a malformed payload."""
    try:
        data = MessageData.model_validate(event.data or {})
    except ValidationError as exc:
        raise EventValidationError(f"Invalid message payload: {exc.error_count()} errors") from exc

    key = data.key
    body = decode_message_body(data.message)
    chat_id = key.remoteJid
    if key.fromMe:
        sender_id = event.instance or chat_id
    else:
        sender_id = key.participant or chat_id

    return MessageRecord(
        message_id=key.id,
        chat_id=chat_id,
        sender_id=sender_id,
        sender_name=data.pushName or "Unknown",
        message_type=body.message_type,
        content=body.content,
        media_url=body.media_url,
        media_type=body.media_type,
        is_group=chat_id.endswith(GROUP_SUFFIX),
        created_at=_provider_timestamp(data.messageTimestamp),
        instance_id=event.instance,
        from_me=key.fromMe,
    )


async def ingest(db: Session, event: WebhookEvent, router=None) -> IngestResult:
    """Persist a gateway event once and hand new messages to the router.

    Duplicates (already stored, or lost the insert race) return SKIPPED
    without reaching the router. Store failures surface as StorageError.
    """
    if not event.is_message_upsert():
        logger.debug(f"Ignoring event {event.event}")
        return IngestResult(status=IngestStatus.IGNORED)

    record = extract_message_record(event)

    if get_message_by_id(db, record.message_id) is not None:
        logger.info("Duplicate message skipped", extra={"context": {"message_id": record.message_id}})
        return IngestResult(status=IngestStatus.SKIPPED, message_id=record.message_id)

    message = save_message(db, record)
    if message is None:
        logger.info("Concurrent duplicate skipped", extra={"context": {"message_id": record.message_id}})
        return IngestResult(status=IngestStatus.SKIPPED, message_id=record.message_id)

    logger.info(
        "Message stored",
        extra={
            "context": {
                "message_id": message.message_id,
                "chat_id": message.chat_id,
                "type": message.message_type,
                "is_group": message.is_group,
            }
        },
    )

    if router is not None:
        await router.route(db, message)

    return IngestResult(status=IngestStatus.CREATED, message=message, message_id=message.message_id)
