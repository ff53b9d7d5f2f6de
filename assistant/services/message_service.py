import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from assistant.errors import StorageError
from assistant.logging_config import get_logger
from assistant.models import Message, ProcessedMedia

logger = get_logger("message_service")

GROUP_ARCHIVE_MAX_MESSAGES = 1000


@dataclass
class MessageRecord:
    """Canonical message extracted from a gateway event."""

    message_id: str
    chat_id: str
    sender_id: str
    sender_name: str
    message_type: str
    content: str
    media_url: Optional[str]
    media_type: Optional[str]
    is_group: bool
    created_at: datetime
    instance_id: Optional[str]
    from_me: bool = False

    def as_row(self) -> dict:
        row = asdict(self)
        row.pop("from_me")
        return row


def dialect_insert(db: Session, model):
    """INSERT construct supporting on_conflict_* for the bound dialect."""
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


def get_message_by_id(db: Session, message_id: str) -> Optional[Message]:
    try:
        return db.query(Message).filter(Message.message_id == message_id).first()
    except SQLAlchemyError as exc:
        raise StorageError(f"Message lookup failed: {exc}") from exc


def save_message(db: Session, record: MessageRecord) -> Optional[Message]:
    """Insert the message unless its id already exists. Returns None when another writer won."""
    stmt = (
        dialect_insert(db, Message)
        .values(**record.as_row(), processed=False)
        .on_conflict_do_nothing(index_elements=["message_id"])
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError(f"Message insert failed: {exc}") from exc

    if result.rowcount == 0:
        return None
    return get_message_by_id(db, record.message_id)


def mark_message_processed(db: Session, message_id: str) -> None:
    try:
        db.execute(
            update(Message)
            .where(Message.message_id == message_id)
            .values(processed=True, processed_at=datetime.now(timezone.utc))
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "Failed to mark message processed",
            extra={"context": {"message_id": message_id, "error": str(exc)}},
        )


def get_chat_messages(db: Session, chat_id: str, *, limit: int = 50, offset: int = 0) -> list[Message]:
    """Newest first, for paging through a chat."""
    return (
        db.query(Message)
        .filter(Message.chat_id == chat_id)
        .order_by(Message.created_at.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def get_recent_history(db: Session, chat_id: str, *, limit: int) -> list[Message]:
    """Last `limit` messages of a chat in chronological order."""
    rows = (
        db.query(Message)
        .filter(Message.chat_id == chat_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def get_messages_since(db: Session, chat_id: str, since: datetime) -> list[Message]:
    return (
        db.query(Message)
        .filter(Message.chat_id == chat_id, Message.created_at >= since)
        .order_by(Message.created_at.asc())
        .all()
    )


def get_group_messages(
    db: Session,
    chat_id: str,
    start: datetime,
    end: datetime,
    *,
    limit: int = 500,
) -> list[Message]:
    """Group messages inside [start, end]: the newest `limit`, returned oldest first."""
    rows = (
        db.query(Message)
        .filter(
            Message.chat_id == chat_id,
            Message.is_group.is_(True),
            Message.created_at >= start,
            Message.created_at <= end,
        )
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def count_group_messages(db: Session, chat_id: str, since: datetime) -> int:
    return (
        db.query(func.count(Message.id))
        .filter(Message.chat_id == chat_id, Message.is_group.is_(True), Message.created_at >= since)
        .scalar()
        or 0
    )


def get_active_group_ids(db: Session, since: datetime, min_messages: int) -> list[str]:
    rows = (
        db.query(Message.chat_id)
        .filter(Message.is_group.is_(True), Message.created_at >= since)
        .group_by(Message.chat_id)
        .having(func.count(Message.id) >= min_messages)
        .all()
    )
    return [row[0] for row in rows]


def chat_is_group(db: Session, chat_id: str) -> Optional[bool]:
    """None when the chat has never been seen."""
    row = db.query(Message.is_group).filter(Message.chat_id == chat_id).first()
    return None if row is None else bool(row[0])


def upsert_processed_media(
    db: Session,
    message_id: str,
    media_type: str,
    *,
    original_url: Optional[str],
    transcription: Optional[str] = None,
    description: Optional[str] = None,
    summary: Optional[str] = None,
    status: str = "completed",
    error: Optional[str] = None,
) -> None:
    now = datetime.now(timezone.utc)
    stmt = dialect_insert(db, ProcessedMedia).values(
        message_id=message_id,
        media_type=media_type,
        original_url=original_url,
        transcription=transcription,
        description=description,
        summary=summary,
        processing_status=status,
        processing_error=error,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["message_id"],
        set_={
            "transcription": stmt.excluded.transcription,
            "description": stmt.excluded.description,
            "summary": stmt.excluded.summary,
            "processing_status": stmt.excluded.processing_status,
            "processing_error": stmt.excluded.processing_error,
            "updated_at": now,
        },
    )
    try:
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError(f"processed_media upsert failed: {exc}") from exc


def get_processed_media(db: Session, message_id: str) -> Optional[ProcessedMedia]:
    return db.query(ProcessedMedia).filter(ProcessedMedia.message_id == message_id).first()


def get_pending_media(db: Session, *, limit: int = 500) -> list[tuple[ProcessedMedia, Message]]:
    """Media work recorded as queued but never finished, oldest first."""
    return (
        db.query(ProcessedMedia, Message)
        .join(Message, ProcessedMedia.message_id == Message.message_id)
        .filter(ProcessedMedia.processing_status == "pending")
        .order_by(ProcessedMedia.created_at.asc())
        .limit(limit)
        .all()
    )


async def archive_group_message(redis_client, message: Message) -> None:
    """Push a group message onto the rolling recent-messages list used for summaries."""
    if redis_client is None:
        return
    key = f"group_messages:{message.chat_id}"
    payload = {
        "messageId": message.message_id,
        "content": message.content or "",
        "senderName": message.sender_name or "",
        "timestamp": message.created_at.isoformat() if message.created_at else None,
    }
    try:
        await redis_client.lpush(key, json.dumps(payload, ensure_ascii=False))
        await redis_client.ltrim(key, 0, GROUP_ARCHIVE_MAX_MESSAGES - 1)
    except Exception as e:
        logger.warning(f"Group message archive unavailable: {e}")
