import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from assistant.config import settings
from assistant.logging_config import get_logger
from assistant.services import ai_service
from assistant.services.message_service import get_messages_since, get_recent_history

logger = get_logger("conversation_service")

HISTORY_LIMIT = 200
MIN_HISTORY_MESSAGES = 5
INSUFFICIENT_HISTORY = "Não há histórico de mensagens suficiente para gerar um resumo."


def _short_sender(sender_id: Optional[str]) -> str:
    return (sender_id or "unknown").split("@")[0]


def format_history(messages: list) -> str:
    return "\n".join(f"{_short_sender(m.sender_id)}: {m.content}" for m in messages if m.content)


async def summarize_conversation(db: Session, chat_id: str) -> str:
    """Topic digest of the last HISTORY_LIMIT messages. AI errors propagate to the caller."""
    messages = get_recent_history(db, chat_id, limit=HISTORY_LIMIT)
    if len(messages) < MIN_HISTORY_MESSAGES:
        logger.warning(f"Not enough messages to summarize chat {chat_id}")
        return INSUFFICIENT_HISTORY
    summary = await ai_service.summarize_topics(format_history(messages), chat_id)
    logger.info("Conversation digest generated", extra={"context": {"chat_id": chat_id, "messages": len(messages)}})
    return summary


class ContactKnowledgeStatus(str, Enum):
    EXISTING = "existing"
    CREATED = "created"
    NO_HISTORY = "no_history"


@dataclass
class ContactKnowledge:
    status: ContactKnowledgeStatus
    path: str
    content: Optional[str] = None


def contact_knowledge_path(chat_id: str, base_dir: Optional[str] = None) -> str:
    return os.path.join(base_dir or settings.contact_knowledge_dir, f"{chat_id}.txt")


def bootstrap_contact_knowledge(
    db: Session,
    chat_id: str,
    window_hours: Optional[int] = None,
    base_dir: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ContactKnowledge:
    """Return the contact's knowledge document, seeding it from recent history when missing."""
    path = contact_knowledge_path(chat_id, base_dir)
    if os.path.exists(path):
        with open(path, encoding="utf-8") as f:
            return ContactKnowledge(ContactKnowledgeStatus.EXISTING, path, f.read())

    hours = window_hours if window_hours is not None else settings.contact_knowledge_window_hours
    since = (now or datetime.now(timezone.utc)) - timedelta(hours=hours)
    messages = get_messages_since(db, chat_id, since)
    if not messages:
        return ContactKnowledge(ContactKnowledgeStatus.NO_HISTORY, path)

    lines = [
        f"[{m.created_at.strftime('%H:%M:%S')}] {_short_sender(m.sender_id)}: {m.content or ''}"
        for m in messages
    ]
    content = "\n".join(lines)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)

    logger.info("Contact knowledge created", extra={"context": {"chat_id": chat_id, "messages": len(messages)}})
    return ContactKnowledge(ContactKnowledgeStatus.CREATED, path, content)
