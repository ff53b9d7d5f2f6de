import math
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from assistant.errors import StorageError, SummaryRequestError
from assistant.logging_config import get_logger
from assistant.models import GroupSummary
from assistant.services import ai_service
from assistant.services.cache import get_redis
from assistant.services.message_service import (
    chat_is_group,
    count_group_messages,
    dialect_insert,
    get_active_group_ids,
    get_group_messages,
)

logger = get_logger("summary_service")


class SummaryPeriod(str, Enum):
    DAY = "24h"
    TWO_DAYS = "48h"
    WEEK = "1week"


DEFAULT_PERIOD = SummaryPeriod.DAY

PERIOD_HOURS = {
    SummaryPeriod.DAY: 24,
    SummaryPeriod.TWO_DAYS: 48,
    SummaryPeriod.WEEK: 168,
}

# Cache lifetime grows with the window.
PERIOD_TTL_SECONDS = {
    SummaryPeriod.DAY: 3600,
    SummaryPeriod.TWO_DAYS: 7200,
    SummaryPeriod.WEEK: 14400,
}

MIN_MESSAGES_FOR_SUMMARY = 5
MAX_MESSAGES_PER_SUMMARY = 500
DAILY_SUMMARY_MIN_MESSAGES = 10

INSUFFICIENT_DATA = "Não há mensagens suficientes para gerar um resumo."

SUMMARY_KEYWORDS = (
    "resumo",
    "summary",
    "resumir",
    "summarize",
    "24h",
    "48h",
    "1 semana",
    "1 week",
    "últimas 24 horas",
    "last 24 hours",
    "últimas 48 horas",
    "last 48 hours",
    "última semana",
    "last week",
)


def normalize_period(period: Optional[str]) -> SummaryPeriod:
    """Unknown or missing periods fall back to 24h."""
    try:
        return SummaryPeriod(period)
    except ValueError:
        return DEFAULT_PERIOD


def period_window(period: SummaryPeriod, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    end = now or datetime.now(timezone.utc)
    return end - timedelta(hours=PERIOD_HOURS[period]), end


def is_summary_request(content: Optional[str]) -> bool:
    lower = (content or "").lower()
    return any(keyword in lower for keyword in SUMMARY_KEYWORDS)


def extract_summary_period(content: Optional[str]) -> SummaryPeriod:
    lower = (content or "").lower()
    if "24h" in lower or "24 horas" in lower:
        return SummaryPeriod.DAY
    if "48h" in lower or "48 horas" in lower:
        return SummaryPeriod.TWO_DAYS
    if "semana" in lower or "week" in lower:
        return SummaryPeriod.WEEK
    return DEFAULT_PERIOD


def cache_key(chat_id: str, period: SummaryPeriod) -> str:
    return f"summary:{chat_id}:{period.value}"


class SummaryCache:
    """Redis-backed summary cache. Any Redis failure reads as a miss."""

    def __init__(self, redis_client=None):
        self.redis = redis_client

    async def get(self, chat_id: str, period: SummaryPeriod) -> Optional[str]:
        if self.redis is None:
            return None
        try:
            return await self.redis.get(cache_key(chat_id, period))
        except Exception as e:
            logger.warning(f"Summary cache read failed: {e}")
            return None

    async def set(self, chat_id: str, period: SummaryPeriod, summary: str) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.setex(cache_key(chat_id, period), PERIOD_TTL_SECONDS[period], summary)
        except Exception as e:
            logger.warning(f"Summary cache write failed: {e}")


def upsert_group_summary(
    db: Session,
    chat_id: str,
    period: SummaryPeriod,
    summary_text: str,
    message_count: int,
    start: datetime,
    end: datetime,
) -> None:
    now = datetime.now(timezone.utc)
    stmt = dialect_insert(db, GroupSummary).values(
        chat_id=chat_id,
        summary_period=period.value,
        summary_text=summary_text,
        message_count=message_count,
        start_date=start,
        end_date=end,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["chat_id", "summary_period", "start_date"],
        set_={
            "summary_text": stmt.excluded.summary_text,
            "message_count": stmt.excluded.message_count,
            "end_date": stmt.excluded.end_date,
            "updated_at": now,
        },
    )
    try:
        db.execute(stmt)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise StorageError(f"group_summaries upsert failed: {exc}") from exc


async def get_or_generate(
    db: Session,
    chat_id: str,
    period: Optional[str] = None,
    force: bool = False,
    cache: Optional[SummaryCache] = None,
    now: Optional[datetime] = None,
) -> str:
    """Cached digest of a group window, generating and persisting it on a miss.

    Returns INSUFFICIENT_DATA when the window holds fewer than
    MIN_MESSAGES_FOR_SUMMARY messages. `force` skips the cache read.
    """
    summary_period = normalize_period(period)
    cache = cache if cache is not None else SummaryCache(get_redis())

    if not force:
        cached = await cache.get(chat_id, summary_period)
        if cached:
            logger.info("Returning cached summary", extra={"context": {"chat_id": chat_id, "period": summary_period.value}})
            return cached

    start, end = period_window(summary_period, now)
    messages = get_group_messages(db, chat_id, start, end, limit=MAX_MESSAGES_PER_SUMMARY)
    if len(messages) < MIN_MESSAGES_FOR_SUMMARY:
        logger.info(
            "Not enough messages for summary",
            extra={"context": {"chat_id": chat_id, "period": summary_period.value, "count": len(messages)}},
        )
        return INSUFFICIENT_DATA

    summary = await ai_service.generate_group_summary(messages, summary_period.value)

    await cache.set(chat_id, summary_period, summary)
    upsert_group_summary(db, chat_id, summary_period, summary, len(messages), start, end)

    logger.info(
        "Group summary generated",
        extra={"context": {"chat_id": chat_id, "period": summary_period.value, "message_count": len(messages)}},
    )
    return summary


async def queue_summary(
    db: Session,
    chat_id: str,
    requester_id: str,
    queues,
    period: Optional[str] = None,
    force: bool = True,
) -> dict:
    """Validate a summary request and enqueue the job.

    Raises SummaryRequestError: 404 unknown chat, 400 not a group or too few
    messages, 409 when a summary already covers today and `force` is off.
    """
    summary_period = normalize_period(period)
    is_group = chat_is_group(db, chat_id)
    if is_group is None:
        raise SummaryRequestError("Chat não encontrado", status_code=404)
    if not is_group:
        raise SummaryRequestError("Resumos só podem ser gerados para grupos", status_code=400)

    now = datetime.now(timezone.utc)
    if not force:
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        if has_summary_since(db, chat_id, summary_period, today):
            raise SummaryRequestError(
                "Já existe um resumo para este período. Use force=true para gerar novamente.",
                status_code=409,
            )

    since = now - timedelta(hours=PERIOD_HOURS[summary_period])
    message_count = count_group_messages(db, chat_id, since)
    if message_count < MIN_MESSAGES_FOR_SUMMARY:
        raise SummaryRequestError(
            f"Não há mensagens suficientes para gerar um resumo (mínimo de {MIN_MESSAGES_FOR_SUMMARY} obrigatório)",
            status_code=400,
        )

    job = await queues.add_summary_job(
        {
            "chatId": chat_id,
            "period": summary_period.value,
            "requesterId": requester_id,
            "force": force,
        }
    )
    logger.info(
        "Summary job queued",
        extra={"context": {"job_id": job.id, "chat_id": chat_id, "requester_id": requester_id, "force": force}},
    )
    return {
        "job_id": job.id,
        "chat_id": chat_id,
        "period": summary_period.value,
        "message_count": message_count,
        "estimated_time": math.ceil(message_count / 10),
    }


async def request_summary(db: Session, chat_id: str, requester_id: str, queues) -> dict:
    """On-demand request: always a forced 24h summary."""
    return await queue_summary(db, chat_id, requester_id, queues, DEFAULT_PERIOD.value, force=True)


def has_summary_since(db: Session, chat_id: str, period: SummaryPeriod, since: datetime) -> bool:
    """True when a window for `period` closed at or after `since`."""
    return (
        db.query(GroupSummary.id)
        .filter(
            GroupSummary.chat_id == chat_id,
            GroupSummary.summary_period == period.value,
            GroupSummary.end_date >= since,
        )
        .first()
        is not None
    )


async def generate_daily_summaries(db: Session, queues, now: Optional[datetime] = None) -> list[str]:
    """Queue a 24h summary for every busy group that has none covering today. Returns queued chat ids."""
    now = now or datetime.now(timezone.utc)
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    active_groups = get_active_group_ids(db, now - timedelta(hours=24), DAILY_SUMMARY_MIN_MESSAGES)
    logger.info("Generating daily summaries", extra={"context": {"group_count": len(active_groups)}})

    queued = []
    for chat_id in active_groups:
        if has_summary_since(db, chat_id, SummaryPeriod.DAY, today):
            continue
        await queues.add_summary_job(
            {"chatId": chat_id, "period": SummaryPeriod.DAY.value, "requesterId": "system", "force": False}
        )
        queued.append(chat_id)
    return queued


def list_summaries(
    db: Session,
    chat_id: str,
    period: Optional[str] = None,
    limit: int = 10,
    offset: int = 0,
) -> tuple[int, list[GroupSummary]]:
    query = db.query(GroupSummary).filter(GroupSummary.chat_id == chat_id)
    if period:
        query = query.filter(GroupSummary.summary_period == period)
    total = query.count()
    rows = query.order_by(GroupSummary.created_at.desc()).offset(offset).limit(limit).all()
    return total, rows
