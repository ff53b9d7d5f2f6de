import asyncio
from typing import Optional

from sqlalchemy.orm import Session

from assistant.config import settings
from assistant.logging_config import get_logger
from assistant.models import Message
from assistant.services import job_handlers
from assistant.services.alert_service import alert_error
from assistant.services.job_queue import (
    BackoffKind,
    BackoffPolicy,
    Failed,
    Job,
    JobEventObserver,
    JobQueue,
    JobStatus,
    QueueOptions,
)
from assistant.services.message_service import get_pending_media

logger = get_logger("queue_service")

MEDIA_QUEUE = "media-processing"
SUMMARY_QUEUE = "summary-generation"
RESPONSE_QUEUE = "message-response"

GROUP_SUMMARY_JOB = "group-summary"
TEXT_RESPONSE_JOB = "text-response"
MEDIA_JOB_TYPES = ("audio", "image", "document")

MEDIA_PRIORITIES = {
    "text": 1,
    "audio": 2,
    "image": 3,
    "document": 4,
    "video": 5,
}
DEFAULT_MEDIA_PRIORITY = 5
SUMMARY_PRIORITY = 1
TEXT_RESPONSE_PRIORITY = 2

DEFAULT_CLEAN_GRACE_SECONDS = 24 * 60 * 60


def default_queue_options(timeout_seconds: Optional[float] = None) -> dict[str, QueueOptions]:
    timeout = timeout_seconds if timeout_seconds is not None else settings.job_timeout_seconds
    return {
        MEDIA_QUEUE: QueueOptions(
            attempts=3,
            backoff=BackoffPolicy(BackoffKind.EXPONENTIAL, 2000),
            remove_on_complete=50,
            remove_on_fail=100,
            timeout_seconds=timeout,
        ),
        SUMMARY_QUEUE: QueueOptions(
            attempts=2,
            backoff=BackoffPolicy(BackoffKind.EXPONENTIAL, 5000),
            remove_on_complete=20,
            remove_on_fail=50,
            timeout_seconds=timeout,
        ),
        RESPONSE_QUEUE: QueueOptions(
            attempts=3,
            backoff=BackoffPolicy(BackoffKind.FIXED, 1000),
            remove_on_complete=100,
            remove_on_fail=50,
            timeout_seconds=timeout,
        ),
    }


def media_priority(media_type: Optional[str]) -> int:
    return MEDIA_PRIORITIES.get(media_type or "", DEFAULT_MEDIA_PRIORITY)


def media_job_payload(message: Message) -> dict:
    return {
        "messageId": message.message_id,
        "chatId": message.chat_id,
        "mediaUrl": message.media_url,
        "mediaType": message.media_type,
        "content": message.content or "",
    }


async def notify_dead_letter(outcome: Failed) -> None:
    job = outcome.job
    await alert_error(
        f"Job {job.job_type} failed permanently",
        {"queue": job.queue, "job_id": job.id, "attempts": job.attempts_made, "error": outcome.error[:300]},
    )


class QueueRegistry:
    """The three named queues, their processors and the outcome observer."""

    def __init__(self, options: Optional[dict[str, QueueOptions]] = None, on_dead_letter=notify_dead_letter):
        queue_options = default_queue_options()
        queue_options.update(options or {})
        self.events: asyncio.Queue = asyncio.Queue()
        self.media = JobQueue(MEDIA_QUEUE, queue_options[MEDIA_QUEUE], self.events)
        self.summary = JobQueue(SUMMARY_QUEUE, queue_options[SUMMARY_QUEUE], self.events)
        self.response = JobQueue(RESPONSE_QUEUE, queue_options[RESPONSE_QUEUE], self.events)
        self.observer = JobEventObserver(self.events, on_dead_letter)
        self._register_processors()

    @property
    def queues(self) -> list[JobQueue]:
        return [self.media, self.summary, self.response]

    def _register_processors(self) -> None:
        self.media.process("audio", 3, job_handlers.process_audio_job)
        self.media.process("image", 5, job_handlers.process_image_job)
        self.media.process("document", 2, job_handlers.process_document_job)
        self.summary.process(GROUP_SUMMARY_JOB, 1, job_handlers.process_group_summary_job)
        self.response.process(TEXT_RESPONSE_JOB, 10, job_handlers.process_text_response_job)

    def start(self) -> None:
        for queue in self.queues:
            queue.start()
        self.observer.start()
        logger.info("Job queues started")

    async def shutdown(self) -> None:
        for queue in self.queues:
            await queue.close()
        await self.observer.stop()
        logger.info("Job queues stopped")

    async def add_media_job(self, data: dict) -> Job:
        media_type = data.get("mediaType")
        if media_type not in MEDIA_JOB_TYPES:
            raise ValueError(f"No media processor for type: {media_type}")
        job = await self.media.add(media_type, data, priority=media_priority(media_type))
        logger.info(
            "Media processing job added",
            extra={"context": {"job_id": job.id, "message_id": data.get("messageId"), "media_type": media_type}},
        )
        return job

    async def add_summary_job(self, data: dict) -> Job:
        job = await self.summary.add(GROUP_SUMMARY_JOB, data, priority=SUMMARY_PRIORITY)
        logger.info(
            "Summary job added",
            extra={"context": {"job_id": job.id, "chat_id": data.get("chatId"), "period": data.get("period")}},
        )
        return job

    async def add_text_response_job(self, data: dict) -> Job:
        job = await self.response.add(TEXT_RESPONSE_JOB, data, priority=TEXT_RESPONSE_PRIORITY)
        logger.info(
            "Text response job added",
            extra={"context": {"job_id": job.id, "message_id": data.get("messageId")}},
        )
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        for queue in self.queues:
            job = queue.get_job(job_id)
            if job is not None:
                return job
        return None

    def get_stats(self) -> dict[str, dict[str, int]]:
        return {queue.name: queue.get_counts() for queue in self.queues}

    def clean_old_jobs(self, grace_seconds: float = DEFAULT_CLEAN_GRACE_SECONDS) -> dict[str, int]:
        removed = {}
        for queue in self.queues:
            removed[queue.name] = queue.clean(grace_seconds, JobStatus.COMPLETED) + queue.clean(
                grace_seconds, JobStatus.FAILED
            )
        logger.info("Old jobs cleaned", extra={"context": removed})
        return removed


async def recover_pending_media_jobs(db: Session, registry: QueueRegistry) -> int:
    """Re-enqueue media work left pending by a previous process. Returns how many jobs were added."""
    recovered = 0
    for _, message in get_pending_media(db):
        if not message.media_url or message.media_type not in MEDIA_JOB_TYPES:
            continue
        await registry.add_media_job(media_job_payload(message))
        recovered += 1
    if recovered:
        logger.info("Pending media jobs recovered", extra={"context": {"count": recovered}})
    return recovered


_queue_registry: Optional[QueueRegistry] = None


def get_queue_registry() -> QueueRegistry:
    global _queue_registry
    if _queue_registry is None:
        _queue_registry = QueueRegistry()
    return _queue_registry

