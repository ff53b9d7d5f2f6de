from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from assistant.database import get_db
from assistant.logging_config import get_logger
from assistant.schemas.health import CleanQueuesRequest, CleanQueuesResponse, HealthResponse, QueueStatsResponse
from assistant.services.cache import get_redis
from assistant.services.queue_service import get_queue_registry

logger = get_logger("health")

router = APIRouter(prefix="/health")


async def _redis_status() -> str:
    client = get_redis()
    if client is None:
        return "disabled"
    try:
        await client.ping()
        return "ok"
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        return "error"


@router.get("", response_model=HealthResponse)
async def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {e}")
        database = "error"

    redis_status = await _redis_status()
    overall = "ok" if database == "ok" and redis_status != "error" else "degraded"
    return HealthResponse(status=overall, database=database, redis=redis_status)


@router.get("/queues", response_model=QueueStatsResponse)
async def queue_stats():
    return QueueStatsResponse(queues=get_queue_registry().get_stats())


@router.post("/queues/clean", response_model=CleanQueuesResponse)
async def clean_queues(payload: CleanQueuesRequest):
    return CleanQueuesResponse(removed=get_queue_registry().clean_old_jobs(payload.grace_seconds))
