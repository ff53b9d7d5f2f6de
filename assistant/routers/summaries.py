from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from assistant.database import get_db
from assistant.errors import SummaryRequestError
from assistant.logging_config import get_logger
from assistant.schemas.summary import (
    CachedSummaryResponse,
    DailySummariesResponse,
    GenerateSummaryRequest,
    JobResponse,
    SummaryJobResponse,
    SummaryListResponse,
    SummaryOut,
    SummaryRequest,
)
from assistant.services import summary_service
from assistant.services.cache import get_redis
from assistant.services.queue_service import get_queue_registry

logger = get_logger("summaries")

router = APIRouter(prefix="/summaries")

PERIOD_PATTERN = r"^(24h|48h|1week)$"


def _raise_request_error(exc: SummaryRequestError):
    logger.info(f"Summary request rejected: {exc.message}", extra={"context": {"status_code": exc.status_code}})
    raise HTTPException(status_code=exc.status_code, detail=exc.message)


@router.post("/request", response_model=SummaryJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def request_summary(payload: SummaryRequest, db: Session = Depends(get_db)):
    try:
        return await summary_service.request_summary(db, payload.chat_id, payload.requester_id, get_queue_registry())
    except SummaryRequestError as exc:
        _raise_request_error(exc)


@router.post("/daily", response_model=DailySummariesResponse)
async def daily_summaries(db: Session = Depends(get_db)):
    queued = await summary_service.generate_daily_summaries(db, get_queue_registry())
    return DailySummariesResponse(queued=queued)


@router.get("/job/{job_id}/status", response_model=JobResponse)
async def job_status(job_id: str):
    job = get_queue_registry().get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobResponse(
        job_id=job.id,
        queue=job.queue,
        job_type=job.job_type,
        status=job.status.value,
        attempts_made=job.attempts_made,
        progress=job.progress,
        failed_reason=job.failed_reason,
    )


@router.get("/{chat_id}", response_model=SummaryListResponse)
def list_summaries(
    chat_id: str,
    period: Optional[str] = Query(default=None, pattern=PERIOD_PATTERN),
    limit: int = Query(default=10, ge=1, le=50),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    total, rows = summary_service.list_summaries(db, chat_id, period, limit, offset)
    return SummaryListResponse(
        chat_id=chat_id,
        total=total,
        summaries=[SummaryOut.model_validate(row) for row in rows],
    )


@router.get("/{chat_id}/cached", response_model=CachedSummaryResponse)
async def cached_summary(chat_id: str, period: str = Query(pattern=PERIOD_PATTERN)):
    summary_period = summary_service.normalize_period(period)
    summary = await summary_service.SummaryCache(get_redis()).get(chat_id, summary_period)
    if not summary:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No cached summary found")
    return CachedSummaryResponse(chat_id=chat_id, period=summary_period.value, cached=True, summary=summary)


@router.post("/{chat_id}/generate", response_model=SummaryJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def generate_summary(chat_id: str, payload: GenerateSummaryRequest, db: Session = Depends(get_db)):
    try:
        return await summary_service.queue_summary(
            db,
            chat_id,
            payload.requester_id or "api",
            get_queue_registry(),
            period=payload.period,
            force=payload.force,
        )
    except SummaryRequestError as exc:
        _raise_request_error(exc)
