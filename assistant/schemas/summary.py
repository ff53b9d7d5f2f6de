from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SummaryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    chat_id: str
    summary_period: str
    summary_text: str
    message_count: int
    start_date: datetime
    end_date: datetime
    created_at: Optional[datetime] = None


class SummaryListResponse(BaseModel):
    chat_id: str
    total: int
    summaries: list[SummaryOut]


class GenerateSummaryRequest(BaseModel):
    period: str = Field(default="24h", pattern=r"^(24h|48h|1week)$")
    force: bool = False
    requester_id: Optional[str] = None


class SummaryRequest(BaseModel):
    chat_id: str
    requester_id: str


class JobResponse(BaseModel):
    job_id: str
    queue: str
    job_type: str
    status: str
    attempts_made: int = 0
    progress: int = 0
    failed_reason: Optional[str] = None


class CachedSummaryResponse(BaseModel):
    chat_id: str
    period: str
    cached: bool
    summary: Optional[str] = None


class SummaryJobResponse(BaseModel):
    job_id: str
    chat_id: str
    period: str
    message_count: int
    estimated_time: int


class DailySummariesResponse(BaseModel):
    queued: list[str]
