from typing import Optional

from pydantic import BaseModel, Field


class QueueCounts(BaseModel):
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0


class QueueStatsResponse(BaseModel):
    queues: dict[str, QueueCounts]


class CleanQueuesRequest(BaseModel):
    grace_seconds: int = Field(default=24 * 60 * 60, ge=0)


class CleanQueuesResponse(BaseModel):
    removed: dict[str, int]


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    detail: Optional[str] = None
