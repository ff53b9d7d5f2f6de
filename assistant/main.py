import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from assistant.config import settings
from assistant.database import SessionLocal, init_db
from assistant.logging_config import get_logger, setup_logging
from assistant.routers import health, messages, summaries, webhook
from assistant.services.cache import close_redis
from assistant.services.queue_service import get_queue_registry, recover_pending_media_jobs
from assistant.services.scheduler_service import start_scheduler, stop_scheduler

setup_logging(settings.log_level)

logger = get_logger("main")

app = FastAPI(
    title="WhatsApp Assistant API",
    description="Ingestion, routing, background jobs and retrieval for the WhatsApp study assistant",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(messages.router)
app.include_router(summaries.router)
app.include_router(health.router)


def _are_queue_workers_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return settings.queue_workers_enabled


async def _recover_pending_media(registry) -> None:
    db = SessionLocal()
    try:
        await recover_pending_media_jobs(db, registry)
    finally:
        db.close()


@app.on_event("startup")
async def startup() -> None:
    init_db()
    if _are_queue_workers_enabled():
        registry = get_queue_registry()
        registry.start()
        await _recover_pending_media(registry)
        if settings.scheduler_enabled:
            start_scheduler()
    logger.info("Service started", extra={"context": {"queue_workers": _are_queue_workers_enabled()}})


@app.on_event("shutdown")
async def shutdown() -> None:
    if _are_queue_workers_enabled():
        stop_scheduler()
        await get_queue_registry().shutdown()
    await close_redis()
    logger.info("Service stopped")
