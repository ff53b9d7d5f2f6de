import hashlib
import hmac

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from assistant.config import settings
from assistant.database import get_db
from assistant.errors import EventValidationError, StorageError
from assistant.logging_config import get_logger
from assistant.schemas.webhook import WebhookEvent, WebhookResponse
from assistant.services.ingestion_service import IngestStatus, ingest
from assistant.services.router_service import get_message_router

logger = get_logger("webhook")

router = APIRouter()

SIGNATURE_HEADER = "X-Hub-Signature-256"

STATUS_MESSAGES = {
    IngestStatus.CREATED: "Message stored",
    IngestStatus.SKIPPED: "Duplicate message",
    IngestStatus.IGNORED: "Event ignored",
}


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """Check an HMAC-SHA256 `sha256=<hex>` signature over the raw body."""
    if not signature:
        return False
    scheme, _, received = signature.partition("=")
    if scheme != "sha256" or not received:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, received)


@router.post("/webhook/evolution", response_model=WebhookResponse)
async def evolution_webhook(request: Request, db: Session = Depends(get_db)):
    """Receive Evolution API events. 503 on store failures so the gateway redelivers."""
    raw_body = await request.body()

    secret = settings.evolution_webhook_secret
    if secret and not verify_signature(secret, raw_body, request.headers.get(SIGNATURE_HEADER)):
        logger.warning("Invalid webhook signature")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid signature")

    try:
        event = WebhookEvent.model_validate_json(raw_body)
    except ValidationError as exc:
        logger.warning(f"Malformed webhook event: {exc.error_count()} errors")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Malformed event")

    try:
        result = await ingest(db, event, get_message_router())
    except EventValidationError as exc:
        logger.warning(f"Rejected webhook event: {exc.message}")
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.message)
    except StorageError as exc:
        logger.error(f"Webhook storage failure: {exc.message}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Storage unavailable")

    return WebhookResponse(
        success=True,
        status=result.status.value,
        message=STATUS_MESSAGES[result.status],
        message_id=result.message_id,
    )
