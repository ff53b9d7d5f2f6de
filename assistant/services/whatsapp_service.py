import asyncio
from typing import Optional

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

from assistant.config import settings
from assistant.errors import DeliveryError
from assistant.logging_config import get_logger

logger = get_logger("whatsapp_service")


class WhatsAppService:
    """Outbound delivery through the Evolution API gateway."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        instance: Optional[str],
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        sleep_func=asyncio.sleep,
    ):
        if not api_key or not instance:
            logger.error("Evolution API key or instance is not configured (EVOLUTION_API_KEY, WHATSAPP_INSTANCE)")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.instance = instance
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(1, max_retries)
        self.retry_base_seconds = retry_base_seconds
        self._sleep = sleep_func

    async def _post(self, path: str, payload: dict) -> dict:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                response = await client.post(
                    url,
                    headers={"Content-Type": "application/json", "apikey": self.api_key or ""},
                    json=payload,
                )
        except httpx.TimeoutException as exc:
            raise DeliveryError("Evolution API request timed out") from exc
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Failed to reach Evolution API: {exc}") from exc

        if response.status_code >= 400:
            raise DeliveryError(
                f"Evolution API responded with {response.status_code}: {response.text}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError:
            return {}

    def _log_retry(self, operation: str, chat_id: str, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()
        logger.warning(
            f"{operation} attempt {retry_state.attempt_number} failed, retrying in {retry_state.next_action.sleep}s",
            extra={"context": {"chat_id": chat_id, "error": getattr(exc, "message", str(exc))}},
        )

    async def _with_retry(self, operation: str, chat_id: str, call) -> dict:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.retry_base_seconds),
            retry=retry_if_exception_type(DeliveryError),
            before_sleep=lambda state: self._log_retry(operation, chat_id, state),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return await retrying(call)
        except DeliveryError as exc:
            logger.error(
                f"{operation} failed after {self.max_retries} attempts",
                extra={"context": {"chat_id": chat_id, "error": exc.message, "status": exc.status_code}},
            )
            raise

    async def send_message(self, chat_id: str, text: str) -> dict:
        if not chat_id or not text:
            raise ValueError("chat_id and text are required")

        payload = {"number": chat_id, "textMessage": {"text": text}}
        data = await self._with_retry(
            "send_message",
            chat_id,
            lambda: self._post(f"/message/sendText/{self.instance}", payload),
        )
        logger.info(
            "Message sent via Evolution API",
            extra={"context": {"chat_id": chat_id, "length": len(text)}},
        )
        return data

    async def send_media(self, chat_id: str, media_url: str, caption: str = "", media_type: str = "image") -> dict:
        if not chat_id or not media_url:
            raise ValueError("chat_id and media_url are required")

        payload = {
            "number": chat_id,
            "mediaMessage": {"mediaType": media_type, "url": media_url, "caption": caption or ""},
        }
        data = await self._with_retry(
            "send_media",
            chat_id,
            lambda: self._post(f"/message/sendMedia/{self.instance}", payload),
        )
        logger.info(
            "Media sent via Evolution API",
            extra={"context": {"chat_id": chat_id, "media_type": media_type}},
        )
        return data


_whatsapp_service: Optional[WhatsAppService] = None


def get_whatsapp_service() -> WhatsAppService:
    global _whatsapp_service
    if _whatsapp_service is None:
        _whatsapp_service = WhatsAppService(
            base_url=settings.evolution_api_url,
            api_key=settings.evolution_api_key,
            instance=settings.whatsapp_instance,
            timeout_seconds=settings.delivery_timeout_seconds,
            max_retries=settings.delivery_max_retries,
            retry_base_seconds=settings.delivery_retry_base_seconds,
        )
    return _whatsapp_service
