from typing import List, Optional

import httpx

from assistant.errors import UpstreamAIError
from assistant.logging_config import get_logger
from assistant.services.llm.base import LLMProvider, LLMResponse

logger = get_logger("llm.openai")


class OpenAIProvider(LLMProvider):
    """OpenAI API provider: chat, embeddings, speech-to-text and vision."""

    def __init__(
        self,
        api_key: Optional[str],
        default_model: str = "gpt-4o-mini",
        embedding_model: str = "text-embedding-3-small",
        timeout_seconds: float = 60.0,
    ):
        self.api_key = api_key
        self.default_model = default_model
        self.embedding_model = embedding_model
        self.timeout_seconds = timeout_seconds
        self.base_url = "https://api.openai.com/v1/chat/completions"
        self.embeddings_url = "https://api.openai.com/v1/embeddings"
        self.audio_url = "https://api.openai.com/v1/audio/transcriptions"

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def _post_json(self, url: str, payload: dict, operation: str, timeout: float) -> dict:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(url, headers=self._headers(), json=payload)
        except httpx.TimeoutException as exc:
            raise UpstreamAIError("OpenAI", operation, f"timeout after {timeout}s") from exc
        except httpx.HTTPError as exc:
            raise UpstreamAIError("OpenAI", operation, str(exc)) from exc

        if response.status_code != 200:
            logger.error(f"OpenAI {operation} error: {response.status_code} - {response.text}")
            raise UpstreamAIError("OpenAI", operation, f"{response.status_code} - {response.text}")
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamAIError("OpenAI", operation, "response body is not JSON") from exc

    async def generate(
        self,
        messages: List[dict],
        model: Optional[str] = None,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        timeout_seconds: Optional[float] = None,
    ) -> LLMResponse:
        """Generate response from OpenAI."""
        model = model or self.default_model
        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        payload = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        logger.debug(f"OpenAI request: model={model}, messages_count={len(messages)}")

        data = await self._post_json(self.base_url, payload, "text_generation", timeout)

        content = ""
        if data.get("choices"):
            message = data["choices"][0].get("message", {})
            content = message.get("content") or ""
        if not content:
            raise UpstreamAIError("OpenAI", "text_generation", "empty completion")

        return LLMResponse(
            content=content,
            model=data.get("model", model),
            usage=data.get("usage"),
        )

    async def embed(self, text: str, model: Optional[str] = None) -> List[float]:
        payload = {
            "model": model or self.embedding_model,
            "input": text,
            "encoding_format": "float",
        }
        data = await self._post_json(self.embeddings_url, payload, "embedding", self.timeout_seconds)
        items = data.get("data") or []
        embedding = items[0].get("embedding") if items else None
        if not embedding:
            raise UpstreamAIError("OpenAI", "embedding", "no embedding in response")
        return embedding

    async def describe_image(
        self,
        image_url: str,
        prompt: str,
        model: Optional[str] = None,
        max_tokens: int = 500,
    ) -> str:
        """Describe an image with a vision-capable chat model."""
        messages = [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": prompt},
                    {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                ],
            }
        ]
        response = await self.generate(messages, model=model, max_tokens=max_tokens)
        return response.content

    async def transcribe_audio(
        self,
        *,
        audio_bytes: bytes,
        filename: str,
        mime_type: Optional[str] = None,
        model: Optional[str] = None,
        language: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> str:
        """Transcribe audio using OpenAI speech-to-text."""
        if not audio_bytes:
            raise ValueError("audio_bytes is empty")

        files = {"file": (filename or "audio", audio_bytes, mime_type or "application/octet-stream")}
        data = {"model": model or "whisper-1", "response_format": "text"}
        if language:
            data["language"] = language

        timeout = timeout_seconds if timeout_seconds is not None else self.timeout_seconds
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    self.audio_url,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    files=files,
                    data=data,
                )
        except httpx.TimeoutException as exc:
            raise UpstreamAIError("Whisper", "transcription", f"timeout after {timeout}s") from exc
        except httpx.HTTPError as exc:
            raise UpstreamAIError("Whisper", "transcription", str(exc)) from exc

        if response.status_code != 200:
            logger.error(f"OpenAI transcription error: {response.text}")
            raise UpstreamAIError("Whisper", "transcription", f"{response.status_code} - {response.text}")

        transcript = (response.text or "").strip()
        if not transcript:
            logger.warning("OpenAI transcription returned empty text")
        return transcript
