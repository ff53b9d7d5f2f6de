import time
from datetime import datetime
from typing import Optional

import httpx

from assistant.config import settings
from assistant.errors import UpstreamAIError
from assistant.logging_config import get_logger
from assistant.services.llm import OpenAIProvider

logger = get_logger("ai_service")

PERIOD_LABELS = {
    "24h": "24 horas",
    "48h": "48 horas",
    "1week": "1 semana",
}

MIN_DOCUMENT_CHARS = 50
MAX_DOCUMENT_CHARS = 12000

IMAGE_DESCRIPTION_PROMPT = "Descreva esta imagem de forma detalhada e útil em português."

# Global LLM provider instance
_llm_provider = None


def get_llm_provider() -> OpenAIProvider:
    """Get or create LLM provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = OpenAIProvider(
            api_key=settings.openai_api_key,
            default_model=settings.openai_model,
            embedding_model=settings.openai_embedding_model,
            timeout_seconds=settings.ai_timeout_seconds,
        )
    return _llm_provider


def _log_ai(provider: str, operation: str, status: str, context: dict) -> None:
    logger.info(
        f"{provider} {operation} {status}",
        extra={"context": {"provider": provider, "operation": operation, "status": status, **context}},
    )


def build_system_prompt(context: Optional[dict] = None) -> str:
    context = context or {}
    return (
        "Você é um assistente inteligente para WhatsApp que ajuda usuários de forma útil e amigável.\n"
        "Diretrizes:\n"
        "- Responda sempre em português brasileiro\n"
        "- Seja conciso mas informativo\n"
        "- Use um tom amigável e profissional\n"
        "- Se não souber algo, admita e sugira alternativas\n"
        "- Evite respostas muito longas (máximo 300 palavras)\n"
        "Contexto da conversa:\n"
        f"- Chat ID: {context.get('chatId') or 'N/A'}\n"
        f"- Usuário: {context.get('senderId') or 'N/A'}"
    )


async def generate_text_response(text: str, context: Optional[dict] = None) -> str:
    """Single-shot completion. Raises UpstreamAIError; callers decide on retry."""
    started = time.monotonic()
    response = await get_llm_provider().generate(
        [
            {"role": "system", "content": build_system_prompt(context)},
            {"role": "user", "content": text},
        ],
        max_tokens=settings.openai_max_tokens,
    )
    _log_ai(
        "OpenAI",
        "text_generation",
        "success",
        {
            "input_length": len(text),
            "output_length": len(response.content),
            "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
            "tokens": (response.usage or {}).get("total_tokens"),
        },
    )
    return response.content


async def generate_embedding(text: str) -> list[float]:
    embedding = await get_llm_provider().embed(text)
    _log_ai("OpenAI", "embedding", "success", {"text_length": len(text), "dim": len(embedding)})
    return embedding


def _format_timestamp(value: Optional[datetime]) -> str:
    if not isinstance(value, datetime):
        return ""
    return value.strftime("%d/%m/%Y %H:%M")


def prepare_messages_for_summary(messages: list) -> str:
    lines = []
    for msg in messages:
        content = (msg.content or "").strip()
        if not content:
            continue
        lines.append(f"[{_format_timestamp(msg.created_at)}] {msg.sender_name or 'Unknown'}: {content}")
    return "\n".join(lines)


async def generate_group_summary(messages: list, period: str) -> str:
    period_label = PERIOD_LABELS.get(period, PERIOD_LABELS["24h"])
    prompt = (
        f"Crie um resumo das conversas do grupo WhatsApp das últimas {period_label}.\n"
        "Instruções:\n"
        "- Resuma os principais tópicos discutidos\n"
        "- Identifique decisões importantes tomadas\n"
        "- Mencione eventos ou informações relevantes\n"
        "- Use uma linguagem clara e organizada\n"
        "- Limite o resumo a no máximo 500 palavras\n\n"
        f"Conversas:\n{prepare_messages_for_summary(messages)}"
    )
    summary = await generate_text_response(prompt)
    _log_ai("OpenAI", "group_summary", "success", {"message_count": len(messages), "period": period})
    return summary


async def summarize_topics(formatted_history: str, chat_id: str) -> str:
    prompt = (
        "Com base no seguinte histórico de conversa de WhatsApp, identifique os 5 principais tópicos "
        "distintos discutidos. Para cada tópico, forneça um resumo conciso de uma frase. "
        "Se houver menos de 5 tópicos, liste quantos encontrar.\n\n"
        f"Histórico:\n---\n{formatted_history}\n---\n\nResumo dos Tópicos:"
    )
    return await generate_text_response(prompt, {"chatId": chat_id})


async def answer_from_context(question: str, context_text: str, chat_id: str) -> str:
    prompt = (
        "Você é um tutor. Use as informações de contexto abaixo para responder à pergunta do aluno "
        "de forma clara e objetiva. Se o contexto não for suficiente, informe que não encontrou a resposta.\n\n"
        f"Contexto:\n---\n{context_text}\n---\n\n"
        f"Pergunta do Aluno:\n{question}\n\nSua Resposta:"
    )
    return await generate_text_response(prompt, {"chatId": chat_id})


async def download_media(url: str) -> tuple[bytes, Optional[str]]:
    """Fetch media bytes and content type from the gateway CDN."""
    timeout = settings.media_download_timeout_seconds
    try:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
            response = await client.get(url)
    except httpx.TimeoutException as exc:
        raise UpstreamAIError("media", "download", f"timeout after {timeout}s") from exc
    except httpx.HTTPError as exc:
        raise UpstreamAIError("media", "download", str(exc)) from exc
    if response.status_code != 200:
        raise UpstreamAIError("media", "download", f"status {response.status_code}")
    return response.content, response.headers.get("content-type")


async def transcribe_audio(audio_url: str, message_id: str) -> str:
    audio_bytes, mime_type = await download_media(audio_url)
    transcription = await get_llm_provider().transcribe_audio(
        audio_bytes=audio_bytes,
        filename=f"{message_id}.ogg",
        mime_type=mime_type,
        model=settings.whisper_model,
        language=settings.whisper_language,
    )
    _log_ai("Whisper", "transcription", "success", {"message_id": message_id, "length": len(transcription)})
    return transcription


async def describe_image(image_url: str, message_id: str) -> str:
    description = await get_llm_provider().describe_image(
        image_url,
        IMAGE_DESCRIPTION_PROMPT,
        model=settings.openai_vision_model,
    )
    _log_ai("OpenAI Vision", "image_description", "success", {"message_id": message_id})
    return description


def extract_document_text(data: bytes, mime_type: Optional[str]) -> str:
    mime = (mime_type or "").split(";")[0].strip().lower()
    if mime and not (mime.startswith("text/") or mime in {"application/json", "application/xml"}):
        raise ValueError(f"Unsupported document type: {mime}")
    return data.decode("utf-8", errors="replace")


async def summarize_document(document_url: str, message_id: str, caption: str = "") -> str:
    data, mime_type = await download_media(document_url)
    text = extract_document_text(data, mime_type).strip()
    if len(text) < MIN_DOCUMENT_CHARS:
        raise ValueError("Could not extract sufficient text from document")

    prompt = f"Resuma o seguinte documento de forma clara e concisa em português:\n\n{text[:MAX_DOCUMENT_CHARS]}"
    if caption:
        prompt += f"\n\nContexto adicional: {caption}"
    summary = await generate_text_response(prompt)
    _log_ai("OpenAI", "document_summary", "success", {"message_id": message_id, "original_length": len(text)})
    return summary
