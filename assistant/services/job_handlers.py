from typing import Awaitable, Callable

from assistant.config import settings
from assistant.database import SessionLocal
from assistant.errors import DeliveryError
from assistant.logging_config import get_logger
from assistant.services import ai_service, summary_service
from assistant.services.job_queue import Job
from assistant.services.message_service import get_processed_media, upsert_processed_media
from assistant.services.whatsapp_service import get_whatsapp_service

logger = get_logger("job_handlers")

INDIVIDUAL_CHAT_SUFFIXES = ("@c.us", "@s.whatsapp.net")


async def _process_media(
    job: Job,
    media_type: str,
    result_field: str,
    header: str,
    produce: Callable[[dict], Awaitable[str]],
) -> dict:
    """Run one media step, persisting the outcome (or the failure) before returning or raising.

    A retry after the result was stored only repeats the admin delivery. A
    failure stays `pending` while attempts remain and becomes `failed` on the
    last one.
    """
    data = job.payload
    message_id = data["messageId"]
    chat_id = data.get("chatId")
    media_url = data.get("mediaUrl")

    db = SessionLocal()
    try:
        job.update_progress(10)
        stored = get_processed_media(db, message_id)
        if stored is not None and stored.processing_status == "completed" and getattr(stored, result_field):
            text = getattr(stored, result_field)
            logger.info("Media already processed, retrying delivery only", extra={"context": {"message_id": message_id}})
        else:
            try:
                text = await produce(data)
            except Exception as exc:
                upsert_processed_media(
                    db,
                    message_id,
                    media_type,
                    original_url=media_url,
                    status="failed" if job.is_last_attempt else "pending",
                    error=str(exc),
                )
                raise
            job.update_progress(70)
            upsert_processed_media(db, message_id, media_type, original_url=media_url, **{result_field: text})
        job.update_progress(90)

        if settings.admin_chat_id:
            await get_whatsapp_service().send_message(settings.admin_chat_id, f"{header.format(chat_id=chat_id)}\n\n{text}")

        return {result_field: text, "status": "completed"}
    finally:
        db.close()


async def process_audio_job(job: Job) -> dict:
    return await _process_media(
        job,
        "audio",
        "transcription",
        "🎵 *Transcrição de áudio de {chat_id}:*",
        lambda data: ai_service.transcribe_audio(data["mediaUrl"], data["messageId"]),
    )


async def process_image_job(job: Job) -> dict:
    return await _process_media(
        job,
        "image",
        "description",
        "🖼️ *Descrição de imagem de {chat_id}:*",
        lambda data: ai_service.describe_image(data["mediaUrl"], data["messageId"]),
    )


async def process_document_job(job: Job) -> dict:
    return await _process_media(
        job,
        "document",
        "summary",
        "📄 *Resumo de documento de {chat_id}:*",
        lambda data: ai_service.summarize_document(data["mediaUrl"], data["messageId"], data.get("content") or ""),
    )


def _is_individual(chat_id) -> bool:
    return bool(chat_id) and chat_id.endswith(INDIVIDUAL_CHAT_SUFFIXES)


async def _notify_summary_failure(chat_id: str, requester_id, error: Exception) -> None:
    whatsapp = get_whatsapp_service()
    try:
        if _is_individual(requester_id):
            await whatsapp.send_message(requester_id, f"❌ Erro ao gerar resumo: {error}")
        elif settings.admin_chat_id:
            await whatsapp.send_message(settings.admin_chat_id, f"Falha no resumo para {chat_id}: {error}")
    except (DeliveryError, ValueError) as e:
        logger.error(f"Failed to notify summary failure: {e}", extra={"context": {"chat_id": chat_id}})


async def process_group_summary_job(job: Job) -> dict:
    """Generate a group digest and deliver it to the requester (individual chats) or the admin."""
    data = job.payload
    chat_id = data["chatId"]
    period = summary_service.normalize_period(data.get("period"))
    requester_id = data.get("requesterId")
    force = bool(data.get("force"))
    period_label = ai_service.PERIOD_LABELS[period.value]

    db = SessionLocal()
    try:
        job.update_progress(20)
        summary = await summary_service.get_or_generate(db, chat_id, period.value, force=force)
        job.update_progress(80)

        if summary == summary_service.INSUFFICIENT_DATA:
            logger.info("Summary skipped: insufficient data", extra={"context": {"chat_id": chat_id}})
            if _is_individual(requester_id):
                await get_whatsapp_service().send_message(requester_id, summary)
            return {"status": "insufficient_data", "chat_id": chat_id}

        if _is_individual(requester_id):
            await get_whatsapp_service().send_message(
                requester_id,
                f"📊 *Seu resumo solicitado para o grupo {chat_id} ({period_label}):*\n\n{summary}",
            )
        elif settings.admin_chat_id:
            await get_whatsapp_service().send_message(
                settings.admin_chat_id,
                f"📊 *Resumo do grupo {chat_id} ({period_label}):*\n\n{summary}",
            )
        return {"summary": summary, "status": "completed"}
    except Exception as exc:
        if job.is_last_attempt:
            await _notify_summary_failure(chat_id, requester_id, exc)
        raise
    finally:
        db.close()


async def process_text_response_job(job: Job) -> dict:
    data = job.payload
    job.update_progress(30)
    response = await ai_service.generate_text_response(data["content"], data.get("context") or {})
    job.update_progress(80)
    await get_whatsapp_service().send_message(data["chatId"], response)
    return {"response": response, "status": "completed"}
