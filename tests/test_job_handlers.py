from unittest.mock import AsyncMock, Mock, patch

import pytest

from assistant.errors import DeliveryError, UpstreamAIError
from assistant.services import summary_service
from assistant.services.job_handlers import (
    process_audio_job,
    process_document_job,
    process_group_summary_job,
    process_image_job,
    process_text_response_job,
)
from assistant.services.job_queue import Job, QueueOptions
from assistant.services.message_service import get_processed_media

GROUP = "120363000000@g.us"
REQUESTER = "5511999990000@s.whatsapp.net"


def make_job(job_type: str, payload: dict) -> Job:
    options = QueueOptions()
    return Job(
        id="job-1",
        queue="test",
        job_type=job_type,
        payload=payload,
        priority=1,
        max_attempts=options.attempts,
        backoff=options.backoff,
    )


@pytest.fixture
def whatsapp():
    service = Mock(send_message=AsyncMock(return_value={}))
    with patch("assistant.services.job_handlers.get_whatsapp_service", return_value=service):
        yield service


@pytest.fixture
def session_factory(db_session):
    with patch("assistant.services.job_handlers.SessionLocal", return_value=db_session):
        yield db_session


def media_payload(message_id: str, media_type: str) -> dict:
    return {
        "messageId": message_id,
        "chatId": REQUESTER,
        "mediaUrl": f"https://cdn/{message_id}",
        "mediaType": media_type,
        "content": "legenda",
    }


class TestMediaJobs:
    @pytest.mark.asyncio
    async def test_audio_transcription_is_stored_and_forwarded(self, session_factory, whatsapp, admin_chat, store_message):
        store_message("A1", content="", message_type="audio", media_url="https://cdn/A1", media_type="audio")
        job = make_job("audio", media_payload("A1", "audio"))

        with patch("assistant.services.ai_service.transcribe_audio", new=AsyncMock(return_value="olá turma")):
            result = await process_audio_job(job)

        assert result == {"transcription": "olá turma", "status": "completed"}
        media = get_processed_media(session_factory, "A1")
        assert media.processing_status == "completed"
        assert media.transcription == "olá turma"
        chat_id, text = whatsapp.send_message.await_args.args
        assert chat_id == admin_chat
        assert "olá turma" in text
        assert job.progress == 90

    @pytest.mark.asyncio
    async def test_failure_is_recorded_then_raised(self, session_factory, whatsapp, no_admin, store_message):
        store_message("I1", content="", message_type="image", media_url="https://cdn/I1", media_type="image")
        job = make_job("image", media_payload("I1", "image"))
        job.attempts_made = job.max_attempts - 1

        with patch(
            "assistant.services.ai_service.describe_image",
            new=AsyncMock(side_effect=UpstreamAIError("openai", "vision", "timeout")),
        ):
            with pytest.raises(UpstreamAIError):
                await process_image_job(job)

        media = get_processed_media(session_factory, "I1")
        assert media.processing_status == "failed"
        assert "timeout" in media.processing_error
        whatsapp.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_with_attempts_left_stays_pending(self, session_factory, whatsapp, no_admin, store_message):
        store_message("I2", content="", message_type="image", media_url="https://cdn/I2", media_type="image")
        job = make_job("image", media_payload("I2", "image"))

        with patch(
            "assistant.services.ai_service.describe_image",
            new=AsyncMock(side_effect=UpstreamAIError("openai", "vision", "timeout")),
        ):
            with pytest.raises(UpstreamAIError):
                await process_image_job(job)

        media = get_processed_media(session_factory, "I2")
        assert media.processing_status == "pending"
        assert "timeout" in media.processing_error

    @pytest.mark.asyncio
    async def test_retry_after_failed_delivery_only_redelivers(self, session_factory, whatsapp, admin_chat, store_message):
        store_message("A2", content="", message_type="audio", media_url="https://cdn/A2", media_type="audio")
        job = make_job("audio", media_payload("A2", "audio"))
        whatsapp.send_message.side_effect = [DeliveryError("gateway down"), {}]

        with patch("assistant.services.ai_service.transcribe_audio", new=AsyncMock(return_value="olá turma")):
            with pytest.raises(DeliveryError):
                await process_audio_job(job)
        job.attempts_made = 1

        transcribe = AsyncMock(side_effect=UpstreamAIError("openai", "whisper", "timeout"))
        with patch("assistant.services.ai_service.transcribe_audio", new=transcribe):
            result = await process_audio_job(job)

        transcribe.assert_not_awaited()
        assert result == {"transcription": "olá turma", "status": "completed"}
        media = get_processed_media(session_factory, "A2")
        assert media.processing_status == "completed"
        assert media.transcription == "olá turma"
        assert whatsapp.send_message.await_count == 2
        assert "olá turma" in whatsapp.send_message.await_args.args[1]

    @pytest.mark.asyncio
    async def test_document_summary_passes_caption(self, session_factory, whatsapp, no_admin, store_message):
        store_message("D1", content="legenda", message_type="document", media_url="https://cdn/D1", media_type="document")
        job = make_job("document", media_payload("D1", "document"))

        with patch(
            "assistant.services.ai_service.summarize_document",
            new=AsyncMock(return_value="Resumo do PDF"),
        ) as summarize:
            await process_document_job(job)

        summarize.assert_awaited_once_with("https://cdn/D1", "D1", "legenda")
        assert get_processed_media(session_factory, "D1").summary == "Resumo do PDF"


class TestGroupSummaryJob:
    @pytest.mark.asyncio
    async def test_individual_requester_receives_summary(self, session_factory, whatsapp):
        job = make_job("group-summary", {"chatId": GROUP, "period": "24h", "requesterId": REQUESTER, "force": True})

        with patch.object(summary_service, "get_or_generate", new=AsyncMock(return_value="Tudo certo")) as generate:
            result = await process_group_summary_job(job)

        assert generate.await_args.kwargs["force"] is True
        assert result["status"] == "completed"
        chat_id, text = whatsapp.send_message.await_args.args
        assert chat_id == REQUESTER
        assert "Tudo certo" in text

    @pytest.mark.asyncio
    async def test_system_requester_goes_to_admin(self, session_factory, whatsapp, admin_chat):
        job = make_job("group-summary", {"chatId": GROUP, "period": "24h", "requesterId": "system", "force": False})

        with patch.object(summary_service, "get_or_generate", new=AsyncMock(return_value="Resumo diário")):
            await process_group_summary_job(job)

        assert whatsapp.send_message.await_args.args[0] == admin_chat

    @pytest.mark.asyncio
    async def test_insufficient_data(self, session_factory, whatsapp):
        job = make_job("group-summary", {"chatId": GROUP, "period": "24h", "requesterId": REQUESTER})

        with patch.object(
            summary_service, "get_or_generate", new=AsyncMock(return_value=summary_service.INSUFFICIENT_DATA)
        ):
            result = await process_group_summary_job(job)

        assert result["status"] == "insufficient_data"
        whatsapp.send_message.assert_awaited_once_with(REQUESTER, summary_service.INSUFFICIENT_DATA)

    @pytest.mark.asyncio
    async def test_failure_notifies_requester_and_raises(self, session_factory, whatsapp):
        job = make_job("group-summary", {"chatId": GROUP, "period": "24h", "requesterId": REQUESTER})
        job.attempts_made = job.max_attempts - 1

        with patch.object(
            summary_service,
            "get_or_generate",
            new=AsyncMock(side_effect=UpstreamAIError("openai", "chat", "down")),
        ):
            with pytest.raises(UpstreamAIError):
                await process_group_summary_job(job)

        chat_id, text = whatsapp.send_message.await_args.args
        assert chat_id == REQUESTER
        assert "Erro ao gerar resumo" in text

    @pytest.mark.asyncio
    async def test_failure_with_attempts_left_is_silent(self, session_factory, whatsapp):
        job = make_job("group-summary", {"chatId": GROUP, "period": "24h", "requesterId": REQUESTER})

        with patch.object(
            summary_service,
            "get_or_generate",
            new=AsyncMock(side_effect=UpstreamAIError("openai", "chat", "down")),
        ):
            with pytest.raises(UpstreamAIError):
                await process_group_summary_job(job)

        whatsapp.send_message.assert_not_awaited()


class TestTextResponseJob:
    @pytest.mark.asyncio
    async def test_reply_is_sent_to_chat(self, whatsapp):
        job = make_job("text-response", {"messageId": "M1", "chatId": REQUESTER, "content": "oi", "context": {}})

        with patch("assistant.services.ai_service.generate_text_response", new=AsyncMock(return_value="Olá!")):
            result = await process_text_response_job(job)

        assert result["response"] == "Olá!"
        whatsapp.send_message.assert_awaited_once_with(REQUESTER, "Olá!")
