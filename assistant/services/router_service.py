"""Per-conversation dispatch of stored messages.

Individual chats run the support-mode machine (see state_machine) and the
one-shot commands; groups run summary requests or archiving. Every routed
message is marked processed once its handler returns, whatever the outcome.
Media handed to the job queue leaves a pending processed_media row behind,
which startup recovery re-enqueues if the job never finished.
"""

import re
from typing import Optional

from sqlalchemy.orm import Session

from assistant.config import settings
from assistant.errors import DeliveryError, RetrievalError, StorageError
from assistant.logging_config import get_logger
from assistant.models import Message
from assistant.services import ai_service, summary_service
from assistant.services.cache import get_redis
from assistant.services.command_parser import COMMAND_PREFIX, TOGGLE_PREFIX, ParsedCommand, parse_command
from assistant.services.conversation_service import (
    ContactKnowledgeStatus,
    bootstrap_contact_knowledge,
    summarize_conversation,
)
from assistant.services.knowledge_service import (
    KnowledgeBase,
    format_knowledge_context,
    format_search_report,
    get_knowledge_base,
)
from assistant.services.message_service import archive_group_message, mark_message_processed, upsert_processed_media
from assistant.services.queue_service import MEDIA_JOB_TYPES, QueueRegistry, get_queue_registry, media_job_payload
from assistant.services.result import Result
from assistant.services.state_machine import SupportSessionStore
from assistant.services.whatsapp_service import WhatsAppService, get_whatsapp_service

logger = get_logger("router_service")

SUPPORT_COMMAND = "apoioaluno"
SUPPORT_CATEGORY = "curso"
FAREWELL_TOKEN = "obrigado"
KNOWLEDGE_COMMANDS = ("curso", "projetos", "orientacoes")
HISTORY_COMMAND = "historico"
BASE_COMMAND = "base"
GROUP_SUMMARY_COMMAND = "resumo"

SUPPORT_ACTIVATED = "✅ *Modo de Apoio ao Aluno ativado. Faça suas perguntas sobre o curso. Para sair, digite 'obrigado'.*"
SUPPORT_FINISHED = "👍 *Modo de Apoio finalizado.* Até a próxima!"
NO_ANSWER_FOUND = "Desculpe, não encontrei uma resposta para sua pergunta na base de conhecimento."
SUPPORT_APOLOGY = "Ocorreu um erro ao processar sua pergunta. Tente novamente."
TEXT_APOLOGY = "Desculpe, não consegui processar sua mensagem agora. Tente novamente em instantes."
SUMMARY_APOLOGY = "Erro ao gerar resumo. Tente novamente mais tarde."

_WHITESPACE = re.compile(r"\s+")


def is_farewell(content: Optional[str]) -> bool:
    return _WHITESPACE.sub("", (content or "").lower()) == FAREWELL_TOKEN


class MessageRouter:
    def __init__(
        self,
        sessions: Optional[SupportSessionStore] = None,
        queues: Optional[QueueRegistry] = None,
        knowledge_base: Optional[KnowledgeBase] = None,
        whatsapp: Optional[WhatsAppService] = None,
        redis_getter=get_redis,
    ):
        self.sessions = sessions if sessions is not None else SupportSessionStore()
        self._queues = queues
        self._knowledge_base = knowledge_base
        self._whatsapp = whatsapp
        self._redis_getter = redis_getter

    @property
    def queues(self) -> QueueRegistry:
        return self._queues if self._queues is not None else get_queue_registry()

    @property
    def knowledge_base(self) -> KnowledgeBase:
        return self._knowledge_base if self._knowledge_base is not None else get_knowledge_base()

    @property
    def whatsapp(self) -> WhatsAppService:
        return self._whatsapp if self._whatsapp is not None else get_whatsapp_service()

    async def route(self, db: Session, message: Message) -> None:
        try:
            if message.is_group:
                await self._route_group(db, message)
            else:
                await self._route_individual(db, message)
        finally:
            mark_message_processed(db, message.message_id)

    async def _send(self, chat_id: str, text: str) -> bool:
        """Deliver and report. Delivery already retries, so a failure here is logged and dropped."""
        try:
            await self.whatsapp.send_message(chat_id, text)
            return True
        except (DeliveryError, ValueError) as e:
            logger.error(f"Reply delivery failed: {e}", extra={"context": {"chat_id": chat_id}})
            return False

    async def _send_admin(self, text: str) -> bool:
        return await self._send(settings.admin_chat_id, text)

    # Individual chats

    async def _route_individual(self, db: Session, message: Message) -> None:
        chat_id = message.chat_id
        content = (message.content or "").strip()
        command = parse_command(content)

        async with self.sessions.lock(chat_id):
            category = self.sessions.get(chat_id)
            if category is not None:
                if is_farewell(content):
                    self.sessions.deactivate(chat_id)
                    action = "deactivated"
                else:
                    action = "support_query"
            elif command and command.prefix == TOGGLE_PREFIX and command.name == SUPPORT_COMMAND:
                self.sessions.activate(chat_id, SUPPORT_CATEGORY)
                action = "activated"
            else:
                action = None

        if action == "deactivated":
            logger.info("Support mode finished", extra={"context": {"chat_id": chat_id}})
            await self._send(chat_id, SUPPORT_FINISHED)
            return
        if action == "activated":
            logger.info("Support mode activated", extra={"context": {"chat_id": chat_id, "category": SUPPORT_CATEGORY}})
            await self._send(chat_id, SUPPORT_ACTIVATED)
            return
        if action == "support_query":
            await self._handle_support_query(message, content, category)
            return

        if command and command.prefix == COMMAND_PREFIX and await self._dispatch_command(db, message, command):
            return

        if message.media_url and message.media_type in MEDIA_JOB_TYPES:
            self._record_pending_media(db, message)
            await self.queues.add_media_job(media_job_payload(message))
            return

        if content and message.message_type == "text":
            await self._handle_plain_text(message, content)

    def _record_pending_media(self, db: Session, message: Message) -> None:
        """Leave a pending row so the job can be rebuilt if this process dies before it finishes."""
        try:
            upsert_processed_media(
                db,
                message.message_id,
                message.media_type,
                original_url=message.media_url,
                status="pending",
            )
        except StorageError as e:
            logger.error(f"Pending media row not recorded: {e}", extra={"context": {"message_id": message.message_id}})

    async def _dispatch_command(self, db: Session, message: Message, command: ParsedCommand) -> bool:
        """Run a one-shot command. False when the name is not a known command."""
        if command.name == HISTORY_COMMAND:
            handler = self._handle_history
            args = ()
        elif command.name in KNOWLEDGE_COMMANDS:
            handler = self._handle_knowledge_search
            args = (command.name, command.args)
        elif command.name == BASE_COMMAND:
            handler = self._handle_contact_knowledge
            args = ()
        else:
            return False

        logger.info(f"Command /{command.name} received", extra={"context": {"chat_id": message.chat_id}})
        if not settings.admin_chat_id:
            logger.warning(f"Command /{command.name} received but ADMIN_CHAT_ID is not configured, skipping")
            return True
        await handler(db, message, *args)
        return True

    async def _handle_history(self, db: Session, message: Message) -> None:
        try:
            summary = await summarize_conversation(db, message.chat_id)
        except Exception as e:
            logger.error(f"History digest failed for {message.chat_id}: {e}", exc_info=True)
            await self._send_admin(f"Falha ao gerar o histórico para o chat {message.chat_id}.")
            return

        await self._send_admin(
            "*--- Relatório de Histórico ---*\n\n"
            f"*Solicitado por:* {message.sender_id}\n"
            f"*Na conversa com:* {message.chat_id}\n\n"
            f"*Resumo dos Tópicos:*\n{summary}"
        )

    async def _handle_knowledge_search(self, db: Session, message: Message, category: str, query: str) -> None:
        if not query:
            await self._send_admin(f"Comando /{category} recebido de {message.chat_id} sem texto para busca.")
            return

        try:
            results = await self.knowledge_base.search(query, category)
        except RetrievalError as e:
            logger.warning(f"Knowledge search degraded to no results: {e}", extra={"context": {"category": category}})
            results = []
        except Exception as e:
            logger.error(f"Knowledge command /{category} failed: {e}", exc_info=True)
            await self._send_admin(f'Falha ao processar a busca por "{query}" na categoria {category}.')
            return

        await self._send_admin(
            f"{format_search_report(query, category, results)}\n\n_Solicitado por: {message.sender_id}_"
        )

    async def _handle_contact_knowledge(self, db: Session, message: Message) -> None:
        chat_id = message.chat_id
        try:
            knowledge = bootstrap_contact_knowledge(db, chat_id)
        except Exception as e:
            logger.error(f"Contact knowledge failed for {chat_id}: {e}", exc_info=True)
            await self._send_admin(f"Falha ao criar a base de conhecimento para {chat_id}.")
            return

        if knowledge.status == ContactKnowledgeStatus.EXISTING:
            text = f"*Base de conhecimento recuperada para {chat_id}:*\n\n{knowledge.content}"
        elif knowledge.status == ContactKnowledgeStatus.CREATED:
            text = (
                f"Nova base de conhecimento criada para {chat_id}. "
                "Lembre-se de executar scripts/build_knowledge_base.py para incluí-la nas buscas."
            )
        else:
            text = f"Nenhuma mensagem recente para criar uma base de conhecimento para {chat_id}."
        await self._send_admin(text)

    async def _answer_from_knowledge(self, question: str, category: str, chat_id: str) -> Result[Optional[str]]:
        try:
            results = await self.knowledge_base.search(question, category)
            if not results:
                return Result.success(None)
            answer = await ai_service.answer_from_context(question, format_knowledge_context(results), chat_id)
            return Result.success(answer)
        except Exception as e:
            return Result.from_exception(e)

    async def _handle_support_query(self, message: Message, content: str, category: str) -> None:
        result = await self._answer_from_knowledge(content, category, message.chat_id)
        if not result.ok:
            logger.error(
                f"Support query failed: {result.error}",
                extra={"context": {"chat_id": message.chat_id, "error_code": result.error_code}},
            )
            await self._send(message.chat_id, SUPPORT_APOLOGY)
            return
        await self._send(message.chat_id, result.value or NO_ANSWER_FOUND)

    async def _handle_plain_text(self, message: Message, content: str) -> None:
        try:
            result = Result.success(
                await ai_service.generate_text_response(
                    content,
                    {"chatId": message.chat_id, "senderId": message.sender_id},
                )
            )
        except Exception as e:
            result = Result.from_exception(e)

        if not result.ok:
            logger.error(
                f"Inline answer failed: {result.error}",
                extra={"context": {"chat_id": message.chat_id, "error_code": result.error_code}},
            )
        await self._send(message.chat_id, result.unwrap_or(TEXT_APOLOGY))

    # Groups

    async def _route_group(self, db: Session, message: Message) -> None:
        content = (message.content or "").strip()
        command = parse_command(content)

        if command and command.prefix == COMMAND_PREFIX and command.name == GROUP_SUMMARY_COMMAND:
            await self._handle_group_summary_command(db, message)
            return

        if content and summary_service.is_summary_request(content):
            await self._handle_group_summary_request(db, message, content)
            return

        await archive_group_message(self._redis_getter(), message)

    async def _handle_group_summary_command(self, db: Session, message: Message) -> None:
        chat_id = message.chat_id
        if not settings.admin_chat_id:
            logger.warning("Command /resumo received but ADMIN_CHAT_ID is not configured, skipping")
            return
        try:
            await summary_service.request_summary(db, chat_id, settings.admin_chat_id, self.queues)
        except Exception as e:
            logger.error(f"Summary request failed for {chat_id}: {e}")
            await self._send_admin(f"Falha ao solicitar resumo para o grupo {chat_id}: {e}")
            return
        await self._send_admin(
            f"Solicitação de resumo para o grupo {chat_id} foi enfileirada. O resultado será enviado em breve."
        )

    async def _handle_group_summary_request(self, db: Session, message: Message, content: str) -> None:
        period = summary_service.extract_summary_period(content)
        try:
            summary = await summary_service.get_or_generate(db, message.chat_id, period.value)
        except Exception as e:
            logger.error(
                f"Inline group summary failed: {e}",
                extra={"context": {"chat_id": message.chat_id, "period": period.value}},
            )
            await self._send(message.chat_id, SUMMARY_APOLOGY)
            return
        await self._send(message.chat_id, summary)


_message_router: Optional[MessageRouter] = None


def get_message_router() -> MessageRouter:
    global _message_router
    if _message_router is None:
        _message_router = MessageRouter()
    return _message_router
