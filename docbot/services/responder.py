from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..schemas import AutoResponseResult, InboundEvent, ResponseOutcome
from . import repository
from .context import ContextAssembler
from .embedding import EmbeddingGateway, EmbeddingServiceError
from .llm import CompletionClient, LLMConfigurationError, LLMServiceError
from .messaging import WhatsAppSender
from .retrieval import DocumentScope, VectorRetriever

logger = structlog.get_logger(__name__)


class AutoResponder:
    """Answers one inbound WhatsApp message from the receiving tenant's documents.

    Stages run strictly in order for a single event:
    record/dedupe → tenant scope → credentials → embed → retrieve →
    assemble → generate → deliver → persist. Nothing is retried here; the
    channel's own redelivery, stopped by the dedupe step, plays that role.
    A storage error before delivery releases the event so that redelivery
    is answered; after delivery it is logged and the sent text returned.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        embedder: EmbeddingGateway,
        retriever: VectorRetriever,
        assembler: ContextAssembler,
        completion: CompletionClient,
        sender: WhatsAppSender,
        *,
        top_k: int = 5,
    ):
        self._session_factory = session_factory
        self._embedder = embedder
        self._retriever = retriever
        self._assembler = assembler
        self._completion = completion
        self._sender = sender
        self.top_k = top_k

    async def respond_to_inbound_event(self, event: InboundEvent) -> AutoResponseResult:
        log = logger.bind(message_id=event.message_id, tenant=event.to_number, sender=event.from_number)

        try:
            async with self._session_factory() as session:
                recorded = await repository.record_inbound(session, event)
        except SQLAlchemyError as e:
            log.error("inbound_record_failed", error=str(e))
            return AutoResponseResult(outcome=ResponseOutcome.STORAGE_FAILED,
                                      error=f"Failed to record inbound message: {e}")
        if not recorded:
            log.info("inbound_duplicate")
            return AutoResponseResult(outcome=ResponseOutcome.DUPLICATE)

        if event.event_type != repository.INBOUND_EVENT or not (event.text or "").strip():
            log.info("inbound_ignored", event_type=event.event_type)
            return AutoResponseResult(outcome=ResponseOutcome.IGNORED)

        try:
            return await self._answer(event, log)
        except SQLAlchemyError as e:
            # Nothing was sent yet
            log.error("auto_response_storage_failed", error=str(e))
            await self._release(event, log)
            return AutoResponseResult(outcome=ResponseOutcome.STORAGE_FAILED,
                                      error=f"Storage error while preparing response: {e}")

    async def _release(self, event: InboundEvent, log) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await repository.release_inbound(session, event.message_id)
        except SQLAlchemyError as e:
            log.error("inbound_release_failed", error=str(e))

    async def _answer(self, event: InboundEvent, log) -> AutoResponseResult:
        async with self._session_factory() as session:
            document_ids = await repository.document_ids_for_phone(session, event.to_number)
            mappings = await repository.tenant_mappings(session, event.to_number)

        if not document_ids:
            log.info("no_documents_mapped")
            return AutoResponseResult(outcome=ResponseOutcome.NO_DOCUMENTS,
                                      error="No documents mapped to this business number")

        # First mapping is authoritative for prompt and credentials
        profile = mappings[0]
        if profile.credentials is None:
            log.warning("tenant_credentials_missing")
            return AutoResponseResult(
                outcome=ResponseOutcome.NO_CREDENTIALS,
                error="No WhatsApp API credentials found. Please set credentials in the Configuration tab.",
            )

        try:
            query_vector = await self._embedder.embed(event.text)
        except EmbeddingServiceError as e:
            log.error("query_embedding_failed", error=str(e))
            return AutoResponseResult(outcome=ResponseOutcome.EMBED_FAILED,
                                      error=f"Failed to generate embedding for message: {e}")

        chunks = await self._retriever.retrieve(query_vector, DocumentScope.of(document_ids), self.top_k)
        if not chunks:
            log.info("no_relevant_chunks", documents=len(document_ids))

        async with self._session_factory() as session:
            history = await repository.recent_history(
                session, event.to_number, event.from_number,
                limit=self._assembler.history_turns, exclude_message_id=event.message_id,
            )
        messages = self._assembler.assemble(chunks, history, profile.system_prompt, event.text)

        try:
            response_text, model_used = await self._completion.complete(messages)
        except (LLMConfigurationError, LLMServiceError) as e:
            log.error("generation_failed", error=str(e))
            return AutoResponseResult(outcome=ResponseOutcome.GENERATION_FAILED, error=str(e))
        response_text = response_text.strip()
        if not response_text:
            log.error("generation_empty")
            return AutoResponseResult(outcome=ResponseOutcome.GENERATION_FAILED,
                                      error="No response generated from LLM")

        delivery = await self._sender.send_text(event.from_number, response_text, profile.credentials)
        if not delivery.success:
            log.error("delivery_failed", error=delivery.error)
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        await repository.mark_inbound(session, event.message_id, sent=False)
            except SQLAlchemyError as e:
                log.error("inbound_mark_failed", error=str(e))
            return AutoResponseResult(
                outcome=ResponseOutcome.DELIVERY_FAILED,
                delivered=False,
                response_text=response_text,
                error=f"Generated response but failed to send: {delivery.error}",
            )

        # Already sent: a storage error from here on must not turn into a failure or a resend
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await repository.save_outbound(session, event.to_number, event.from_number,
                                                   response_text, reply_to=event.message_id)
                    await repository.mark_inbound(session, event.message_id, sent=True)
        except SQLAlchemyError as e:
            log.error("outbound_log_failed", error=str(e))
            return AutoResponseResult(outcome=ResponseOutcome.DELIVERED, delivered=True,
                                      response_text=response_text,
                                      error=f"Response sent but could not be logged: {e}")

        log.info("auto_response_sent", model=model_used, chunks=len(chunks), history=len(history))
        return AutoResponseResult(outcome=ResponseOutcome.DELIVERED, delivered=True, response_text=response_text)
