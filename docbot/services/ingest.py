from typing import Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..schemas import BoundMapping, Credentials, IngestionStage, IngestResult, UnboundMapping
from ..utils.text import chunk_text
from . import repository
from .embedding import EmbeddingGateway

logger = structlog.get_logger(__name__)

StageCallback = Callable[[IngestionStage], None]


class IngestionError(Exception):
    pass


class IngestionValidationError(IngestionError):
    """Missing tenant or credentials; the caller has to fix the request."""


class EmptyDocumentError(IngestionError):
    """Extraction produced no usable text."""


class IngestionOrchestrator:
    """extracted text → document row → chunks → embeddings → chunks + tenant mapping.

    Any failure after the document row exists deletes it again, so no
    document is ever left without its chunk set.
    """

    def __init__(self, session_factory: async_sessionmaker, embedder: EmbeddingGateway, *,
                 chunk_size: int = 1500, chunk_overlap: int = 200):
        self._session_factory = session_factory
        self._embedder = embedder
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    async def ingest(
        self,
        text: str,
        phone_number: str,
        credentials: Optional[Credentials],
        *,
        name: str = "document",
        file_type: str = "pdf",
        intent: Optional[str] = None,
        on_stage: Optional[StageCallback] = None,
    ) -> IngestResult:
        if not phone_number:
            raise IngestionValidationError("Phone number is required")
        if credentials is None:
            raise IngestionValidationError("auth_token and origin are required")

        log = logger.bind(phone_number=phone_number, file_name=name)
        async with self._session_factory() as session:
            doc = await repository.create_document(session, name, file_type, credentials)
            await session.commit()
            document_id = doc.id
        log = log.bind(document_id=str(document_id))

        try:
            chunks = chunk_text(text or "", self.chunk_size, self.chunk_overlap)
            if not chunks:
                raise EmptyDocumentError("No text chunks produced from file")
            _notify(on_stage, IngestionStage.CHUNKED)
            log.info("document_chunked", chunks=len(chunks))

            vectors = await self._embedder.embed_batch(chunks)
            _notify(on_stage, IngestionStage.EMBEDDED)

            async with self._session_factory() as session:
                async with session.begin():
                    await repository.add_chunks(session, document_id, chunks, vectors)
                    await self._attach_to_tenant(session, phone_number, document_id, credentials, intent)
            _notify(on_stage, IngestionStage.PERSISTED)
        except Exception as e:
            log.error("ingestion_failed", error=str(e), error_type=type(e).__name__)
            await self._discard(document_id, log)
            raise

        log.info("document_ingested", chunks=len(chunks))
        return IngestResult(document_id=document_id, chunk_count=len(chunks))

    async def _attach_to_tenant(self, session: AsyncSession, phone_number: str, document_id: UUID,
                                credentials: Credentials, intent: Optional[str]) -> None:
        rows = await repository.mapping_rows(session, phone_number)
        mappings = [repository.mapping_from_row(r) for r in rows]

        placeholder = next(((r, m) for r, m in zip(rows, mappings) if isinstance(m, UnboundMapping)), None)
        if placeholder is not None:
            row, unbound = placeholder
            repository.apply_mapping(row, unbound.bind(document_id, credentials, intent))
            await session.flush()
            return

        if mappings:
            first = mappings[0]
            new = BoundMapping(phone_number=phone_number, document_id=document_id,
                               intent=intent or first.intent, system_prompt=first.system_prompt,
                               credentials=credentials)
        else:
            new = BoundMapping(phone_number=phone_number, document_id=document_id,
                               intent=intent, credentials=credentials)
        await repository.insert_mapping(session, new)

    async def _discard(self, document_id: UUID, log) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await repository.delete_document(session, document_id)
        except Exception as e:
            # The original failure is what the caller needs to see
            log.error("document_cleanup_failed", error=str(e))


def _notify(callback: Optional[StageCallback], stage: IngestionStage) -> None:
    if callback is not None:
        callback(stage)
