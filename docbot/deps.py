"""Explicitly constructed clients and orchestrators, shared through app.state."""

from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from .config import settings
from .services.context import ContextAssembler
from .services.embedding import EmbeddingGateway
from .services.extract import ImageTextRecognizer
from .services.ingest import IngestionOrchestrator
from .services.jobs import JobTracker
from .services.llm import CompletionClient
from .services.messaging import WhatsAppSender
from .services.responder import AutoResponder
from .services.retrieval import VectorRetriever


@dataclass
class Services:
    session_factory: async_sessionmaker
    embedder: EmbeddingGateway
    retriever: VectorRetriever
    assembler: ContextAssembler
    completion: CompletionClient
    sender: WhatsAppSender
    recognizer: ImageTextRecognizer
    ingestion: IngestionOrchestrator
    responder: AutoResponder
    jobs: JobTracker


def build_services(
    session_factory: async_sessionmaker,
    *,
    embedder: EmbeddingGateway | None = None,
    completion: CompletionClient | None = None,
    sender: WhatsAppSender | None = None,
    recognizer: ImageTextRecognizer | None = None,
) -> Services:
    embedder = embedder or EmbeddingGateway.from_settings()
    completion = completion or CompletionClient.from_settings()
    sender = sender or WhatsAppSender()
    retriever = VectorRetriever(session_factory)
    assembler = ContextAssembler(history_turns=settings.HISTORY_TURNS)
    ingestion = IngestionOrchestrator(session_factory, embedder,
                                      chunk_size=settings.CHUNK_SIZE, chunk_overlap=settings.CHUNK_OVERLAP)
    responder = AutoResponder(session_factory, embedder, retriever, assembler, completion, sender,
                              top_k=settings.RETRIEVAL_TOP_K)
    return Services(
        session_factory=session_factory,
        embedder=embedder,
        retriever=retriever,
        assembler=assembler,
        completion=completion,
        sender=sender,
        recognizer=recognizer or ImageTextRecognizer(),
        ingestion=ingestion,
        responder=responder,
        jobs=JobTracker(max_finished=settings.INGESTION_JOBS_KEPT),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
