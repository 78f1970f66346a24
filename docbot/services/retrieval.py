from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Sequence
from uuid import UUID

import numpy as np
import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..schemas import RetrievedChunk
from . import repository

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DocumentScope:
    """Which documents a search may read. ``document_ids=None`` means all of them."""
    document_ids: Optional[FrozenSet[UUID]] = None

    @classmethod
    def everything(cls) -> "DocumentScope":
        return cls(None)

    @classmethod
    def of(cls, document_ids: Iterable[UUID]) -> "DocumentScope":
        ids = frozenset(document_ids)
        if not ids:
            raise ValueError("document scope must name at least one document")
        return cls(ids)

    @property
    def is_all(self) -> bool:
        return self.document_ids is None


def _to_vec(raw) -> np.ndarray:
    if raw is None:
        raw = []
    return np.asarray([float(x) for x in raw], dtype=np.float32).reshape(-1)


def cosine(q: np.ndarray, e: np.ndarray) -> float:
    if e.size == 0 or q.size == 0 or e.size != q.size:
        return 0.0
    return float(np.dot(q, e) / (np.linalg.norm(q) * np.linalg.norm(e) + 1e-8))


class VectorRetriever:
    """Top-k cosine search over stored chunks.

    The scope filter is part of the SQL query, so chunks of other tenants'
    documents never leave the database. Chunks are written per document in a
    single transaction, so a search only ever sees complete documents.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def retrieve(self, query_vector: Sequence[float], scope: DocumentScope, k: int = 5) -> List[RetrievedChunk]:
        if k <= 0:
            return []
        async with self._session_factory() as session:
            rows = await repository.load_chunk_vectors(session, scope.document_ids)

        q = _to_vec(query_vector)
        scored = [
            RetrievedChunk(text=text, score=cosine(q, _to_vec(emb)), document_id=doc_id, ordinal=ordinal)
            for doc_id, ordinal, text, emb in rows
        ]
        # Stable sort: ties keep (document_id, ordinal) order from the query
        scored.sort(key=lambda c: c.score, reverse=True)
        logger.debug("chunks_retrieved", candidates=len(rows), returned=min(k, len(scored)),
                     scope="all" if scope.is_all else len(scope.document_ids))
        return scored[:k]
