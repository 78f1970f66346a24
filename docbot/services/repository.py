"""Row-level storage helpers. Every function takes an open AsyncSession; callers own the transaction."""

from datetime import datetime, timezone
from typing import Collection, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import ChatMessage, Chunk, Document, InboundMessage, TenantMapping
from ..schemas import BoundMapping, ConversationTurn, Credentials, InboundEvent, Mapping, UnboundMapping

INBOUND_EVENT = "MoMessage"
OUTBOUND_EVENT = "MtMessage"

# --- documents & chunks ---

async def create_document(session: AsyncSession, name: str, file_type: str, credentials: Credentials) -> Document:
    doc = Document(name=name, file_type=file_type, auth_token=credentials.auth_token, origin=credentials.origin)
    session.add(doc)
    await session.flush()
    return doc

async def delete_document(session: AsyncSession, document_id: UUID) -> bool:
    # Explicit deletes so the cascade also holds where FK enforcement is off (sqlite)
    await session.execute(delete(Chunk).where(Chunk.document_id == document_id))
    await session.execute(delete(TenantMapping).where(TenantMapping.document_id == document_id))
    res = await session.execute(delete(Document).where(Document.id == document_id))
    return res.rowcount > 0

async def add_chunks(session: AsyncSession, document_id: UUID, texts: Sequence[str], vectors: Sequence[List[float]]) -> int:
    if len(texts) != len(vectors):
        raise ValueError(f"{len(texts)} chunks but {len(vectors)} embeddings")
    session.add_all([
        Chunk(document_id=document_id, ordinal=i, text=t, embedding=list(v))
        for i, (t, v) in enumerate(zip(texts, vectors), start=1)
    ])
    await session.flush()
    return len(texts)

async def load_chunk_vectors(session: AsyncSession, document_ids: Optional[Collection[UUID]] = None):
    """Chunks in scope, in insertion order. ``None`` means every document."""
    stmt = select(Chunk.document_id, Chunk.ordinal, Chunk.text, Chunk.embedding)
    if document_ids is not None:
        stmt = stmt.where(Chunk.document_id.in_(list(document_ids)))
    stmt = stmt.order_by(Chunk.document_id, Chunk.ordinal)
    res = await session.execute(stmt)
    return res.all()

async def chunk_counts(session: AsyncSession) -> Dict[UUID, int]:
    res = await session.execute(select(Chunk.document_id, func.count(Chunk.id)).group_by(Chunk.document_id))
    return {doc_id: count for doc_id, count in res.all()}

async def list_documents(session: AsyncSession) -> List[Document]:
    res = await session.execute(select(Document).order_by(Document.created_at.desc()))
    return list(res.scalars().all())

# --- tenant mappings ---

def mapping_from_row(row: TenantMapping) -> Mapping:
    creds = Credentials.from_parts(row.auth_token, row.origin)
    if row.document_id is None:
        return UnboundMapping(phone_number=row.phone_number, intent=row.intent,
                              system_prompt=row.system_prompt, credentials=creds)
    return BoundMapping(phone_number=row.phone_number, document_id=row.document_id, intent=row.intent,
                        system_prompt=row.system_prompt, credentials=creds)

async def mapping_rows(session: AsyncSession, phone_number: str) -> List[TenantMapping]:
    res = await session.execute(
        select(TenantMapping).where(TenantMapping.phone_number == phone_number).order_by(TenantMapping.id)
    )
    return list(res.scalars().all())

async def tenant_mappings(session: AsyncSession, phone_number: str) -> List[Mapping]:
    return [mapping_from_row(r) for r in await mapping_rows(session, phone_number)]

async def document_ids_for_phone(session: AsyncSession, phone_number: str) -> List[UUID]:
    res = await session.execute(
        select(TenantMapping.document_id)
        .where(TenantMapping.phone_number == phone_number, TenantMapping.document_id.is_not(None))
        .order_by(TenantMapping.id)
    )
    return list(dict.fromkeys(res.scalars().all()))

async def insert_mapping(session: AsyncSession, mapping: Mapping) -> TenantMapping:
    creds = mapping.credentials
    row = TenantMapping(
        phone_number=mapping.phone_number,
        document_id=mapping.document_id if isinstance(mapping, BoundMapping) else None,
        intent=mapping.intent,
        system_prompt=mapping.system_prompt,
        auth_token=creds.auth_token if creds else None,
        origin=creds.origin if creds else None,
    )
    session.add(row)
    await session.flush()
    return row

def apply_mapping(row: TenantMapping, mapping: Mapping) -> None:
    row.document_id = mapping.document_id if isinstance(mapping, BoundMapping) else None
    row.intent = mapping.intent
    row.system_prompt = mapping.system_prompt
    row.auth_token = mapping.credentials.auth_token if mapping.credentials else None
    row.origin = mapping.credentials.origin if mapping.credentials else None

async def update_tenant_settings(session: AsyncSession, phone_number: str, values: dict) -> int:
    """Apply the same settings to every mapping of a tenant (and credentials to its documents)."""
    if not values:
        return 0
    res = await session.execute(
        update(TenantMapping).where(TenantMapping.phone_number == phone_number).values(**values)
    )
    cred_values = {k: v for k, v in values.items() if k in ("auth_token", "origin")}
    if cred_values:
        doc_ids = await document_ids_for_phone(session, phone_number)
        if doc_ids:
            await session.execute(update(Document).where(Document.id.in_(doc_ids)).values(**cred_values))
    return res.rowcount

async def all_mappings_with_documents(session: AsyncSession) -> List[Tuple[TenantMapping, Optional[Document]]]:
    res = await session.execute(
        select(TenantMapping, Document)
        .outerjoin(Document, TenantMapping.document_id == Document.id)
        .order_by(TenantMapping.phone_number, TenantMapping.id)
    )
    return [(m, d) for m, d in res.all()]

# --- messaging channel log ---

async def record_inbound(session: AsyncSession, event: InboundEvent) -> bool:
    """Insert the event; False when its message_id was already recorded.

    The unique constraint on message_id is what makes this safe under
    concurrent webhook deliveries. Commits on success, rolls back on duplicate.
    """
    row = InboundMessage(
        message_id=event.message_id,
        channel=event.channel,
        from_number=event.from_number,
        to_number=event.to_number,
        content_type=event.content_type,
        content_text=event.text,
        sender_name=event.sender_name,
        event_type=event.event_type,
        received_at=event.received_at or datetime.now(timezone.utc),
        raw_payload=event.raw_payload,
    )
    session.add(row)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        return False
    return True

async def mark_inbound(session: AsyncSession, message_id: str, sent: bool) -> None:
    await session.execute(
        update(InboundMessage)
        .where(InboundMessage.message_id == message_id)
        .values(auto_respond_sent=sent, response_sent_at=datetime.now(timezone.utc))
    )

async def release_inbound(session: AsyncSession, message_id: str) -> bool:
    """Forget an inbound event that was never answered, so the channel's redelivery is processed again."""
    res = await session.execute(
        delete(InboundMessage).where(
            InboundMessage.message_id == message_id,
            InboundMessage.response_sent_at.is_(None),
        )
    )
    return res.rowcount > 0

async def get_inbound(session: AsyncSession, message_id: str) -> Optional[InboundMessage]:
    res = await session.execute(select(InboundMessage).where(InboundMessage.message_id == message_id))
    return res.scalar_one_or_none()

async def save_outbound(session: AsyncSession, business_number: str, recipient: str, text: str, reply_to: str) -> InboundMessage:
    row = InboundMessage(
        message_id=f"{reply_to}:reply",
        from_number=business_number,
        to_number=recipient,
        content_type="text",
        content_text=text,
        event_type=OUTBOUND_EVENT,
    )
    session.add(row)
    await session.flush()
    return row

async def recent_history(session: AsyncSession, business_number: str, customer_number: str,
                         limit: int = 10, exclude_message_id: Optional[str] = None) -> List[ConversationTurn]:
    """Last ``limit`` inbound/outbound turns between the two numbers, oldest first."""
    conds = [
        InboundMessage.content_text.is_not(None),
        or_(
            and_(InboundMessage.from_number == customer_number,
                 InboundMessage.to_number == business_number,
                 InboundMessage.event_type == INBOUND_EVENT),
            and_(InboundMessage.from_number == business_number,
                 InboundMessage.to_number == customer_number,
                 InboundMessage.event_type == OUTBOUND_EVENT),
        ),
    ]
    if exclude_message_id:
        conds.append(InboundMessage.message_id != exclude_message_id)
    res = await session.execute(
        select(InboundMessage)
        .where(*conds)
        .order_by(InboundMessage.received_at.desc(), InboundMessage.id.desc())
        .limit(limit)
    )
    rows = list(res.scalars().all())
    rows.reverse()
    return [
        ConversationTurn(role="user" if r.event_type == INBOUND_EVENT else "assistant", content=r.content_text,
                         created_at=r.received_at)
        for r in rows
    ]

# --- web chat log ---

async def save_chat_message(session: AsyncSession, session_id: str, role: str, content: str) -> ChatMessage:
    row = ChatMessage(session_id=session_id, role=role, content=content)
    session.add(row)
    await session.flush()
    return row

async def chat_history(session: AsyncSession, session_id: str, limit: Optional[int] = None) -> List[ConversationTurn]:
    stmt = select(ChatMessage).where(ChatMessage.session_id == session_id)
    if limit is not None:
        stmt = stmt.order_by(ChatMessage.created_at.desc(), ChatMessage.id.desc()).limit(limit)
        rows = list((await session.execute(stmt)).scalars().all())
        rows.reverse()
    else:
        stmt = stmt.order_by(ChatMessage.created_at, ChatMessage.id)
        rows = list((await session.execute(stmt)).scalars().all())
    return [ConversationTurn(role=r.role, content=r.content, created_at=r.created_at) for r in rows]
