from typing import List

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from ..deps import Services, get_services
from ..schemas import ChatRequest, ChatResponse, ChatTurnIn, ConversationTurn
from ..services import repository
from ..services.embedding import EmbeddingServiceError
from ..services.llm import LLMConfigurationError, LLMServiceError
from ..services.retrieval import DocumentScope

router = APIRouter(tags=["chat"])
logger = structlog.get_logger(__name__)

@router.post("/chat/messages")
async def save_message(turn: ChatTurnIn, services: Services = Depends(get_services)):
    async with services.session_factory() as session:
        async with session.begin():
            await repository.save_chat_message(session, turn.session_id, turn.role, turn.content)
    return {"success": True}

@router.get("/chat/messages", response_model=List[ConversationTurn])
async def get_messages(session_id: str = Query(...), services: Services = Depends(get_services)):
    async with services.session_factory() as session:
        return await repository.chat_history(session, session_id)

@router.post("/chat", response_model=ChatResponse)
async def chat(req: ChatRequest, services: Services = Depends(get_services)):
    if not req.message.strip():
        raise HTTPException(400, "message cannot be empty")

    scope = DocumentScope.of(req.document_ids) if req.document_ids else DocumentScope.everything()
    try:
        query_vector = await services.embedder.embed(req.message)
    except EmbeddingServiceError as e:
        raise HTTPException(status_code=502, detail=f"Upstream embedding error: {e}")
    chunks = await services.retriever.retrieve(query_vector, scope, services.responder.top_k)

    async with services.session_factory() as session:
        history = await repository.chat_history(session, req.session_id, limit=services.assembler.history_turns)
    messages = services.assembler.assemble(chunks, history, req.system_prompt, req.message)

    try:
        text, model_used = await services.completion.complete(messages)
    except LLMConfigurationError:
        raise HTTPException(status_code=502, detail="Service is temporarily unavailable due to server configuration.")
    except LLMServiceError as e:
        logger.error("chat_generation_failed", session_id=req.session_id, error=str(e))
        raise HTTPException(status_code=502, detail="Upstream LLM error. Please try again later.")

    text = text.strip()
    if not text:
        raise HTTPException(status_code=502, detail="No response generated from LLM")

    async with services.session_factory() as session:
        async with session.begin():
            await repository.save_chat_message(session, req.session_id, "user", req.message)
            await repository.save_chat_message(session, req.session_id, "assistant", text)

    sources = [{"document_id": str(c.document_id), "ordinal": c.ordinal, "score": c.score,
                "preview": c.text[:200]} for c in chunks]
    return ChatResponse(reply=text, model=model_used, sources=sources)
