from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from ..config import settings
from ..deps import Services, get_services
from ..schemas import ResponseOutcome, WhatsAppWebhookPayload

router = APIRouter(tags=["webhook"])
logger = structlog.get_logger(__name__)

@router.post("/webhook/whatsapp")
async def whatsapp_webhook(request: Request, services: Services = Depends(get_services)):
    try:
        raw = await request.json()
        payload = WhatsAppWebhookPayload.model_validate(raw)
    except (ValueError, ValidationError) as e:
        raise HTTPException(400, f"Invalid webhook payload: {e}")

    if not payload.messageId or not payload.from_ or not payload.to:
        raise HTTPException(400, "Missing required fields: messageId, from, or to")

    result = await services.responder.respond_to_inbound_event(payload.to_event(raw))
    if result.duplicate:
        return {"success": True, "message": "Message already processed", "duplicate": True}

    if result.error:
        logger.warning("auto_response_not_sent", message_id=payload.messageId, outcome=result.outcome.value,
                       error=result.error)
    if result.outcome is ResponseOutcome.STORAGE_FAILED:
        return {"success": False, "outcome": result.outcome.value, "delivered": False, "error": result.error}
    return {
        "success": True,
        "message": "WhatsApp message received and stored",
        "outcome": result.outcome.value,
        "delivered": result.delivered,
        "response": result.response_text,
        "error": result.error,
    }

@router.get("/webhook/whatsapp")
async def verify_webhook(
    mode: Optional[str] = Query(None, alias="hub.mode"),
    token: Optional[str] = Query(None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    if mode == "subscribe" and settings.WHATSAPP_VERIFY_TOKEN and token == settings.WHATSAPP_VERIFY_TOKEN:
        return PlainTextResponse(challenge or "")
    raise HTTPException(403, "Verification failed")
