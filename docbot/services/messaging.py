"""WhatsApp delivery through the 11za API."""

from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel

from ..config import settings
from ..schemas import Credentials

logger = structlog.get_logger(__name__)


class DeliveryResult(BaseModel):
    success: bool
    error: Optional[str] = None
    response: Any = None


class WhatsAppSender:
    """Never raises: every transport or API problem comes back as a failed DeliveryResult."""

    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        *,
        api_url: str = settings.WHATSAPP_API_URL,
        template_url: str = settings.WHATSAPP_TEMPLATE_API_URL,
        timeout: float = settings.WHATSAPP_TIMEOUT,
    ):
        self._http = http
        self.api_url = api_url
        self.template_url = template_url
        self.timeout = timeout

    async def send_text(self, recipient: str, text: str, credentials: Optional[Credentials]) -> DeliveryResult:
        if credentials is None:
            return DeliveryResult(success=False, error="WhatsApp API credentials not configured")
        payload = {
            "sendto": recipient,
            "authToken": credentials.auth_token,
            "originWebsite": credentials.origin,
            "contentType": "text",
            "text": text,
        }
        logger.info("whatsapp_send", recipient=recipient, chars=len(text))
        return await self._post(self.api_url, payload)

    async def send_template(self, recipient: str, template_id: str, parameters: Optional[Dict[str, str]],
                            credentials: Optional[Credentials]) -> DeliveryResult:
        if credentials is None:
            return DeliveryResult(success=False, error="WhatsApp API credentials not configured")
        payload = {
            "sendto": recipient,
            "authToken": credentials.auth_token,
            "originWebsite": credentials.origin,
            "templateId": template_id,
            "parameters": parameters or {},
        }
        logger.info("whatsapp_send_template", recipient=recipient, template_id=template_id)
        return await self._post(self.template_url, payload)

    async def _post(self, url: str, payload: Dict[str, Any]) -> DeliveryResult:
        try:
            if self._http is not None:
                resp = await self._http.post(url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                    resp = await client.post(url, json=payload)
        except httpx.HTTPError as e:
            logger.error("whatsapp_transport_error", url=url, error=str(e))
            return DeliveryResult(success=False, error=str(e) or type(e).__name__)

        try:
            data = resp.json()
        except ValueError:
            data = {"text": resp.text}

        if resp.is_error:
            logger.error("whatsapp_api_error", status=resp.status_code, response=data)
            return DeliveryResult(success=False, error=f"WhatsApp API returned {resp.status_code}", response=data)
        return DeliveryResult(success=True, response=data)
