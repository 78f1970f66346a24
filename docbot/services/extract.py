"""Plain text out of uploaded PDFs and images."""

import asyncio
import base64
import io
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple, Union

import httpx
import structlog
from pdfminer.high_level import extract_text as pdf_extract
from pdfminer.pdfparser import PDFSyntaxError
from pdfminer.psparser import PSException

from ..config import settings

logger = structlog.get_logger(__name__)

VISION_PROMPT = (
    "Extract all text from this image. Provide the text as it appears, "
    "maintaining the structure and formatting where possible."
)


class ExtractionError(Exception):
    pass


# OCR providers answer in several shapes; each recognised one gets its own type.

@dataclass
class OcrText:
    text: str

@dataclass
class OcrPages:
    pages: List[str]

@dataclass
class OcrBlocks:
    blocks: List[str]

@dataclass
class OcrUnrecognized:
    keys: List[str] = field(default_factory=list)

OcrResponse = Union[OcrText, OcrPages, OcrBlocks, OcrUnrecognized]


def _texts(items: Any, key: str = "text") -> List[str]:
    if not isinstance(items, list):
        return []
    return [str(i.get(key) or "") for i in items if isinstance(i, dict)]


def _page_text(page: Any) -> str:
    if not isinstance(page, dict):
        return ""
    if page.get("markdown"):
        return str(page["markdown"])
    if isinstance(page.get("lines"), list):
        return "\n".join(_texts(page["lines"]))
    if isinstance(page.get("paragraphs"), list):
        return "\n".join(_texts(page["paragraphs"]))
    return ""


def parse_ocr_response(payload: Any) -> OcrResponse:
    if not isinstance(payload, dict):
        return OcrUnrecognized()
    text = payload.get("text")
    if isinstance(text, str) and text:
        return OcrText(text)
    if isinstance(payload.get("pages"), list):
        return OcrPages([p for p in (_page_text(page) for page in payload["pages"]) if p])
    if isinstance(payload.get("blocks"), list):
        return OcrBlocks([b for b in _texts(payload["blocks"]) if b])
    return OcrUnrecognized(sorted(payload.keys()))


def ocr_text(parsed: OcrResponse) -> str:
    if isinstance(parsed, OcrText):
        return parsed.text
    if isinstance(parsed, OcrPages):
        return "\n\n".join(parsed.pages)
    if isinstance(parsed, OcrBlocks):
        return "\n".join(parsed.blocks)
    logger.warning("ocr_response_unrecognized", keys=parsed.keys)
    return ""


def detect_kind(mime_type: Optional[str]) -> str:
    mime = (mime_type or "").lower()
    if mime == "application/pdf":
        return "pdf"
    if mime.startswith("image/"):
        return "image"
    raise ExtractionError("Unsupported file type. Please upload a PDF or image file.")


async def extract_pdf_text(content: bytes) -> str:
    try:
        return await asyncio.to_thread(pdf_extract, io.BytesIO(content))
    except (PDFSyntaxError, PSException, ValueError) as e:
        raise ExtractionError(f"Could not read PDF: {e}") from e


class ImageTextRecognizer:
    """Mistral OCR (``ocr`` mode) or a vision chat model (``transcribe`` mode)."""

    def __init__(
        self,
        http: Optional[httpx.AsyncClient] = None,
        *,
        api_key: str = settings.MISTRAL_API_KEY,
        base_url: str = settings.MISTRAL_BASE_URL,
        ocr_model: str = settings.OCR_MODEL,
        vision_model: str = settings.VISION_MODEL,
        timeout: float = settings.OCR_TIMEOUT,
    ):
        self._http = http
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.ocr_model = ocr_model
        self.vision_model = vision_model
        self.timeout = timeout

    async def recognize(self, image: bytes, mime_type: str, mode: str = "ocr") -> str:
        if not self.api_key:
            raise ExtractionError("Mistral API key is not configured for image processing")
        data_url = f"data:{mime_type};base64,{base64.b64encode(image).decode('ascii')}"
        if mode == "ocr":
            payload = {
                "model": self.ocr_model,
                "document": {"type": "image_url", "image_url": data_url},
                "include_image_base64": False,
            }
            data = await self._post("/v1/ocr", payload)
            return ocr_text(parse_ocr_response(data))

        payload = {
            "model": self.vision_model,
            "messages": [{
                "role": "user",
                "content": [
                    {"type": "text", "text": VISION_PROMPT},
                    {"type": "image_url", "image_url": {"url": data_url}},
                ],
            }],
        }
        data = await self._post("/v1/chat/completions", payload)
        choices = data.get("choices") or [{}]
        return (choices[0].get("message", {}) or {}).get("content", "") or ""

    async def _post(self, path: str, payload: dict) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        try:
            if self._http is not None:
                resp = await self._http.post(self.base_url + path, json=payload, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout)) as client:
                    resp = await client.post(self.base_url + path, json=payload, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ExtractionError(f"Mistral API error {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ExtractionError(f"Mistral API unreachable: {e}") from e
        try:
            return resp.json()
        except ValueError as e:
            raise ExtractionError("Mistral API returned non-JSON response") from e


async def extract_text(content: bytes, mime_type: str, recognizer: Optional[ImageTextRecognizer] = None,
                       mode: str = "ocr") -> Tuple[str, str]:
    """Return (file_type, text)."""
    kind = detect_kind(mime_type)
    if kind == "pdf":
        return kind, await extract_pdf_text(content)
    recognizer = recognizer or ImageTextRecognizer()
    return kind, await recognizer.recognize(content, mime_type, mode=mode)
