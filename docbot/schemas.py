
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field
from typing import Annotated, Any, List, Literal, Optional, Union
from uuid import UUID

class Credentials(BaseModel):
    """Opaque per-tenant delivery credentials."""
    auth_token: str
    origin: str

    @classmethod
    def from_parts(cls, auth_token: Optional[str], origin: Optional[str]) -> Optional["Credentials"]:
        if not auth_token or not origin:
            return None
        return cls(auth_token=auth_token, origin=origin)

class ConversationTurn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    created_at: Optional[datetime] = None

class RetrievedChunk(BaseModel):
    text: str
    score: float
    document_id: UUID
    ordinal: int

# --- tenant mappings ---

class UnboundMapping(BaseModel):
    kind: Literal["unbound"] = "unbound"
    phone_number: str
    intent: Optional[str] = None
    system_prompt: Optional[str] = None
    credentials: Optional[Credentials] = None

    def bind(self, document_id: UUID, credentials: Credentials, intent: Optional[str] = None) -> "BoundMapping":
        return BoundMapping(
            phone_number=self.phone_number,
            document_id=document_id,
            intent=intent or self.intent,
            system_prompt=self.system_prompt,
            credentials=credentials,
        )

class BoundMapping(BaseModel):
    kind: Literal["bound"] = "bound"
    phone_number: str
    document_id: UUID
    intent: Optional[str] = None
    system_prompt: Optional[str] = None
    credentials: Optional[Credentials] = None

Mapping = Annotated[Union[UnboundMapping, BoundMapping], Field(discriminator="kind")]

# --- messaging channel ---

class InboundEvent(BaseModel):
    message_id: str
    from_number: str
    to_number: str
    text: Optional[str] = None
    event_type: str = "MoMessage"
    channel: Optional[str] = None
    content_type: Optional[str] = None
    sender_name: Optional[str] = None
    received_at: Optional[datetime] = None
    raw_payload: Optional[dict] = None

class WebhookContent(BaseModel):
    contentType: Optional[str] = None
    text: Optional[str] = None

class WebhookSender(BaseModel):
    senderName: Optional[str] = None

class WhatsAppWebhookPayload(BaseModel):
    messageId: Optional[str] = None
    channel: Optional[str] = None
    from_: Optional[str] = Field(default=None, alias="from")
    to: Optional[str] = None
    receivedAt: Optional[datetime] = None
    content: Optional[WebhookContent] = None
    whatsapp: Optional[WebhookSender] = None
    event: str = "MoMessage"
    UserResponse: Optional[str] = None

    def to_event(self, raw: dict) -> InboundEvent:
        content = self.content or WebhookContent()
        return InboundEvent(
            message_id=self.messageId or "",
            from_number=self.from_ or "",
            to_number=self.to or "",
            text=content.text or self.UserResponse,
            event_type=self.event,
            channel=self.channel,
            content_type=content.contentType,
            sender_name=self.whatsapp.senderName if self.whatsapp else None,
            received_at=self.receivedAt,
            raw_payload=raw,
        )

class ResponseOutcome(str, Enum):
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    NO_DOCUMENTS = "no_documents"
    NO_CREDENTIALS = "no_credentials"
    EMBED_FAILED = "embed_failed"
    GENERATION_FAILED = "generation_failed"
    STORAGE_FAILED = "storage_failed"
    DELIVERY_FAILED = "delivery_failed"
    DELIVERED = "delivered"

class AutoResponseResult(BaseModel):
    outcome: ResponseOutcome
    delivered: bool = False
    response_text: Optional[str] = None
    error: Optional[str] = None

    @property
    def duplicate(self) -> bool:
        return self.outcome is ResponseOutcome.DUPLICATE

# --- ingestion ---

class IngestResult(BaseModel):
    document_id: UUID
    chunk_count: int

class IngestionStage(str, Enum):
    RECEIVED = "received"
    EXTRACTED = "extracted"
    CHUNKED = "chunked"
    EMBEDDED = "embedded"
    PERSISTED = "persisted"
    FAILED = "failed"

class IngestionJob(BaseModel):
    job_id: str
    phone_number: str
    file_name: str
    file_type: str
    stage: IngestionStage = IngestionStage.RECEIVED
    result: Optional[IngestResult] = None
    error: Optional[str] = None
    extracted_text: Optional[str] = None

class UploadAccepted(BaseModel):
    job_id: str
    file_type: str
    phone_number: str
    stage: IngestionStage
    extracted_text: Optional[str] = None
    processing_mode: Optional[str] = None

# --- listings / settings ---

class FileInfo(BaseModel):
    id: UUID
    name: str
    file_type: str
    chunk_count: int
    created_at: datetime

class PhoneGroup(BaseModel):
    phone_number: str
    intent: Optional[str] = None
    system_prompt: Optional[str] = None
    auth_token: str = ""
    origin: str = ""
    files: List[FileInfo] = Field(default_factory=list)

class PhoneSettingsUpdate(BaseModel):
    phone_number: str
    intent: Optional[str] = None
    system_prompt: Optional[str] = None
    auth_token: Optional[str] = None
    origin: Optional[str] = None

class PhonePromptRequest(BaseModel):
    phone_number: str
    intent: Optional[str] = None
    system_prompt: str

# --- web chat ---

class ChatTurnIn(BaseModel):
    session_id: str
    role: Literal["user", "assistant"]
    content: str

class ChatRequest(BaseModel):
    session_id: str
    message: str
    document_ids: List[UUID] = Field(default_factory=list)
    system_prompt: Optional[str] = None

class ChatResponse(BaseModel):
    reply: str
    model: str
    sources: List[Any] = Field(default_factory=list)
