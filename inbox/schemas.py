"""
Pydantic schemas for records, webhook envelopes and API payloads.

This module contains:
- The backend-independent message record shared by both stores
- The inbound webhook envelope model (validated one envelope at a time)
- Request/response models for the HTTP API
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Message Record
# =============================================================================

class MessageStatus(str, Enum):
    NEW = "new"
    REPLIED = "replied"


class MessageRecord(BaseModel):
    """
    A stored inbound message.

    ``id``, ``created_at`` and ``updated_at`` are assigned by the storage
    layer; a candidate record handed to ``upsert_if_absent`` leaves them unset.
    """
    id: str = ""
    dedup_key: str
    provider_message_id: Optional[str] = None
    sender: str
    text: str = ""
    received_at: datetime
    status: MessageStatus = MessageStatus.NEW
    reply_text: Optional[str] = None
    replied_at: Optional[datetime] = None
    raw: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def mark_replied(self, text: str, at: datetime) -> None:
        """New -> Replied. Re-replying keeps the status and refreshes the reply fields."""
        self.status = MessageStatus.REPLIED
        self.reply_text = text
        self.replied_at = at


# =============================================================================
# Inbound Webhook Envelope
# =============================================================================

class TextBody(BaseModel):
    body: Optional[str] = None


class InboundEnvelope(BaseModel):
    """
    One message inside entry[].changes[].value.messages[].

    Every field is optional here; the ingestion pipeline decides what to
    skip. ``timestamp`` is seconds since epoch as sent by the provider.
    """
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    id: Optional[str] = None
    sender: Optional[str] = Field(None, alias="from")
    text: Optional[TextBody] = None
    timestamp: Optional[datetime] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_epoch_seconds(cls, v: Any) -> Optional[datetime]:
        if v is None or v == "":
            return None
        if isinstance(v, bool):
            raise ValueError("timestamp must be seconds since epoch")
        try:
            return datetime.fromtimestamp(float(v), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            raise ValueError("timestamp must be seconds since epoch")

    @property
    def body(self) -> str:
        if self.text is None or self.text.body is None:
            return ""
        return self.text.body


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ReplyRequest(BaseModel):
    """Emptiness of ids/text is checked by the reply pipeline, not here."""
    message_ids: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("message_ids", "messageIds"),
    )
    text: str = ""


class SendRequest(BaseModel):
    to: str = ""
    text: str = ""
    reply_to_message_id: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("reply_to_message_id", "replyToMessageId"),
    )


# =============================================================================
# Pydantic Response Models
# =============================================================================

class MessageOut(BaseModel):
    """
    Public projection of a message record (no ``raw``, no ``dedup_key``).
    Used both for API responses and realtime event payloads.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    provider_message_id: Optional[str] = None
    sender: str = Field(..., alias="from", serialization_alias="from")
    text: str = ""
    received_at: datetime
    status: MessageStatus
    reply_text: Optional[str] = None
    replied_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record: MessageRecord) -> "MessageOut":
        return cls(
            id=record.id,
            provider_message_id=record.provider_message_id,
            sender=record.sender,
            text=record.text,
            received_at=record.received_at,
            status=record.status,
            reply_text=record.reply_text,
            replied_at=record.replied_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class WebhookResponse(BaseModel):
    ok: bool = True
    saved_count: int = Field(0, ge=0, description="Records newly created by this delivery")


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    code: str


class MessagesListResponse(BaseModel):
    ok: bool = True
    messages: list[MessageOut] = Field(default_factory=list)


class ReplyResult(BaseModel):
    id: str
    ok: bool = True
    provider_response: Optional[dict[str, Any]] = None


class ReplyResponse(BaseModel):
    ok: bool = True
    count: int = Field(..., ge=0)
    results: list[ReplyResult] = Field(default_factory=list)


class SendResponse(BaseModel):
    ok: bool = True
    result: dict[str, Any] = Field(default_factory=dict)


class OkResponse(BaseModel):
    ok: bool = True


class HealthResponse(BaseModel):
    """Storage diagnostics: current mode and the last durable connection error."""
    ok: bool = True
    mode: str
    want_durable: bool
    last_error: Optional[str] = None
    time: datetime


class LiveResponse(BaseModel):
    status: str = Field(..., description="Health status")
