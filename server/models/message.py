"""Message data models"""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, field_validator


class ContentType(str, Enum):
    """Content variant of a message."""
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"


class ReceiptField(str, Enum):
    """Acknowledgement sets that may be appended to."""
    DELIVERED_TO = "delivered_to"
    READ_BY = "read_by"


class ReplyRef(BaseModel):
    """Denormalized snapshot of the replied-to message.

    Kept on the reply itself so it still renders after the original is deleted.
    """
    message_id: str
    snippet: str
    sender_name: Optional[str] = None


class Message(BaseModel):
    """Canonical, server-owned message."""
    id: str
    conversation_id: str
    sender_id: str
    content_type: ContentType = ContentType.TEXT
    content: Optional[str] = None
    file_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    reply_to: Optional[ReplyRef] = None
    created_at: datetime
    delivered_to: List[str] = []
    read_by: List[str] = []
    expires_at: Optional[datetime] = None
    client_ref: Optional[str] = None

    @field_validator("id", "conversation_id", "sender_id", mode="before")
    @classmethod
    def _stringify_ids(cls, v):
        return str(v) if v is not None else v

    @field_validator("delivered_to", "read_by", mode="before")
    @classmethod
    def _normalize_sets(cls, v):
        # Postgres returns NULL for an untouched array column
        if v is None:
            return []
        seen = []
        for item in v:
            item = str(item)
            if item not in seen:
                seen.append(item)
        return seen

    @property
    def is_delivered(self) -> bool:
        return bool(self.delivered_to)

    @property
    def is_read(self) -> bool:
        return bool(self.read_by)

    def snippet(self, max_length: int = 120) -> str:
        """Short text used when another message replies to this one."""
        if self.content_type == ContentType.IMAGE:
            text = self.content or "Photo"
        elif self.content_type == ContentType.AUDIO:
            text = "Voice message"
        else:
            text = self.content or ""
        if len(text) <= max_length:
            return text
        return text[: max_length - 1] + "…"


class MessageDraft(BaseModel):
    """Validated message about to be persisted (no id, no timestamp yet)."""
    conversation_id: str
    sender_id: str
    content_type: ContentType = ContentType.TEXT
    content: Optional[str] = None
    file_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    reply_to: Optional[ReplyRef] = None
    expires_at: Optional[datetime] = None
    client_ref: Optional[str] = None

    def to_row(self) -> dict:
        row = self.model_dump(mode="json", exclude_none=True)
        row["delivered_to"] = []
        row["read_by"] = []
        return row
