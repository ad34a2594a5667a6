"""Client-side message state."""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, field_validator


class ContentType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    AUDIO = "audio"


class LocalStatus(str, Enum):
    """Lifecycle of an entry on this device."""
    SENDING = "sending"      # temp, persist request in flight
    FAILED = "failed"        # temp, no confirmation; user may retry
    CONFIRMED = "confirmed"  # canonical, known to the server


TEMP_PREFIX = "temp-"


class ChatEntry(BaseModel):
    """One row of a conversation: a temp message or a canonical one."""
    id: str
    conversation_id: str
    sender_id: str
    content_type: ContentType = ContentType.TEXT
    content: Optional[str] = None
    file_url: Optional[str] = None
    duration_seconds: Optional[float] = None
    reply_to: Optional[dict] = None
    created_at: datetime
    delivered_to: List[str] = []
    read_by: List[str] = []
    expires_at: Optional[datetime] = None
    client_ref: Optional[str] = None
    status: LocalStatus = LocalStatus.CONFIRMED

    @field_validator("delivered_to", "read_by", mode="before")
    @classmethod
    def _normalize_sets(cls, v):
        if v is None:
            return []
        return list(dict.fromkeys(str(x) for x in v))

    @property
    def is_temp(self) -> bool:
        return self.status != LocalStatus.CONFIRMED

    @classmethod
    def from_server(cls, data: dict) -> "ChatEntry":
        """Canonical message as carried by events, acks and history."""
        return cls(**{**data, "status": LocalStatus.CONFIRMED})

    def same_payload(self, other: "ChatEntry") -> bool:
        return self.content_type == other.content_type and self.content == other.content
