"""API request schemas"""
from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from uuid import UUID


def _require_uuid(v: str, field: str) -> str:
    try:
        UUID(v)
    except ValueError:
        raise ValueError(f"{field} must be a valid UUID")
    return v


class CreateConversationRequest(BaseModel):
    """Start (or reopen) a 1:1 conversation."""
    recipient_id: str
    is_ephemeral: bool = False

    @field_validator("recipient_id")
    @classmethod
    def validate_recipient_id(cls, v: str) -> str:
        return _require_uuid(v, "recipient_id")


class CreateGroupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    participant_ids: List[str] = Field(..., min_length=2)
    group_icon: Optional[str] = Field(None, max_length=2048)
    is_ephemeral: bool = False

    @field_validator("participant_ids")
    @classmethod
    def validate_participant_ids(cls, v: List[str]) -> List[str]:
        return [_require_uuid(p, "participant_ids") for p in v]


class DeleteMessagesRequest(BaseModel):
    message_ids: List[str] = Field(..., min_length=1, max_length=500)


class MarkReadRequest(BaseModel):
    conversation_id: str
