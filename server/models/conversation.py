"""Conversation data models"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, field_validator

from models.message import Message


class Conversation(BaseModel):
    """A set of participants and the pointer to their latest message."""
    id: str
    participant_ids: List[str]
    is_group: bool = False
    group_name: Optional[str] = None
    group_icon: Optional[str] = None
    last_message_id: Optional[str] = None
    is_ephemeral: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("id", "last_message_id", mode="before")
    @classmethod
    def _stringify_id(cls, v):
        return str(v) if v is not None else v

    @field_validator("participant_ids", mode="before")
    @classmethod
    def _stringify_participants(cls, v):
        return [str(p) for p in (v or [])]

    def has_participant(self, user_id: str) -> bool:
        return str(user_id) in self.participant_ids


class ConversationSummary(BaseModel):
    """Conversation list entry: the conversation plus its latest message."""
    conversation: Conversation
    last_message: Optional[Message] = None
