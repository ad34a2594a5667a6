"""Shared test fixtures and configuration."""
import sys
import os
from datetime import datetime, timezone
from uuid import uuid4

import pytest

# Ensure the server package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Set required environment variables BEFORE any application module is imported.
# These are dummy values used only in tests: no real connections are made.
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test-key-for-unit-tests")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-for-unit-tests")


class FakeSocket:
    """Stand-in for a WebSocket handle: records every frame pushed to it.

    Sockets created with a shared ``journal`` also append ``(name, frame)``
    there, which lets tests assert cross-connection ordering.
    """

    def __init__(self, name: str = "", journal: list = None, fail: bool = False):
        self.name = name
        self.journal = journal
        self.fail = fail
        self.sent = []

    async def send_json(self, frame: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(frame)
        if self.journal is not None:
            self.journal.append((self.name, frame))

    def events(self, name: str = None) -> list:
        return [f for f in self.sent if name is None or f["event"] == name]


@pytest.fixture
def make_socket():
    return FakeSocket


@pytest.fixture
def make_message():
    """Build a canonical Message with sensible defaults."""
    from models.message import Message

    def _make(**overrides):
        data = dict(
            id=str(uuid4()),
            conversation_id="conv-1",
            sender_id="user-a",
            content_type="text",
            content="Hello",
            created_at=datetime.now(timezone.utc),
        )
        data.update(overrides)
        return Message(**data)

    return _make


@pytest.fixture
def make_conversation():
    from models.conversation import Conversation

    def _make(**overrides):
        data = dict(id="conv-1", participant_ids=["user-a", "user-b"])
        data.update(overrides)
        return Conversation(**data)

    return _make
