"""Shared test fixtures and configuration."""
import sys
import os
from datetime import datetime, timezone
from uuid import uuid4

import pytest

# Ensure the client package is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


@pytest.fixture
def server_message():
    """Canonical message as the server serialises it (ids and timestamps as strings)."""

    def _make(**overrides):
        data = {
            "id": str(uuid4()),
            "conversation_id": "conv-1",
            "sender_id": "user-a",
            "content_type": "text",
            "content": "Hello",
            "file_url": None,
            "duration_seconds": None,
            "reply_to": None,
            "created_at": datetime.now(timezone.utc).isoformat(),
            "delivered_to": [],
            "read_by": [],
            "expires_at": None,
            "client_ref": None,
        }
        data.update(overrides)
        return data

    return _make
