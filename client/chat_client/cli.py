"""Terminal chat client.

Commands: ``/list``, ``/open <conversation_id>``, ``/close``, ``/retry <temp_id>``,
``/select <id>``, ``/delete``, ``/quit``. Any other line is sent to the open
conversation.
"""
import asyncio
import logging
import os

from dotenv import load_dotenv

from chat_client.connection import RequestFailed
from chat_client.session import ChatSession

load_dotenv()

CHAT_SERVER_URL = os.getenv("CHAT_SERVER_URL", "http://localhost:8000").strip()
CHAT_ACCESS_TOKEN = os.getenv("CHAT_ACCESS_TOKEN", "").strip()
CHAT_USER_ID = os.getenv("CHAT_USER_ID", "").strip()
CHAT_PENDING_TIMEOUT_SECONDS = float(os.getenv("CHAT_PENDING_TIMEOUT_SECONDS", "30"))

TICKS = {"sending": "…", "failed": "!", "sent": "✓", "delivered": "✓✓", "read": "✓✓*"}

logger = logging.getLogger(__name__)


def render(session: ChatSession) -> None:
    conversation_id = session.active_conversation_id
    if conversation_id is None:
        return
    for entry in session.engine.messages(conversation_id):
        author = "me" if entry.sender_id == session.user_id else entry.sender_id[:8]
        body = entry.content or f"[{entry.content_type.value}] {entry.file_url or ''}"
        tick = TICKS[session.engine.tick_state(entry)] if author == "me" else ""
        print(f"  {entry.id[:13]:13} {author:8} {body} {tick}")


def print_conversations(session: ChatSession) -> None:
    for summary in session.ordered_conversations():
        conversation = summary["conversation"]
        name = conversation.get("group_name") or ", ".join(
            ("*" if session.is_online(p) else "") + p[:8]
            for p in conversation.get("participant_ids", [])
            if p != session.user_id
        )
        last = (summary.get("last_message") or {}).get("content") or ""
        print(f"  {conversation['id']}  {name}  {last[:40]}")


async def handle_line(session: ChatSession, line: str) -> bool:
    """Run one command. Returns False when the user quits."""
    command, _, argument = line.strip().partition(" ")
    if command == "/quit":
        return False
    if command == "/list":
        await session.refresh_conversations()
        print_conversations(session)
    elif command == "/open":
        await session.close_conversation()
        await session.open_conversation(argument.strip())
        render(session)
    elif command == "/close":
        await session.close_conversation()
    elif command == "/retry":
        await session.retry(argument.strip())
        render(session)
    elif command == "/select":
        session.engine.toggle_selection(argument.strip())
    elif command == "/delete":
        for outcome in await session.delete_selected():
            print(f"  {outcome['message_id']}: {outcome['status']}")
        render(session)
    elif line.strip():
        if session.active_conversation_id is None:
            print("Open a conversation first (/list, /open <id>)")
        else:
            await session.send_text(session.active_conversation_id, line.strip())
            render(session)
    return True


async def run() -> None:
    session = await ChatSession.start(
        CHAT_SERVER_URL,
        CHAT_ACCESS_TOKEN,
        CHAT_USER_ID,
        pending_timeout_seconds=CHAT_PENDING_TIMEOUT_SECONDS,
    )
    watcher = asyncio.create_task(session.watch_pending())
    loop = asyncio.get_running_loop()
    print_conversations(session)
    try:
        while True:
            line = await loop.run_in_executor(None, input, "> ")
            try:
                if not await handle_line(session, line):
                    break
            except (RequestFailed, ValueError) as e:
                print(f"Error: {e}")
    finally:
        watcher.cancel()
        await session.close()


def main() -> None:
    if not CHAT_ACCESS_TOKEN or not CHAT_USER_ID:
        print("ERROR: Set CHAT_ACCESS_TOKEN and CHAT_USER_ID in .env")
        return

    logging.basicConfig(level=logging.WARNING)
    print(f"Server: {CHAT_SERVER_URL}")
    asyncio.run(run())


if __name__ == "__main__":
    main()
