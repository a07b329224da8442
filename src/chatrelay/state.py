"""Client-side chat state with optimistic updates.

``ChatState`` is the explicit container a front end (or the CLI) keeps per
client. Messages the server has not confirmed yet carry a ``temp_`` id; they
are swapped for durable ids when the server reports them, and
``merge_messages`` reconciles the local copy with a fresh fetch.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable

from pydantic import BaseModel

from .client import ChatAPIClient, StreamCallbacks, StreamSession
from .config import TEMP_ID_PREFIX
from .errors import APIError
from .models import Chat, ChatSummary, Message

logger = logging.getLogger(__name__)


def is_temporary(message_id: str) -> bool:
    return message_id.startswith(TEMP_ID_PREFIX)


def temporary_id(kind: str) -> str:
    return f"{TEMP_ID_PREFIX}{kind}_{uuid.uuid4().hex[:12]}"


class LocalMessage(Message):
    # Set on a reply that failed or was stopped, instead of guessing from its text
    error: bool = False

    @property
    def pending(self) -> bool:
        return is_temporary(self.id)

    @classmethod
    def from_message(cls, message: Message) -> LocalMessage:
        return cls(**message.model_dump())


class LocalChat(Chat):
    messages: list[LocalMessage] = []

    @classmethod
    def from_chat(cls, chat: Chat) -> LocalChat:
        return cls(
            **chat.model_dump(exclude={"messages"}),
            messages=[LocalMessage.from_message(m) for m in chat.messages],
        )


class FailedSend(BaseModel):
    chat_id: str
    content: str


def merge_messages(local: list[LocalMessage], remote: list[Message]) -> list[LocalMessage]:
    """Merge a fresh server copy of a chat's messages into the local list.

    - A durable message wins unless it is empty and the local copy is not.
    - A temporary message is dropped once the server holds a message with the
      same role and content that no local message accounts for.
    - Other temporary messages, and local messages with content, are kept.

    The result is ordered by creation time.
    """
    local_by_id = {m.id: m for m in local}
    merged: list[LocalMessage] = []

    for durable in remote:
        mine = local_by_id.get(durable.id)
        if mine is not None and mine.content and not durable.content:
            merged.append(mine)
        else:
            merged.append(LocalMessage.from_message(durable))

    remote_ids = {m.id for m in remote}
    unclaimed = [m for m in remote if m.id not in local_by_id]

    for mine in local:
        if mine.id in remote_ids:
            continue
        if mine.pending:
            twin = next(
                (m for m in unclaimed if m.role == mine.role and m.content == mine.content),
                None,
            )
            if twin is not None:
                unclaimed.remove(twin)
                continue
            merged.append(mine)
        elif mine.content:
            merged.append(mine)

    merged.sort(key=lambda m: m.created_at)
    return merged


class ChatState:
    """Chats, the selected chat and the in-flight stream for one client."""

    def __init__(self, client: ChatAPIClient):
        self.client = client
        self.chats: list[ChatSummary] = []
        self.current_chat: LocalChat | None = None
        self.is_streaming = False
        self.error: str | None = None
        self.last_failed: FailedSend | None = None
        self._session: StreamSession | None = None

    @property
    def current_chat_id(self) -> str | None:
        return self.current_chat.id if self.current_chat else None

    def _record_error(self, action: str, exc: APIError):
        logger.error("Failed to %s: %s", action, exc)
        self.error = exc.detail

    async def load_chats(self) -> list[ChatSummary]:
        self.error = None
        try:
            self.chats = await self.client.list_chats()
        except APIError as e:
            self._record_error("load chats", e)
        return self.chats

    async def select_chat(self, chat_id: str) -> LocalChat | None:
        """Load a chat, keeping unconfirmed local messages of the same chat."""
        self.error = None
        try:
            fetched = await self.client.get_chat(chat_id)
        except APIError as e:
            self._record_error("load chat", e)
            return None

        previous = self.current_chat
        if previous is None or previous.id != chat_id:
            self.current_chat = LocalChat.from_chat(fetched)
        else:
            self.current_chat = LocalChat(
                **fetched.model_dump(exclude={"messages"}),
                messages=merge_messages(previous.messages, fetched.messages),
            )
        return self.current_chat

    async def create_chat(self) -> Chat | None:
        self.error = None
        try:
            chat = await self.client.create_chat()
        except APIError as e:
            self._record_error("create chat", e)
            return None

        self.chats.insert(0, ChatSummary(**chat.model_dump(exclude={"messages"})))
        self.current_chat = LocalChat.from_chat(chat)
        return chat

    async def rename_chat(self, chat_id: str, title: str) -> bool:
        self.error = None
        try:
            chat = await self.client.rename_chat(chat_id, title)
        except APIError as e:
            self._record_error("rename chat", e)
            return False

        for summary in self.chats:
            if summary.id == chat_id:
                summary.title = chat.title
        if self.current_chat is not None and self.current_chat.id == chat_id:
            self.current_chat.title = chat.title
        return True

    async def delete_chat(self, chat_id: str) -> bool:
        self.error = None
        try:
            await self.client.delete_chat(chat_id)
        except APIError as e:
            self._record_error("delete chat", e)
            return False

        self.chats = [c for c in self.chats if c.id != chat_id]
        if self.current_chat_id == chat_id:
            self.current_chat = None
        return True

    def clear_error(self):
        self.error = None

    def _find(self, message_id: str) -> LocalMessage | None:
        if self.current_chat is None:
            return None
        return next((m for m in self.current_chat.messages if m.id == message_id), None)

    def _settle_placeholder(self, placeholder_id: str):
        """Drop an empty reply placeholder, flag a partial one as failed."""
        if self.current_chat is None:
            return
        placeholder = self._find(placeholder_id)
        if placeholder is None:
            return
        if placeholder.content:
            placeholder.error = True
        else:
            self.current_chat.messages.remove(placeholder)

    async def send_message(self, content: str, on_content: Callable[[str], None] | None = None) -> str:
        """Send a user message and stream the reply into the current chat.

        Returns the session outcome: ``completed``, ``error`` or ``cancelled``.
        """
        if self.current_chat is None:
            self.error = "No chat selected"
            return "error"

        chat_id = self.current_chat.id
        self.error = None
        self.is_streaming = True

        now = time.time()
        user_message = LocalMessage(
            id=temporary_id("user"), chat_id=chat_id, role="user", content=content, created_at=now
        )
        placeholder = LocalMessage(
            id=temporary_id("ai"), chat_id=chat_id, role="assistant", content="", created_at=now
        )
        self.current_chat.messages.extend([user_message, placeholder])
        for summary in self.chats:
            if summary.id == chat_id:
                summary.updated_at = now

        def handle_content(text: str):
            placeholder.content += text
            if on_content is not None:
                on_content(text)

        def handle_complete(message_id: str):
            placeholder.id = message_id

        def handle_error(message: str):
            self.error = message
            self.last_failed = FailedSend(chat_id=chat_id, content=content)
            self._settle_placeholder(placeholder.id)

        session = self.client.stream_message(
            chat_id,
            content,
            StreamCallbacks(on_content=handle_content, on_complete=handle_complete, on_error=handle_error),
        )
        self._session = session
        try:
            outcome = await session.wait()
        finally:
            self.is_streaming = False
            self._session = None

        if session.rejected and self.current_chat_id == chat_id:
            # The server never stored it
            self.current_chat.messages = [m for m in self.current_chat.messages if m.id != user_message.id]

        if outcome == "completed":
            # Picks up the durable id of the user message and the new title
            if self.current_chat_id == chat_id:
                await self.select_chat(chat_id)
            await self.load_chats()
        elif outcome == "cancelled":
            self._settle_placeholder(placeholder.id)
        return outcome

    async def retry_last_message(self) -> str | None:
        """Resend the last failed content; the server runs a fresh turn."""
        failed = self.last_failed
        if failed is None:
            return None
        self.error = None
        self.last_failed = None
        if self.current_chat_id != failed.chat_id:
            await self.select_chat(failed.chat_id)
        return await self.send_message(failed.content)

    def stop_streaming(self):
        if self._session is not None:
            self._session.cancel()
        self.is_streaming = False
