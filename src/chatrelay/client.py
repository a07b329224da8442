"""HTTP client for the chat API, including the streaming consumer."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from .config import API_URL
from .errors import APIError, ErrorCategory, MalformedFrame, classify_exception
from .models import Chat, ChatSummary, Message, Role
from .sse import SSEDecoder, ServerEvent, parse_fragment

logger = logging.getLogger(__name__)


def _noop(*args):
    pass


@dataclass
class StreamCallbacks:
    on_content: Callable[[str], None] = _noop
    on_complete: Callable[[str], None] = _noop  # durable message id
    on_error: Callable[[str], None] = _noop


def _api_error(response: httpx.Response) -> APIError:
    detail = f"API Error: {response.status_code}"
    category = None
    try:
        body = response.json()
        if isinstance(body, dict):
            if isinstance(body.get("detail"), str):
                detail = body["detail"]
            if body.get("category"):
                category = ErrorCategory(body["category"])
    except ValueError:
        pass
    return APIError(response.status_code, detail, category)


class ChatAPIClient:
    """Async client for the chat endpoints."""

    def __init__(
        self,
        base_url: str = API_URL,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        # Reads on a stream wait for the model, so only connecting is bounded
        self._http = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            timeout=httpx.Timeout(timeout, read=None),
        )

    async def __aenter__(self) -> ChatAPIClient:
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self._http.aclose()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        response = await self._http.request(method, url, **kwargs)
        if response.is_error:
            raise _api_error(response)
        return response

    async def list_chats(self) -> list[ChatSummary]:
        response = await self._request("GET", "/chats")
        return [ChatSummary.model_validate(c) for c in response.json()]

    async def get_chat(self, chat_id: str) -> Chat:
        response = await self._request("GET", f"/chats/{chat_id}")
        return Chat.model_validate(response.json())

    async def create_chat(self) -> Chat:
        response = await self._request("POST", "/chats")
        return Chat.model_validate(response.json())

    async def send_message(self, chat_id: str, content: str, role: Role = "user") -> Message:
        """Save a message without asking for an AI reply."""
        response = await self._request(
            "POST", f"/chats/{chat_id}/messages", json={"content": content, "role": role}
        )
        return Message.model_validate(response.json())

    async def rename_chat(self, chat_id: str, title: str) -> Chat:
        response = await self._request("PATCH", f"/chats/{chat_id}", json={"title": title})
        return Chat.model_validate(response.json())

    async def delete_chat(self, chat_id: str) -> None:
        await self._request("DELETE", f"/chats/{chat_id}")

    def stream_message(self, chat_id: str, content: str, callbacks: StreamCallbacks) -> StreamSession:
        """Prepare a streamed turn; call ``start()`` then ``wait()`` on the result."""
        return StreamSession(self._http, chat_id, content, callbacks)


class StreamSession:
    """One streamed turn as seen by the client.

    Ends in one of ``completed``, ``error`` or ``cancelled``. Each session
    fires at most one of ``on_complete``/``on_error``, and no callback at
    all once ``cancel()`` has been called.
    """

    def __init__(self, http: httpx.AsyncClient, chat_id: str, content: str, callbacks: StreamCallbacks):
        self._http = http
        self.chat_id = chat_id
        self.content = content
        self.callbacks = callbacks
        self.outcome = "pending"
        self.message_id: str | None = None
        # Set when the server refused the turn before opening a stream
        self.rejected = False
        self._cancelled = False
        self._task: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
        return self._task

    async def wait(self) -> str:
        """Run the session to the end and return its outcome."""
        task = self.start()
        try:
            await task
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            self.outcome = "cancelled"
        return self.outcome

    def cancel(self):
        """Abort the connection; no further callbacks fire."""
        self._cancelled = True
        self.outcome = "cancelled"
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def _run(self):
        try:
            async with self._http.stream(
                "POST",
                f"/chats/{self.chat_id}/messages",
                params={"stream": "true"},
                json={"content": self.content, "role": "user"},
                headers={"Accept": "text/event-stream"},
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise _api_error(response)

                decoder = SSEDecoder()
                async for chunk in response.aiter_bytes():
                    for event in decoder.feed(chunk):
                        if self._dispatch(event):
                            return
                for event in decoder.flush():
                    if self._dispatch(event):
                        return

            logger.warning("Stream for chat %s closed without a terminal event", self.chat_id)
            self._fail(ErrorCategory.STREAM_INTERRUPTED.user_message)
        except APIError as e:
            self.rejected = True
            self._fail(e.detail)
        except httpx.HTTPError as e:
            logger.error("Stream request for chat %s failed", self.chat_id, exc_info=True)
            if classify_exception(e) is ErrorCategory.TIMEOUT:
                self._fail("The chat server timed out, please retry.")
            else:
                self._fail("Connection to the chat server failed, please retry.")

    def _dispatch(self, event: ServerEvent) -> bool:
        """Apply one event; True once the session is over."""
        if self._cancelled:
            return True
        try:
            fragment = parse_fragment(event)
        except MalformedFrame:
            logger.warning("Failed to parse SSE data: %r", event.data[:200])
            return False

        if fragment.type == "content":
            if fragment.content:
                self.callbacks.on_content(fragment.content)
            return False
        if fragment.type == "completion":
            self.outcome = "completed"
            self.message_id = fragment.message_id
            self.callbacks.on_complete(fragment.message_id)
            return True
        if fragment.type == "error":
            self._fail(fragment.message or ErrorCategory.UNKNOWN.user_message)
            return True
        return False

    def _fail(self, message: str):
        if self._cancelled or self.outcome != "pending":
            return
        self.outcome = "error"
        self.callbacks.on_error(message)
