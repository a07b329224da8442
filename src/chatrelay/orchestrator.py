"""Streaming orchestrator: one user turn from stored question to stored answer.

A turn runs these phases in order::

    idle -> persisting_user -> awaiting_model -> relaying
         -> persisting_assistant -> completed

and may exit to ``failed`` from any of them. The user message and the
history are handled by ``start_turn`` so that store failures surface before
any stream is opened. ``Turn.fragments`` does the rest and ends with exactly
one ``completion`` or ``error`` fragment, unless the listener went away.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from enum import Enum

from .errors import ChatRelayError, ErrorCategory, TurnInProgress
from .gateway import ChatGateway
from .models import CompletionFragment, ErrorFragment, Fragment, Message, Role
from .storage import ConversationStore

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    IDLE = "idle"
    PERSISTING_USER = "persisting_user"
    AWAITING_MODEL = "awaiting_model"
    RELAYING = "relaying"
    PERSISTING_ASSISTANT = "persisting_assistant"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def finished(self) -> bool:
        return self in (TurnState.COMPLETED, TurnState.FAILED)


class StreamingOrchestrator:
    """Coordinates the store and the gateway for each turn.

    At most one turn per chat is in flight; a second one is refused with
    ``TurnInProgress`` before anything is written. The orchestrator lives on
    a single event loop and ``start_turn`` claims the chat before its first
    await, so a plain dict is enough. Store calls run in worker threads so
    a slow write never stalls other turns.
    """

    def __init__(self, store: ConversationStore, gateway: ChatGateway):
        self.store = store
        self.gateway = gateway
        self._active: dict[str, Turn] = {}

    async def send_message(self, chat_id: str, role: Role, content: str) -> Message:
        """Persist a message without asking the model for a reply."""
        return await asyncio.to_thread(self.store.append_message, chat_id, role, content)

    async def start_turn(self, chat_id: str, content: str) -> Turn:
        """Persist the user message and load the history the model will see.

        Raises ChatNotFound, StoreError or TurnInProgress; in those cases no
        model call is made.
        """
        if self.is_busy(chat_id):
            raise TurnInProgress(f'Chat "{chat_id}" already has a reply in progress')

        turn = Turn(self, chat_id)
        self._active[chat_id] = turn
        try:
            await turn.persist_user(content)
        except BaseException:
            self.release(turn)
            raise
        return turn

    def is_busy(self, chat_id: str) -> bool:
        return chat_id in self._active

    def release(self, turn: Turn):
        if self._active.get(turn.chat_id) is turn:
            del self._active[turn.chat_id]


class Turn:
    """State of one streamed turn on one chat."""

    def __init__(self, orchestrator: StreamingOrchestrator, chat_id: str):
        self.orchestrator = orchestrator
        self.chat_id = chat_id
        self.state = TurnState.IDLE
        self.user_message: Message | None = None
        self.assistant_message: Message | None = None
        self.error: ErrorFragment | None = None
        self.cancelled = False
        self._history: list[dict] = []
        self._started = False

    @property
    def store(self) -> ConversationStore:
        return self.orchestrator.store

    async def persist_user(self, content: str):
        self.state = TurnState.PERSISTING_USER
        try:
            self.user_message = await asyncio.to_thread(
                self.store.append_message, self.chat_id, "user", content
            )
            self._history = await asyncio.to_thread(self.store.get_history, self.chat_id)
        except ChatRelayError:
            self.state = TurnState.FAILED
            logger.warning("Turn on chat %s failed before the model call", self.chat_id, exc_info=True)
            raise
        self.state = TurnState.AWAITING_MODEL

    def cancel(self):
        """Stop relaying; partial output is discarded and nothing more is emitted."""
        self.cancelled = True

    def close(self):
        """Release the chat if the stream was never consumed."""
        if not self._started and not self.state.finished:
            self.cancel()
            self.state = TurnState.FAILED
            logger.info("Turn on chat %s closed before streaming", self.chat_id)
        if self.state.finished:
            self.orchestrator.release(self)

    def _fail(self, fragment: ErrorFragment) -> ErrorFragment:
        self.state = TurnState.FAILED
        self.error = fragment
        logger.warning("Turn on chat %s failed: %s", self.chat_id, fragment.category.value)
        return fragment

    async def fragments(self) -> AsyncIterator[Fragment]:
        if self._started:
            raise RuntimeError("A turn's fragments can only be consumed once")
        self._started = True

        accumulated: list[str] = []
        stream = None
        try:
            if self.state is not TurnState.AWAITING_MODEL:
                raise RuntimeError(f"Turn cannot stream from state {self.state.value}")

            stream = self.orchestrator.gateway.stream_chat(self._history)
            self.state = TurnState.RELAYING
            saw_done = False
            try:
                async for fragment in stream:
                    if self.cancelled:
                        break
                    if fragment.type == "content":
                        accumulated.append(fragment.content)
                        yield fragment
                        if self.cancelled:
                            break
                    elif fragment.type == "done":
                        saw_done = True
                        break
                    elif fragment.type == "error":
                        if accumulated:
                            logger.warning(
                                "Discarding %d chars of partial reply on chat %s",
                                sum(map(len, accumulated)), self.chat_id,
                            )
                        yield self._fail(fragment)
                        return
                    else:
                        logger.warning("Ignoring unexpected %s fragment from gateway", fragment.type)
            except Exception:
                logger.error("Gateway stream raised on chat %s", self.chat_id, exc_info=True)
                yield self._fail(ErrorFragment.of(ErrorCategory.UNKNOWN))
                return

            if self.cancelled:
                self._mark_cancelled(accumulated)
                return
            if not saw_done:
                yield self._fail(ErrorFragment.of(ErrorCategory.STREAM_INTERRUPTED))
                return

            text = "".join(accumulated)
            if not text:
                yield self._fail(ErrorFragment.of(ErrorCategory.EMPTY_RESPONSE))
                return

            self.state = TurnState.PERSISTING_ASSISTANT
            try:
                self.assistant_message = await asyncio.to_thread(
                    self.store.append_message, self.chat_id, "assistant", text
                )
            except ChatRelayError:
                logger.error(
                    "Failed to save AI message to chat %s (%d chars)", self.chat_id, len(text),
                    exc_info=True,
                )
                yield self._fail(ErrorFragment.of(ErrorCategory.PERSISTENCE_FAILURE))
                return

            self.state = TurnState.COMPLETED
            logger.info(
                "Saved AI message to chat %s, id: %s, length: %d",
                self.chat_id, self.assistant_message.id, len(text),
            )
            yield CompletionFragment(message_id=self.assistant_message.id)
        except (GeneratorExit, asyncio.CancelledError):
            self._mark_cancelled(accumulated)
            raise
        finally:
            self.orchestrator.release(self)
            if stream is not None and hasattr(stream, "aclose"):
                await stream.aclose()

    def _mark_cancelled(self, accumulated: list[str]):
        if self.state.finished:
            return
        self.cancel()
        self.state = TurnState.FAILED
        logger.info(
            "Turn on chat %s cancelled, discarding %d chars",
            self.chat_id, sum(map(len, accumulated)),
        )
