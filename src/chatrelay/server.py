"""FastAPI server: chat CRUD and the streaming message endpoint."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from . import __version__
from .config import CORS_ORIGINS, SQLITE_PATH, load_gateway_settings
from .errors import ChatRelayError, ErrorCategory, StoreError
from .gateway import ChatGateway, OpenAIGateway
from .models import Chat, ChatRename, ChatSummary, ErrorFragment, Message, MessageCreate, is_terminal
from .orchestrator import StreamingOrchestrator, Turn
from .sse import encode_event
from .storage import ConversationStore

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

_STATUS_BY_CATEGORY = {
    ErrorCategory.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCategory.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCategory.PERSISTENCE_FAILURE: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

router = APIRouter(prefix="/chats", tags=["chats"])


def get_store(request: Request) -> ConversationStore:
    return request.app.state.store


def get_orchestrator(request: Request) -> StreamingOrchestrator:
    return request.app.state.orchestrator


async def relay_events(turn: Turn) -> AsyncIterator[bytes]:
    """Frame a turn's fragments as server-sent events.

    Stops right after the first terminal event. Anything the orchestrator
    did not already turn into a fragment becomes one generic error event, so
    the connection never closes without a terminal event.
    """
    fragments = turn.fragments()
    try:
        async for fragment in fragments:
            if fragment.type == "done":
                continue
            yield encode_event(fragment)
            if is_terminal(fragment):
                return
    except Exception:
        logger.error("Stream error on chat %s", turn.chat_id, exc_info=True)
        yield encode_event(ErrorFragment.of(ErrorCategory.UNKNOWN))
        return
    finally:
        await fragments.aclose()

    if not turn.cancelled:
        logger.error("Turn on chat %s ended without a terminal fragment", turn.chat_id)
        yield encode_event(ErrorFragment.of(ErrorCategory.STREAM_INTERRUPTED))


@router.get("", response_model=list[ChatSummary])
def list_chats(store: ConversationStore = Depends(get_store)):
    """All chats ordered by last update, newest first."""
    return store.list_chats()


@router.get("/{chat_id}", response_model=Chat)
def get_chat(chat_id: str, store: ConversationStore = Depends(get_store)):
    return store.get_chat(chat_id)


@router.post("", response_model=Chat, status_code=status.HTTP_201_CREATED)
def create_chat(store: ConversationStore = Depends(get_store)):
    return store.create_chat()


@router.patch("/{chat_id}", response_model=Chat)
def rename_chat(chat_id: str, body: ChatRename, store: ConversationStore = Depends(get_store)):
    return store.rename_chat(chat_id, body.title)


@router.delete("/{chat_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_chat(chat_id: str, store: ConversationStore = Depends(get_store)):
    """Delete a chat and all its messages."""
    store.delete_chat(chat_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{chat_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def add_message(
    chat_id: str,
    body: MessageCreate,
    stream: bool = Query(False, description="Stream the AI reply as server-sent events"),
    orchestrator: StreamingOrchestrator = Depends(get_orchestrator),
):
    """Add a message to a chat.

    Without ``stream`` the message is saved and returned. With ``stream=true``
    the content is saved as a user message and the AI reply is streamed as
    ``content`` events followed by one ``completion`` or ``error`` event.
    Missing chats and busy chats fail here, before the stream opens.
    """
    if not stream:
        return await orchestrator.send_message(chat_id, body.role, body.content)

    turn = await orchestrator.start_turn(chat_id, body.content)
    return StreamingResponse(
        relay_events(turn),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        background=BackgroundTask(_close_turn, turn),
    )


async def _close_turn(turn: Turn):
    # Runs on the event loop, where the orchestrator's bookkeeping lives
    turn.close()


async def _handle_chatrelay_error(request: Request, exc: ChatRelayError) -> JSONResponse:
    status_code = _STATUS_BY_CATEGORY.get(exc.category, status.HTTP_502_BAD_GATEWAY)
    if isinstance(exc, StoreError):
        logger.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
        detail = "Database operation failed"
    else:
        detail = str(exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "category": exc.category.value},
    )


def create_app(
    store: ConversationStore | None = None,
    gateway: ChatGateway | None = None,
) -> FastAPI:
    """Build the application; without arguments it uses the configured database and backend."""
    if store is None:
        store = ConversationStore(SQLITE_PATH)
    if gateway is None:
        gateway = OpenAIGateway(load_gateway_settings())

    app = FastAPI(
        title="chatrelay",
        description="Chat storage with streaming AI replies.",
        version=__version__,
    )
    app.state.store = store
    app.state.orchestrator = StreamingOrchestrator(store, gateway)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["Content-Type"],
    )
    app.add_exception_handler(ChatRelayError, _handle_chatrelay_error)
    app.include_router(router)

    @app.get("/health")
    def health():
        return {"status": "ok", "version": __version__}

    return app
