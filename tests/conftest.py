"""
Shared pytest fixtures for chatrelay tests.

Provides:
- A temporary SQLite conversation store
- A scripted gateway standing in for the model backend
- The FastAPI app and a TestClient bound to both
"""

import pytest
from fastapi.testclient import TestClient

from chatrelay.models import ContentFragment, DoneFragment, ErrorFragment
from chatrelay.errors import ErrorCategory
from chatrelay.server import create_app
from chatrelay.sse import SSEDecoder, parse_fragment
from chatrelay.storage import ConversationStore


class ScriptedGateway:
    """Gateway that plays back a fixed list of fragments.

    Items may also be exceptions (raised at that point) or zero-argument
    callables (run at that point, yielding nothing).
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls: list[list[dict]] = []
        self.closed = False

    async def stream_chat(self, messages):
        self.calls.append(messages)
        try:
            for item in self.script:
                if isinstance(item, BaseException):
                    raise item
                if callable(item):
                    item()
                    continue
                yield item
        finally:
            self.closed = True


def reply(*chunks):
    """Script for a successful reply made of the given chunks."""
    return [ContentFragment(content=c) for c in chunks] + [DoneFragment()]


def failure(*chunks, category=ErrorCategory.RATE_LIMITED):
    return [ContentFragment(content=c) for c in chunks] + [ErrorFragment.of(category)]


def decode_stream(body: bytes):
    """Decode a full event-stream body into fragments."""
    decoder = SSEDecoder()
    events = decoder.feed(body) + decoder.flush()
    return [parse_fragment(e) for e in events]


@pytest.fixture
def store(tmp_path):
    s = ConversationStore(tmp_path / "chats.db")
    yield s
    s.close()


@pytest.fixture
def gateway():
    return ScriptedGateway(*reply("Hi", " there"))


@pytest.fixture
def app(store, gateway):
    return create_app(store=store, gateway=gateway)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
