"""
Tests for the HTTP surface and the event-stream transport.
"""

import asyncio

from fastapi.testclient import TestClient

from chatrelay.errors import ErrorCategory
from chatrelay.models import CompletionFragment, ContentFragment, ErrorFragment
from chatrelay.server import create_app, relay_events

from conftest import ScriptedGateway, decode_stream, failure


class TestChatRoutes:
    def test_create_and_get(self, client):
        resp = client.post("/chats")
        assert resp.status_code == 201
        chat = resp.json()
        assert chat["title"] == "New Chat"

        resp = client.get(f"/chats/{chat['id']}")
        assert resp.status_code == 200
        assert resp.json()["messages"] == []

    def test_get_missing_chat_is_404(self, client):
        resp = client.get("/chats/missing")
        assert resp.status_code == 404
        assert resp.json()["category"] == "not_found"

    def test_list_newest_first(self, client):
        first = client.post("/chats").json()
        second = client.post("/chats").json()
        client.post(f"/chats/{first['id']}/messages", json={"content": "bump"})

        ids = [c["id"] for c in client.get("/chats").json()]
        assert ids == [first["id"], second["id"]]

    def test_rename(self, client):
        chat = client.post("/chats").json()
        resp = client.patch(f"/chats/{chat['id']}", json={"title": "Renamed"})
        assert resp.status_code == 200
        assert resp.json()["title"] == "Renamed"

    def test_rename_missing_chat_is_404(self, client):
        assert client.patch("/chats/missing", json={"title": "x"}).status_code == 404

    def test_rename_rejects_blank_title(self, client):
        chat = client.post("/chats").json()
        assert client.patch(f"/chats/{chat['id']}", json={"title": "  "}).status_code == 422

    def test_delete(self, client):
        chat = client.post("/chats").json()
        client.post(f"/chats/{chat['id']}/messages", json={"content": "hello"})

        resp = client.delete(f"/chats/{chat['id']}")
        assert resp.status_code == 204
        assert resp.content == b""
        assert client.get(f"/chats/{chat['id']}").status_code == 404
        assert client.delete(f"/chats/{chat['id']}").status_code == 404

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"


class TestPlainMessages:
    def test_message_saved_without_model_call(self, client, gateway):
        chat = client.post("/chats").json()
        resp = client.post(f"/chats/{chat['id']}/messages", json={"content": "note"})

        assert resp.status_code == 201
        body = resp.json()
        assert body["role"] == "user"
        assert body["content"] == "note"
        assert gateway.calls == []

    def test_role_can_be_given(self, client):
        chat = client.post("/chats").json()
        resp = client.post(
            f"/chats/{chat['id']}/messages", json={"content": "Be terse.", "role": "system"}
        )
        assert resp.json()["role"] == "system"

    def test_blank_content_rejected(self, client):
        chat = client.post("/chats").json()
        resp = client.post(f"/chats/{chat['id']}/messages", json={"content": "   "})
        assert resp.status_code == 422

    def test_missing_chat_is_404(self, client):
        resp = client.post("/chats/missing/messages", json={"content": "hello"})
        assert resp.status_code == 404


class TestStreaming:
    def test_successful_turn(self, client):
        chat = client.post("/chats").json()

        resp = client.post(f"/chats/{chat['id']}/messages?stream=true", json={"content": "Hello"})

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["cache-control"] == "no-cache"
        assert resp.headers["x-accel-buffering"] == "no"

        fragments = decode_stream(resp.content)
        assert fragments[:2] == [ContentFragment(content="Hi"), ContentFragment(content=" there")]
        assert isinstance(fragments[2], CompletionFragment)
        assert len(fragments) == 3

        stored = client.get(f"/chats/{chat['id']}").json()
        assert [(m["role"], m["content"]) for m in stored["messages"]] == [
            ("user", "Hello"),
            ("assistant", "Hi there"),
        ]
        assert stored["messages"][1]["id"] == fragments[2].message_id
        assert stored["title"] == "Hello"

    def test_events_are_named_after_fragment_type(self, client):
        chat = client.post("/chats").json()
        resp = client.post(f"/chats/{chat['id']}/messages?stream=true", json={"content": "Hello"})
        names = [line.split(": ", 1)[1] for line in resp.text.splitlines() if line.startswith("event:")]
        assert names == ["content", "content", "completion"]

    def test_failed_turn_keeps_only_user_message(self, store):
        app = create_app(store=store, gateway=ScriptedGateway(*failure("Partial")))

        with TestClient(app) as client:
            chat = client.post("/chats").json()
            resp = client.post(
                f"/chats/{chat['id']}/messages?stream=true", json={"content": "Hello"}
            )

            fragments = decode_stream(resp.content)
            assert fragments == [
                ContentFragment(content="Partial"),
                ErrorFragment.of(ErrorCategory.RATE_LIMITED),
            ]
            messages = client.get(f"/chats/{chat['id']}").json()["messages"]
            assert [(m["role"], m["content"]) for m in messages] == [("user", "Hello")]

    def test_missing_chat_fails_before_stream(self, client, gateway):
        resp = client.post("/chats/missing/messages?stream=true", json={"content": "Hello"})

        assert resp.status_code == 404
        assert resp.headers["content-type"].startswith("application/json")
        assert gateway.calls == []

    def test_busy_chat_is_409(self, app, client, store):
        chat = client.post("/chats").json()
        turn = asyncio.run(app.state.orchestrator.start_turn(chat["id"], "first"))

        resp = client.post(f"/chats/{chat['id']}/messages?stream=true", json={"content": "second"})
        assert resp.status_code == 409
        assert resp.json()["category"] == "conflict"

        turn.close()
        resp = client.post(f"/chats/{chat['id']}/messages?stream=true", json={"content": "third"})
        assert resp.status_code == 200


class FakeTurn:
    def __init__(self, *items):
        self.items = items
        self.chat_id = "chat"
        self.cancelled = False

    async def fragments(self):
        for item in self.items:
            if isinstance(item, BaseException):
                raise item
            yield item


async def relayed(turn):
    return decode_stream(b"".join([chunk async for chunk in relay_events(turn)]))


class TestRelay:
    async def test_stops_after_terminal_fragment(self):
        turn = FakeTurn(
            ContentFragment(content="a"),
            CompletionFragment(message_id="m"),
            ContentFragment(content="late"),
        )
        assert await relayed(turn) == [ContentFragment(content="a"), CompletionFragment(message_id="m")]

    async def test_unexpected_exception_becomes_error_event(self):
        turn = FakeTurn(ContentFragment(content="a"), RuntimeError("boom"))
        assert await relayed(turn) == [
            ContentFragment(content="a"),
            ErrorFragment.of(ErrorCategory.UNKNOWN),
        ]

    async def test_missing_terminal_gets_one(self):
        turn = FakeTurn(ContentFragment(content="a"))
        fragments = await relayed(turn)
        assert fragments[-1] == ErrorFragment.of(ErrorCategory.STREAM_INTERRUPTED)

    async def test_cancelled_turn_gets_no_extra_event(self):
        turn = FakeTurn(ContentFragment(content="a"))
        turn.cancelled = True
        assert await relayed(turn) == [ContentFragment(content="a")]

