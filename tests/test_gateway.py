"""
Tests for the OpenAI-compatible gateway, against httpx.MockTransport.
"""

import json

import httpx
import pytest

from chatrelay.config import GatewaySettings
from chatrelay.errors import ErrorCategory, GatewayError
from chatrelay.gateway import OpenAIGateway
from chatrelay.models import ContentFragment, DoneFragment, ErrorFragment


def sse_body(*chunks, done=True):
    lines = []
    for text in chunks:
        payload = {"choices": [{"index": 0, "delta": {"content": text}}]}
        lines.append(f"data: {json.dumps(payload)}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def make_gateway(handler, **settings):
    return OpenAIGateway(
        GatewaySettings(api_key="sk-test", base_url="https://llm.example/v1", **settings),
        transport=httpx.MockTransport(handler),
    )


async def collect(gateway, messages=None):
    return [f async for f in gateway.stream_chat(messages or [{"role": "user", "content": "Hello"}])]


class TestStreaming:
    async def test_streams_content_then_done(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, content=sse_body("Hi", " there"))

        fragments = await collect(make_gateway(handler, model="test-model"))

        assert fragments == [
            ContentFragment(content="Hi"),
            ContentFragment(content=" there"),
            DoneFragment(),
        ]
        assert seen["url"] == "https://llm.example/v1/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"]["model"] == "test-model"
        assert seen["body"]["stream"] is True

    async def test_prepends_system_prompt(self):
        seen = {}

        def handler(request):
            seen["messages"] = json.loads(request.content)["messages"]
            return httpx.Response(200, content=sse_body("ok"))

        await collect(make_gateway(handler, system_prompt="Be brief."))
        assert seen["messages"][0] == {"role": "system", "content": "Be brief."}
        assert seen["messages"][1] == {"role": "user", "content": "Hello"}

    async def test_keeps_caller_system_prompt(self):
        seen = {}

        def handler(request):
            seen["messages"] = json.loads(request.content)["messages"]
            return httpx.Response(200, content=sse_body("ok"))

        messages = [{"role": "system", "content": "Custom"}, {"role": "user", "content": "Hi"}]
        await collect(make_gateway(handler), messages)
        assert seen["messages"] == messages

    async def test_skips_empty_deltas(self):
        body = (
            b'data: {"choices": [{"delta": {"role": "assistant"}}]}\n\n'
            + sse_body("Hi")
        )
        fragments = await collect(make_gateway(lambda r: httpx.Response(200, content=body)))
        assert fragments == [ContentFragment(content="Hi"), DoneFragment()]

    async def test_missing_done_sentinel_is_interrupted(self):
        fragments = await collect(
            make_gateway(lambda r: httpx.Response(200, content=sse_body("Hi", done=False)))
        )
        assert fragments == [
            ContentFragment(content="Hi"),
            ErrorFragment.of(ErrorCategory.STREAM_INTERRUPTED),
        ]

    async def test_done_sentinel_split_across_reads(self):
        body = sse_body("Hi")

        async def pieces():
            for i in range(0, len(body), 5):
                yield body[i : i + 5]

        fragments = await collect(make_gateway(lambda r: httpx.Response(200, content=pieces())))
        assert fragments == [ContentFragment(content="Hi"), DoneFragment()]


class TestErrorClassification:
    @pytest.mark.parametrize(
        "status, body, category",
        [
            (401, "", ErrorCategory.AUTHENTICATION),
            (402, "", ErrorCategory.QUOTA),
            (403, "", ErrorCategory.FORBIDDEN),
            (429, "", ErrorCategory.RATE_LIMITED),
            (429, '{"error": {"code": "insufficient_quota"}}', ErrorCategory.QUOTA),
            (400, '{"error": {"code": "invalid_api_key"}}', ErrorCategory.AUTHENTICATION),
            (404, '{"error": {"code": "model_not_found"}}', ErrorCategory.MODEL_NOT_FOUND),
            (500, "", ErrorCategory.UPSTREAM_INTERNAL),
            (503, "", ErrorCategory.UPSTREAM_INTERNAL),
            (400, "bad request", ErrorCategory.UNKNOWN),
        ],
    )
    async def test_http_status(self, status, body, category):
        fragments = await collect(make_gateway(lambda r: httpx.Response(status, text=body)))
        assert fragments == [ErrorFragment.of(category)]

    async def test_secret_in_error_body_not_exposed(self):
        body = '{"error": {"message": "Incorrect API key provided: sk-secret"}}'
        [fragment] = await collect(make_gateway(lambda r: httpx.Response(401, text=body)))
        assert "sk-secret" not in fragment.message

    async def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        assert await collect(make_gateway(handler)) == [ErrorFragment.of(ErrorCategory.UNREACHABLE)]

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        assert await collect(make_gateway(handler)) == [ErrorFragment.of(ErrorCategory.TIMEOUT)]

    async def test_in_band_error_after_content(self):
        body = sse_body("Par", done=False) + b'data: {"error": {"code": "rate_limit_exceeded"}}\n\n'
        fragments = await collect(make_gateway(lambda r: httpx.Response(200, content=body)))
        assert fragments == [
            ContentFragment(content="Par"),
            ErrorFragment.of(ErrorCategory.RATE_LIMITED),
        ]

    async def test_garbage_payload_is_single_error(self):
        body = b"data: {not json}\n\n"
        fragments = await collect(make_gateway(lambda r: httpx.Response(200, content=body)))
        assert fragments == [ErrorFragment.of(ErrorCategory.UNKNOWN)]


class TestComplete:
    async def test_returns_message_content(self):
        def handler(request):
            assert json.loads(request.content)["stream"] is False
            return httpx.Response(200, json={"choices": [{"message": {"content": "Pong"}}]})

        assert await make_gateway(handler).complete([{"role": "user", "content": "Ping"}]) == "Pong"

    async def test_raises_classified_error(self):
        gateway = make_gateway(lambda r: httpx.Response(402, text="payment required"))
        with pytest.raises(GatewayError) as excinfo:
            await gateway.complete([{"role": "user", "content": "Ping"}])
        assert excinfo.value.category is ErrorCategory.QUOTA
