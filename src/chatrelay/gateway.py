"""Language-model gateway: stream chat completions from an OpenAI-compatible backend."""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Protocol

import httpx

from .config import GatewaySettings, load_gateway_settings
from .errors import ErrorCategory, GatewayError, classify_exception, classify_status
from .models import ContentFragment, DoneFragment, ErrorFragment, Fragment
from .sse import SSEDecoder

logger = logging.getLogger(__name__)

UPSTREAM_DONE = "[DONE]"


class ChatGateway(Protocol):
    """Anything that turns role-tagged history into a fragment stream.

    The stream holds zero or more ``content`` fragments followed by exactly
    one ``done`` or ``error`` fragment.
    """

    def stream_chat(self, messages: list[dict]) -> AsyncIterator[Fragment]: ...


class OpenAIGateway:
    """Chat completions over httpx against any OpenAI-compatible endpoint."""

    def __init__(
        self,
        settings: GatewaySettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings or load_gateway_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        # Transport-level retries only cover failures to connect, never a
        # request the backend has already seen.
        transport = self._transport or httpx.AsyncHTTPTransport(retries=self.settings.max_retries)
        return httpx.AsyncClient(
            base_url=self.settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(self.settings.timeout),
            transport=transport,
            headers={"Authorization": f"Bearer {self.settings.api_key}"},
        )

    def with_system_prompt(self, messages: list[dict]) -> list[dict]:
        if messages and messages[0].get("role") == "system":
            return list(messages)
        return [{"role": "system", "content": self.settings.system_prompt}, *messages]

    def _payload(self, messages: list[dict], stream: bool) -> dict:
        return {
            "model": self.settings.model,
            "messages": self.with_system_prompt(messages),
            "stream": stream,
            "temperature": self.settings.temperature,
            "max_tokens": self.settings.max_tokens,
        }

    async def stream_chat(self, messages: list[dict]) -> AsyncIterator[Fragment]:
        """Yield content fragments, then a single done or error fragment."""
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", "/chat/completions", json=self._payload(messages, stream=True)
                ) as response:
                    if response.is_error:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        logger.error(
                            "Model backend returned HTTP %s: %s", response.status_code, body[:500]
                        )
                        yield ErrorFragment.of(classify_status(response.status_code, body))
                        return

                    decoder = SSEDecoder()
                    async for chunk in response.aiter_bytes():
                        for event in decoder.feed(chunk):
                            if event.data.strip() == UPSTREAM_DONE:
                                yield DoneFragment()
                                return
                            fragment = _parse_chunk(event.data)
                            if fragment is None:
                                continue
                            yield fragment
                            if fragment.type == "error":
                                return
            # Without [DONE] the reply may be cut short, so it is not complete
            logger.warning("Model stream closed without %s", UPSTREAM_DONE)
            yield ErrorFragment.of(ErrorCategory.STREAM_INTERRUPTED)
        except Exception as e:
            category = classify_exception(e)
            logger.error("AI stream error (%s)", category.value, exc_info=True)
            yield ErrorFragment.of(category)

    async def complete(self, messages: list[dict]) -> str:
        """Non-streaming completion; raises GatewayError with a classified category."""
        try:
            async with self._client() as client:
                response = await client.post(
                    "/chat/completions", json=self._payload(messages, stream=False)
                )
        except httpx.HTTPError as e:
            category = classify_exception(e)
            logger.error("AI request failed (%s)", category.value, exc_info=True)
            raise GatewayError(category=category) from e

        if response.is_error:
            logger.error("Model backend returned HTTP %s: %s", response.status_code, response.text[:500])
            raise GatewayError(category=classify_status(response.status_code, response.text))

        try:
            return response.json()["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError) as e:
            logger.error("Unexpected completion payload: %s", response.text[:500])
            raise GatewayError(category=ErrorCategory.UNKNOWN) from e


def _parse_chunk(data: str) -> Fragment | None:
    """One upstream ``data:`` payload → a content or error fragment, or None."""
    chunk = json.loads(data)
    if "error" in chunk:
        logger.error("Model backend sent an in-band error: %s", data[:500])
        error = chunk["error"] if isinstance(chunk["error"], dict) else {}
        status = error.get("status") or error.get("code")
        status = status if isinstance(status, int) else 0
        return ErrorFragment.of(classify_status(status, data))

    choices = chunk.get("choices") or []
    if not choices:
        return None
    content = (choices[0].get("delta") or {}).get("content")
    if content:
        return ContentFragment(content=content)
    return None
