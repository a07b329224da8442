"""Error taxonomy shared by the gateway, the store and the HTTP surface."""

from __future__ import annotations

from enum import Enum

import httpx


class ErrorCategory(str, Enum):
    AUTHENTICATION = "authentication"
    QUOTA = "quota"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_INTERNAL = "upstream_internal"
    UNREACHABLE = "unreachable"
    TIMEOUT = "timeout"
    MODEL_NOT_FOUND = "model_not_found"
    PERSISTENCE_FAILURE = "persistence_failure"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    STREAM_INTERRUPTED = "stream_interrupted"
    EMPTY_RESPONSE = "empty_response"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self]


_USER_MESSAGES = {
    ErrorCategory.AUTHENTICATION: "AI service authentication failed, check the API key configuration.",
    ErrorCategory.QUOTA: "AI service is unavailable, check your balance or quota.",
    ErrorCategory.FORBIDDEN: "Access to the AI service was denied, check the API permissions.",
    ErrorCategory.RATE_LIMITED: "Too many requests to the AI service, please retry later.",
    ErrorCategory.UPSTREAM_INTERNAL: "The AI service had an internal error, please retry later.",
    ErrorCategory.UNREACHABLE: "Cannot reach the AI service, check the network and base URL.",
    ErrorCategory.TIMEOUT: "The AI service timed out, please retry later.",
    ErrorCategory.MODEL_NOT_FOUND: "The configured AI model does not exist, check the model setting.",
    ErrorCategory.PERSISTENCE_FAILURE: "The reply was generated but could not be saved. Please retry.",
    ErrorCategory.NOT_FOUND: "The requested chat was not found.",
    ErrorCategory.CONFLICT: "A reply is already being generated for this chat.",
    ErrorCategory.STREAM_INTERRUPTED: "The AI response stream ended unexpectedly, please retry.",
    ErrorCategory.EMPTY_RESPONSE: "The AI service returned an empty response, please retry.",
    ErrorCategory.CANCELLED: "The response was cancelled.",
    ErrorCategory.UNKNOWN: "The AI service is temporarily unavailable, please retry.",
}


class ChatRelayError(Exception):
    """Base class; every error carries a category for the client."""

    category = ErrorCategory.UNKNOWN

    def __init__(self, message: str | None = None, category: ErrorCategory | None = None):
        if category is not None:
            self.category = category
        super().__init__(message or self.category.user_message)


class ChatNotFound(ChatRelayError):
    category = ErrorCategory.NOT_FOUND

    def __init__(self, chat_id: str):
        self.chat_id = chat_id
        super().__init__(f'Chat with ID "{chat_id}" not found')


class StoreError(ChatRelayError):
    category = ErrorCategory.PERSISTENCE_FAILURE


class TurnInProgress(ChatRelayError):
    category = ErrorCategory.CONFLICT


class GatewayError(ChatRelayError):
    """Raised by the non-streaming gateway call."""


class MalformedFrame(ChatRelayError):
    """An event-stream frame that could not be turned into a fragment."""


class APIError(ChatRelayError):
    """Non-2xx response seen by the HTTP client."""

    def __init__(self, status_code: int, detail: str, category: ErrorCategory | None = None):
        self.status_code = status_code
        self.detail = detail
        super().__init__(detail, category)


def classify_status(status_code: int, body: str = "") -> ErrorCategory:
    """Map an upstream HTTP status (and error body) to a category."""
    if "insufficient_quota" in body:
        return ErrorCategory.QUOTA
    if "invalid_api_key" in body:
        return ErrorCategory.AUTHENTICATION
    if "model_not_found" in body:
        return ErrorCategory.MODEL_NOT_FOUND
    if "rate_limit_exceeded" in body:
        return ErrorCategory.RATE_LIMITED
    if status_code == 401:
        return ErrorCategory.AUTHENTICATION
    if status_code == 402:
        return ErrorCategory.QUOTA
    if status_code == 403:
        return ErrorCategory.FORBIDDEN
    if status_code == 404:
        return ErrorCategory.MODEL_NOT_FOUND
    if status_code == 429:
        return ErrorCategory.RATE_LIMITED
    if status_code >= 500:
        return ErrorCategory.UPSTREAM_INTERNAL
    return ErrorCategory.UNKNOWN


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Map an exception raised while talking to the backend to a category."""
    if isinstance(exc, ChatRelayError):
        return exc.category
    if isinstance(exc, httpx.TimeoutException):
        return ErrorCategory.TIMEOUT
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_status(exc.response.status_code)
    if isinstance(exc, httpx.RemoteProtocolError):
        return ErrorCategory.STREAM_INTERRUPTED
    if isinstance(exc, (httpx.ConnectError, httpx.NetworkError)):
        return ErrorCategory.UNREACHABLE
    return ErrorCategory.UNKNOWN
