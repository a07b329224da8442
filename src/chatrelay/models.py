"""Data models for chats, messages and stream fragments."""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from .config import RENAME_MAX_CHARS
from .errors import ErrorCategory

Role = Literal["user", "assistant", "system"]


class Message(BaseModel):
    id: str
    chat_id: str
    role: Role
    content: str
    created_at: float


class Chat(BaseModel):
    id: str
    title: str
    created_at: float
    updated_at: float
    messages: list[Message] = []


class ChatSummary(BaseModel):
    id: str
    title: str
    created_at: float
    updated_at: float
    message_count: int = 0
    preview: str | None = None


class MessageCreate(BaseModel):
    content: str
    role: Role = "user"

    @field_validator("content")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content must not be empty")
        return value


class ChatRename(BaseModel):
    title: str = Field(max_length=RENAME_MAX_CHARS)

    @field_validator("title")
    @classmethod
    def _strip(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("title must not be empty")
        return value


# Stream fragments. Transient: produced by the gateway and the orchestrator,
# consumed once by the transport, never stored.


class ContentFragment(BaseModel):
    type: Literal["content"] = "content"
    content: str


class CompletionFragment(BaseModel):
    type: Literal["completion"] = "completion"
    message_id: str


class ErrorFragment(BaseModel):
    type: Literal["error"] = "error"
    message: str
    category: ErrorCategory = ErrorCategory.UNKNOWN

    @classmethod
    def of(cls, category: ErrorCategory) -> ErrorFragment:
        return cls(message=category.user_message, category=category)


class DoneFragment(BaseModel):
    type: Literal["done"] = "done"


Fragment = Annotated[
    Union[ContentFragment, CompletionFragment, ErrorFragment, DoneFragment],
    Field(discriminator="type"),
]

fragment_adapter: TypeAdapter[Fragment] = TypeAdapter(Fragment)

TERMINAL_TYPES = frozenset({"completion", "error"})


def is_terminal(fragment: BaseModel) -> bool:
    """Whether the transport must close the stream after this fragment."""
    return getattr(fragment, "type", None) in TERMINAL_TYPES
