"""Domain records persisted by the storage layer."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field, field_validator, model_validator

from chatvault.types import ChatId, MessageId, MessageStatus, Provider


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Chat(BaseModel):
    """A conversation.

    ``message_count`` and ``last_message_preview`` are caches maintained by the
    record store; values set here are ignored when an existing chat is saved.
    """

    id: ChatId = Field(default_factory=lambda: ChatId(new_id()))
    title: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    provider: Provider = Provider.OPENAI
    model_name: str = ""
    is_archived: bool = False
    message_count: int = Field(default=0, ge=0)
    last_message_preview: str | None = None

    @field_validator("id")
    @classmethod
    def non_empty_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("id cannot be empty")
        return v

    @model_validator(mode="after")
    def updated_not_before_created(self) -> Chat:
        if self.updated_at < self.created_at:
            raise ValueError("updated_at must not precede created_at")
        return self

    @property
    def display_title(self) -> str:
        return self.title or "New Chat"


class MessageError(BaseModel):
    code: str
    message: str
    details: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class MessageMetadata(BaseModel):
    model: str | None = None
    provider: Provider | None = None
    provider_config_id: str | None = None
    response_time: float | None = None
    prompt_tokens: int | None = None
    response_tokens: int | None = None
    total_tokens: int | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    finish_reason: str | None = None
    error: MessageError | None = None

    def is_empty(self) -> bool:
        return all(value is None for value in self.model_dump().values())


class Message(BaseModel):
    id: MessageId = Field(default_factory=lambda: MessageId(new_id()))
    chat_id: ChatId
    content: str = ""
    is_user: bool = True
    timestamp: datetime = Field(default_factory=utcnow)
    image_data: bytes | None = None
    metadata: MessageMetadata | None = None
    status: MessageStatus = MessageStatus.SENT
    edited_at: datetime | None = None

    @field_validator("id", "chat_id")
    @classmethod
    def non_empty_string(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Field cannot be empty")
        return v

    def with_edit(self, content: str) -> Message:
        """Return a copy carrying new content, stamped as edited."""
        return self.model_copy(
            update={"content": content, "status": MessageStatus.EDITED, "edited_at": utcnow()}
        )

    def with_status(self, status: MessageStatus) -> Message:
        return self.model_copy(update={"status": status})


class ProviderConfiguration(BaseModel):
    """A provider endpoint the host can send messages through.

    Stored in the preferences file, not the database.
    """

    id: str = Field(default_factory=new_id)
    provider: Provider
    friendly_name: str
    base_url: str
    selected_model: str
    is_default: bool = False

    @classmethod
    def default_for(cls, provider: Provider, *, is_default: bool = False) -> ProviderConfiguration:
        return cls(
            provider=provider,
            friendly_name=provider.display_name,
            base_url=provider.default_base_url,
            selected_model=provider.default_model,
            is_default=is_default,
        )

    @field_validator("friendly_name", "base_url", "selected_model")
    @classmethod
    def non_empty_string(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Field cannot be empty")
        return v.strip()


__all__ = [
    "Chat",
    "Message",
    "MessageError",
    "MessageMetadata",
    "ProviderConfiguration",
    "new_id",
    "utcnow",
]
