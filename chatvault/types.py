"""Type aliases and enums for chatvault."""

from __future__ import annotations

from enum import Enum
from typing import NewType

ChatId = NewType("ChatId", str)
MessageId = NewType("MessageId", str)


class Provider(str, Enum):
    """LLM provider kinds a chat can be bound to."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    LOCAL = "local"

    @property
    def default_base_url(self) -> str:
        return _DEFAULT_BASE_URLS[self]

    @property
    def default_model(self) -> str:
        return _DEFAULT_MODELS[self]

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    def __str__(self) -> str:
        return self.value


_DEFAULT_BASE_URLS = {
    Provider.OPENAI: "https://api.openai.com/v1",
    Provider.ANTHROPIC: "https://api.anthropic.com",
    Provider.GOOGLE: "https://generativelanguage.googleapis.com",
    Provider.LOCAL: "http://localhost:8080",
}

_DEFAULT_MODELS = {
    Provider.OPENAI: "gpt-4-turbo-preview",
    Provider.ANTHROPIC: "claude-3-opus-20240229",
    Provider.GOOGLE: "gemini-pro",
    Provider.LOCAL: "local-model",
}

_DISPLAY_NAMES = {
    Provider.OPENAI: "OpenAI",
    Provider.ANTHROPIC: "Anthropic",
    Provider.GOOGLE: "Google AI",
    Provider.LOCAL: "Local",
}


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    STREAMING = "streaming"
    EDITED = "edited"
    DELETED = "deleted"

    def __str__(self) -> str:
        return self.value


class SortOrder(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    RELEVANCE = "relevance"


class SearchScope(str, Enum):
    CHATS = "chats"
    MESSAGES = "messages"
