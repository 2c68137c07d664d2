from __future__ import annotations


class ChatError(Exception):
    """Base class for every error raised by daychat."""

    status_code = 500

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class PersistenceError(ChatError):
    """History storage could not be read or written."""


class CorruptSessionError(PersistenceError):
    """A session file exists but is not a valid session record."""


class ProviderError(ChatError):
    """The LLM provider failed (network, API or malformed completion)."""

    status_code = 502


class InvalidRequestError(ChatError):
    """The caller sent something we cannot turn into a prompt."""

    status_code = 400
