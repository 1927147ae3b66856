"""Exceptions raised by the messaging core."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for every error raised by :mod:`automate_chat`."""


class InvalidArgument(ChatError):
    """A send or resolve call violated its preconditions.

    Raised before any store is written, so the caller's state is unchanged.
    """


class IdentityUnavailable(ChatError):
    def __init__(self, source: str = "") -> None:
        message = "The current user's identity is unavailable"
        if source:
            message = f"{message} ({source})"
        super().__init__(message)


class RemoteStoreError(ChatError):
    """The remote conversation store could not be reached or rejected a call."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        details = message
        if status_code is not None:
            details = f"{details} (status {status_code})"
        super().__init__(details)


class UploadError(ChatError):
    """A media upload failed; callers fall back to the local reference."""


class SubscriptionUnavailable(ChatError):
    """Change notification could not be established for a conversation."""
