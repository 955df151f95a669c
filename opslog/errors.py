"""Error taxonomy shared by the collector, classifier, writer and search service.

The hierarchy mirrors how failures are handled:

- ``TransientExternalError``: rate limits, timeouts, dropped connections. Retried
  locally and absorbed at the per-message / per-page boundary.
- ``PermanentRequestError``: not-found or malformed input. Not retried; surfaced to
  the caller, which falls back where it can.
- ``DataIntegrityError``: an AI response that does not parse into the expected
  structure. Retried like a transient error, then replaced by a fallback record.
- ``ConfigurationError``: missing credentials or invalid settings. Aborts the run.
"""

from enum import Enum
from typing import Any, Optional

from slack_sdk.errors import SlackApiError


class OpsLogError(Exception):
    """Base class for all opslog errors."""


class TransientExternalError(OpsLogError):
    """Retryable failure of an external call."""


class StaleConnectionError(TransientExternalError):
    """The underlying connection must be re-established before the next call."""


class PermanentRequestError(OpsLogError):
    """Non-retryable request failure."""


class NotFoundError(PermanentRequestError):
    """A requested resource (channel, record, schema) does not exist."""


class DataIntegrityError(OpsLogError):
    """External data did not match the expected structure."""


class ConfigurationError(OpsLogError):
    """Required configuration or credentials are missing or invalid."""


class ChatErrorKind(str, Enum):
    """Error kinds surfaced by the chat-platform client."""

    RATE_LIMITED = "rate_limited"
    NOT_IN_CHANNEL = "not_in_channel"
    NOT_FOUND = "not_found"
    OTHER = "other"


class ChatPlatformError(OpsLogError):
    """Error raised by the chat-platform client.

    Args:
        kind: Classified error kind.
        message: Human-readable description (usually the Slack error code).
        retry_after: Server-provided cooldown in seconds, when known.
    """

    def __init__(self, kind: ChatErrorKind, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retry_after = retry_after


class RateLimitedError(ChatPlatformError, TransientExternalError):
    """HTTP 429 / ``ratelimited`` from the chat platform."""

    def __init__(self, message: str = "ratelimited", retry_after: Optional[float] = None):
        super().__init__(ChatErrorKind.RATE_LIMITED, message, retry_after)


class NotInChannelError(ChatPlatformError, PermanentRequestError):
    """The bot is not a member of the requested conversation."""

    def __init__(self, message: str = "not_in_channel"):
        super().__init__(ChatErrorKind.NOT_IN_CHANNEL, message)


class ChatNotFoundError(ChatPlatformError, NotFoundError):
    """Channel, thread or user does not exist."""

    def __init__(self, message: str = "not_found"):
        super().__init__(ChatErrorKind.NOT_FOUND, message)


class ChatTransientError(ChatPlatformError, TransientExternalError):
    """Chat-platform failure worth retrying (5xx, network, Slack internal errors)."""

    def __init__(self, message: str):
        super().__init__(ChatErrorKind.OTHER, message)


class ChatRequestError(ChatPlatformError, PermanentRequestError):
    """The chat platform rejected the request itself (4xx, invalid arguments)."""

    def __init__(self, message: str):
        super().__init__(ChatErrorKind.OTHER, message)


class ChatAuthError(ChatPlatformError, ConfigurationError):
    """Token is invalid, revoked or lacks a required scope."""

    def __init__(self, message: str):
        super().__init__(ChatErrorKind.OTHER, message)


_NOT_FOUND_CODES = {"channel_not_found", "thread_not_found", "user_not_found", "message_not_found"}
_AUTH_CODES = {"invalid_auth", "not_authed", "missing_scope", "account_inactive", "token_revoked"}
_TRANSIENT_CODES = {"internal_error", "fatal_error", "service_unavailable", "request_timeout"}


def chat_error_from_slack(err: SlackApiError) -> ChatPlatformError:
    """Map a ``SlackApiError`` to the matching ``ChatPlatformError`` subclass."""
    response: Any = getattr(err, "response", None)
    status = getattr(response, "status_code", None)
    code = ""
    if response is not None:
        try:
            code = str(response.get("error", "") or "")
        except Exception:
            code = ""
    if status == 429 or code == "ratelimited":
        headers = getattr(response, "headers", None) or {}
        retry_after: Optional[float] = None
        raw = headers.get("Retry-After") or headers.get("retry-after")
        if raw is not None:
            try:
                retry_after = float(raw)
            except (TypeError, ValueError):
                retry_after = None
        return RateLimitedError(code or "ratelimited", retry_after)
    if code == "not_in_channel":
        return NotInChannelError(code)
    if code in _NOT_FOUND_CODES:
        return ChatNotFoundError(code)
    if code in _AUTH_CODES:
        return ChatAuthError(code)
    if code in _TRANSIENT_CODES or (status is not None and status >= 500):
        return ChatTransientError(code)
    # any other ok=false code (invalid_cursor, is_archived, ...) or a bare 4xx
    if code or (status is not None and 400 <= status < 500):
        return ChatRequestError(code or f"HTTP {status}")
    return ChatTransientError(str(err))
