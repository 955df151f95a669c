"""Slack chat-platform client: channels, history pages, thread replies and users.

This module wraps Slack's ``AsyncWebClient`` and:
- Emits Prometheus metrics for per-call latency/count.
- Retries server errors and unexpected failures with exponential backoff.
- Surfaces rate limits immediately as ``RateLimitedError`` so that the collector's
  delay controller observes every limit signal and decides how to pace.
- Maps Slack error codes onto the opslog error taxonomy.

The design follows Slack rate limiting guidance:
https://docs.slack.dev/apis/web-api/rate-limits/
"""

import asyncio
import logging
from dataclasses import dataclass
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, Final, List, Optional

from pydantic import Field
from slack_sdk.errors import SlackApiError
from slack_sdk.http_retry.builtin_async_handlers import AsyncConnectionErrorRetryHandler
from slack_sdk.web.async_client import AsyncWebClient

from opslog.errors import (
    ChatPlatformError,
    ChatTransientError,
    ConfigurationError,
    RateLimitedError,
    chat_error_from_slack,
)
from opslog.metrics.metrics import API_CALLS, API_LATENCY
from opslog.models.records import RawMessage
from opslog.models.source_config import BaseSourceConfig

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class SlackConfig(BaseSourceConfig):
    """Configuration for the Slack source."""

    workspace_url: str = Field(
        default="https://slack.com", description="Workspace base URL used to build thread permalinks"
    )
    channel_types: List[str] = Field(
        default_factory=lambda: ["public_channel", "private_channel"],
        description="Conversation types searched when resolving a channel name",
    )
    history_page_limit: int = Field(default=200, description="Messages requested per history page")
    page_delay_seconds: float = Field(default=0.5, description="Base delay between history page fetches")
    thread_delay_seconds: float = Field(default=0.3, description="Base delay between thread fetches")
    delay_step: float = Field(default=0.5, description="Delay multiplier increment per outstanding rate-limit hit")
    max_delay_seconds: float = Field(default=30.0, description="Upper bound for scaled delays")
    page_retries: int = Field(default=3, description="Retries for a rate-limited history page")
    api_retries: int = Field(default=3, description="Retries for server errors and unexpected failures")
    request_timeout_seconds: int = Field(default=30, description="Per-request timeout for Slack calls")


@dataclass
class HistoryPage:
    """One page of ``conversations.history``."""

    messages: List[RawMessage]
    next_cursor: Optional[str] = None


@dataclass
class UserProfile:
    """Compact user info used for display-name resolution."""

    id: str
    display_name: str
    is_bot: bool = False
    is_deleted: bool = False
    is_restricted: bool = False


class SlackClient:
    """Thin async Slack client with retries, error mapping and metrics.

    Args:
        config: Slack source configuration.
        token: Bot OAuth token.
        client: Optional pre-built ``AsyncWebClient`` (tests inject mocks here).
        sleep: Awaitable sleep used for retry backoff.
    """

    SLACK_API_LIMIT: Final[int] = 200
    """Max items per API call to Slack"""

    def __init__(
        self,
        config: SlackConfig,
        token: Optional[str] = None,
        client: Optional[AsyncWebClient] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.config = config
        self._sleep = sleep
        if client is not None:
            self.client = client
        else:
            if not token:
                raise ConfigurationError("Slack bot token is not set (SLACK_BOT_TOKEN)")
            # 429s are not retried here: the collector paces itself from them.
            self.client = AsyncWebClient(
                token=token,
                timeout=config.request_timeout_seconds,
                retry_handlers=[AsyncConnectionErrorRetryHandler(max_retry_count=2)],
            )

    async def _api_call(self, method: str, func: Callable[..., Awaitable[Any]], **kwargs: Any) -> Any:
        """Execute a Slack API call with retries, error mapping and metrics.

        Args:
            method: The method name for metrics (e.g., "users.info").
            func: The async API client function to call.
            **kwargs: Arguments to pass to the function.

        Returns:
            The API response.

        Raises:
            RateLimitedError: On HTTP 429, without retrying.
            ChatPlatformError: For client errors, or server errors after retries.
        """
        consecutive_errors = 0
        while True:
            call_start = perf_counter()
            try:
                resp = await func(**kwargs)
                status = str(getattr(resp, "status_code", 200))
                API_CALLS.labels(service="slack", source_id=self.config.id, method=method, status=status).inc()
                API_LATENCY.labels(service="slack", source_id=self.config.id, method=method, status=status).observe(
                    perf_counter() - call_start
                )
                return resp

            except SlackApiError as e:
                status = str(getattr(getattr(e, "response", None), "status_code", 500))
                API_CALLS.labels(service="slack", source_id=self.config.id, method=method, status=status).inc()
                API_LATENCY.labels(service="slack", source_id=self.config.id, method=method, status=status).observe(
                    perf_counter() - call_start
                )
                mapped = chat_error_from_slack(e)
                if isinstance(mapped, RateLimitedError):
                    logger.info(f"429 on {method}, Retry-After={mapped.retry_after}")
                    raise mapped from e
                if not isinstance(mapped, ChatTransientError):
                    logger.debug(f"Client error in {method}: {mapped.message}")
                    raise mapped from e

                consecutive_errors += 1
                if consecutive_errors <= self.config.api_retries:
                    wait_seconds = 2**consecutive_errors
                    logger.warning(
                        f"Server error {status} from Slack API in {method} "
                        f"(attempt {consecutive_errors}/{self.config.api_retries}). Retrying in {wait_seconds}s..."
                    )
                    await self._sleep(wait_seconds)
                    continue
                raise mapped from e

            except ChatPlatformError:
                raise
            except Exception as e:
                logger.error(f"Unexpected error in {method}: {e}")
                consecutive_errors += 1
                if consecutive_errors <= self.config.api_retries:
                    wait_seconds = 2**consecutive_errors
                    logger.warning(
                        f"Retrying {method} after unexpected error "
                        f"(attempt {consecutive_errors}/{self.config.api_retries}) in {wait_seconds}s..."
                    )
                    await self._sleep(wait_seconds)
                    continue
                raise ChatTransientError(f"{method} failed: {e}") from e

    async def list_channels(self, channel_types: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """List conversations of the given types using cursored pagination."""
        types = channel_types or self.config.channel_types
        types_str = ",".join(types)
        channels: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            resp = await self._api_call(
                "conversations.list",
                self.client.conversations_list,
                cursor=cursor,
                limit=SlackClient.SLACK_API_LIMIT,
                types=types_str,
                exclude_archived=True,
            )
            page = resp.get("channels", []) or []
            channels.extend(page)
            logger.debug(f"list_channels: page channels={len(page)}")
            cursor = (resp.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        logger.info(f"list_channels: done items={len(channels)} types={types_str}")
        return channels

    async def fetch_history(self, channel_id: str, oldest: float, cursor: Optional[str] = None) -> HistoryPage:
        """Fetch one history page newer than `oldest`."""
        resp = await self._api_call(
            "conversations.history",
            self.client.conversations_history,
            channel=channel_id,
            oldest=str(oldest),
            limit=self.config.history_page_limit,
            cursor=cursor,
        )
        messages = [RawMessage.from_api(m) for m in resp.get("messages", []) or []]
        next_cursor = (resp.get("response_metadata") or {}).get("next_cursor") or None
        return HistoryPage(messages=messages, next_cursor=next_cursor)

    async def fetch_thread_replies(self, channel_id: str, thread_ts: str) -> List[Dict[str, Any]]:
        """Fetch every message of a thread, root first, in chronological order."""
        replies: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            resp = await self._api_call(
                "conversations.replies",
                self.client.conversations_replies,
                channel=channel_id,
                ts=thread_ts,
                limit=SlackClient.SLACK_API_LIMIT,
                cursor=cursor,
            )
            replies.extend(resp.get("messages", []) or [])
            cursor = (resp.get("response_metadata") or {}).get("next_cursor")
            if not cursor:
                break
        return replies

    async def lookup_user(self, user_id: str) -> UserProfile:
        """Fetch a user's display info through ``users.info``."""
        resp = await self._api_call("users.info", self.client.users_info, user=user_id)
        user: Dict[str, Any] = resp.get("user", {}) or {}
        profile: Dict[str, Any] = user.get("profile", {}) or {}
        display = profile.get("display_name") or user.get("real_name") or profile.get("real_name") or user.get("name")
        return UserProfile(
            id=user_id,
            display_name=display or user_id,
            is_bot=bool(user.get("is_bot")),
            is_deleted=bool(user.get("deleted")),
            is_restricted=bool(user.get("is_restricted")),
        )
