"""Thread-aware Slack message collection.

Collection of one channel runs in three steps:

1. Resolve the channel selector against ``conversations.list`` (exact name first,
   then substring).
2. Page ``conversations.history`` from ``now - days_back`` until no cursor is left,
   pacing every page with the session's ``DelayController``.
3. Filter and sort the messages, then expand every message that has replies into a
   ``ThreadedMessage`` through ``conversations.replies``.

Per-run mutable state (display-name cache, delay controller, counters) lives on a
``CollectionSession`` so that two collections never share it.
"""

import asyncio
import logging
import re
import time
import unicodedata
from dataclasses import dataclass, field
from time import perf_counter
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from opslog.errors import NotFoundError, PermanentRequestError, RateLimitedError, TransientExternalError
from opslog.metrics.metrics import OP_ITEMS, OP_LATENCY, USER_CACHE_HITS, USER_CACHE_MISSES
from opslog.models.records import ChannelHandle, RawMessage, ReplyMessage, ThreadedMessage
from opslog.sources.ratelimiter import PAGE, THREAD, DelayController, Outcome
from opslog.sources.slack import SlackClient, SlackConfig, SleepFn

logger = logging.getLogger(__name__)

MIN_MESSAGE_LENGTH = 15
MIN_REPLY_LENGTH = 5
SECONDS_PER_DAY = 86400

_INTERJECTION_RE = re.compile(r"^[ㅋㅎㅠㅜ\s]+$")
_SHORTCODE_RE = re.compile(r"^:[a-z0-9_+'-]+:")
_EMOJI_JOINERS = ("\ufe0f", "\u200d")


def _is_emoji(ch: str) -> bool:
    return unicodedata.category(ch) == "So" or 0x1F000 <= ord(ch) <= 0x1FAFF or ch in _EMOJI_JOINERS


def strip_leading_emoji(text: str) -> str:
    """Remove leading emoji and ``:shortcode:`` reactions from `text`."""
    rest = text.lstrip()
    while rest:
        match = _SHORTCODE_RE.match(rest)
        if match:
            rest = rest[match.end() :].lstrip()
        elif _is_emoji(rest[0]):
            rest = rest[1:].lstrip()
        else:
            break
    return rest


def is_substantive_message(message: RawMessage) -> bool:
    """Whether a history message is worth classifying.

    Drops empty and bot-authored messages, anything of 15 characters or less,
    messages that open with a raw mention, emoji-only reactions and laugh/cry-only
    text. An emoji in front of real content is kept.
    """
    text = message.text
    if not text or not text.strip():
        return False
    if message.is_automated:
        return False
    if len(text) <= MIN_MESSAGE_LENGTH:
        return False
    if text.startswith("<@"):
        return False
    if len(strip_leading_emoji(text)) <= MIN_REPLY_LENGTH:
        return False
    if _INTERJECTION_RE.match(text):
        return False
    return True


def filter_messages(messages: Iterable[RawMessage]) -> List[RawMessage]:
    """Keep substantive messages, sorted by timestamp ascending."""
    kept = [m for m in messages if is_substantive_message(m)]
    return sorted(kept, key=lambda m: m.ts_float)


def is_substantive_reply(reply: RawMessage) -> bool:
    text = (reply.text or "").strip()
    return bool(text) and not reply.is_automated and len(text) > MIN_REPLY_LENGTH


@dataclass
class CollectionSession:
    """Mutable state of one collection run."""

    controller: DelayController
    user_names: Dict[str, str] = field(default_factory=dict)
    pages_fetched: int = 0
    threads_fetched: int = 0
    thread_failures: int = 0
    history_truncated: bool = False

    @classmethod
    def from_config(cls, config: SlackConfig) -> "CollectionSession":
        controller = DelayController(
            base_delays={PAGE: config.page_delay_seconds, THREAD: config.thread_delay_seconds},
            step=config.delay_step,
            max_delay=config.max_delay_seconds,
        )
        return cls(controller=controller)


class MessageCollector:
    """Collects a channel's recent history with thread replies attached.

    Args:
        client: Slack client.
        config: Slack source configuration (delays, retries).
        sleep: Awaitable sleep used for pacing.
        clock: Returns the current unix time; used for the lower time bound.
    """

    def __init__(
        self,
        client: SlackClient,
        config: SlackConfig,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.config = config
        self._sleep = sleep
        self._clock = clock

    async def collect(
        self, channel_selector: str, days_back: int, session: Optional[CollectionSession] = None
    ) -> Tuple[ChannelHandle, List[ThreadedMessage]]:
        """Collect `days_back` days of a channel as chronologically ordered threads.

        Raises:
            NotFoundError: If no channel matches `channel_selector`.
        """
        session = session or CollectionSession.from_config(self.config)
        op_start = perf_counter()

        channel = await self.resolve_channel(channel_selector)
        oldest = self._clock() - days_back * SECONDS_PER_DAY
        logger.info(f"Collecting #{channel.name} ({channel.id}) for the last {days_back} days")

        raw = await self._fetch_history(channel.id, oldest, session)
        messages = filter_messages(raw)
        logger.info(
            f"Collected {len(raw)} messages in {session.pages_fetched} pages, {len(messages)} kept after filtering"
        )

        threaded: List[ThreadedMessage] = []
        for message in messages:
            threaded.append(await self._expand(channel.id, message, session))

        with_threads = sum(1 for m in threaded if m.has_thread)
        logger.info(
            f"Thread expansion done: {with_threads} threads, {session.thread_failures} failed, "
            f"{session.controller.total_hits} rate-limit hits"
        )
        OP_LATENCY.labels(stage="collect", operation="collect").observe(perf_counter() - op_start)
        OP_ITEMS.labels(stage="collect", operation="collect").observe(len(threaded))
        return channel, threaded

    async def resolve_channel(self, channel_selector: str) -> ChannelHandle:
        selector = channel_selector.strip().lstrip("#")
        channels = await self.client.list_channels()
        for ch in channels:
            if ch.get("name") == selector or ch.get("id") == selector:
                return ChannelHandle(id=ch["id"], name=ch.get("name", ch["id"]))
        for ch in channels:
            if selector and selector in (ch.get("name") or ""):
                return ChannelHandle(id=ch["id"], name=ch["name"])
        raise NotFoundError(f"Channel not found: {channel_selector}")

    async def _fetch_history(self, channel_id: str, oldest: float, session: CollectionSession) -> List[RawMessage]:
        controller = session.controller
        messages: List[RawMessage] = []
        cursor: Optional[str] = None
        while True:
            attempts = 0
            while True:
                try:
                    page = await self.client.fetch_history(channel_id, oldest, cursor)
                    controller.on_result(PAGE, Outcome.SUCCESS)
                    break
                except RateLimitedError as e:
                    controller.on_result(PAGE, Outcome.RATE_LIMITED)
                    attempts += 1
                    if attempts > self.config.page_retries:
                        logger.error(
                            f"History of {channel_id} interrupted after {attempts} rate-limited attempts; "
                            f"keeping {len(messages)} messages"
                        )
                        session.history_truncated = True
                        return messages
                    await self._sleep(max(controller.current_delay(PAGE), e.retry_after or 0.0))

            session.pages_fetched += 1
            messages.extend(page.messages)
            logger.debug(f"Page {session.pages_fetched}: {len(page.messages)} messages (total {len(messages)})")
            cursor = page.next_cursor
            if not cursor:
                return messages
            await self._sleep(controller.current_delay(PAGE))

    async def _expand(self, channel_id: str, message: RawMessage, session: CollectionSession) -> ThreadedMessage:
        author = await self._display_name(message.user, session) if message.user else "unknown"
        replies: Tuple[ReplyMessage, ...] = ()
        if message.thread_ts and message.reply_count > 0:
            replies = await self._fetch_replies(channel_id, message, session)
        return ThreadedMessage(message=message, author_name=author, replies=replies)

    async def _fetch_replies(
        self, channel_id: str, message: RawMessage, session: CollectionSession
    ) -> Tuple[ReplyMessage, ...]:
        controller = session.controller
        thread_ts = message.thread_ts or message.ts
        await self._sleep(controller.current_delay(THREAD))
        try:
            payloads = await self.client.fetch_thread_replies(channel_id, thread_ts)
            controller.on_result(THREAD, Outcome.SUCCESS)
        except RateLimitedError as e:
            controller.on_result(THREAD, Outcome.RATE_LIMITED)
            await self._sleep(max(controller.current_delay(THREAD), e.retry_after or 0.0))
            try:
                payloads = await self.client.fetch_thread_replies(channel_id, thread_ts)
                controller.on_result(THREAD, Outcome.SUCCESS)
            except (TransientExternalError, PermanentRequestError) as retry_err:
                if isinstance(retry_err, RateLimitedError):
                    controller.on_result(THREAD, Outcome.RATE_LIMITED)
                logger.warning(f"Thread {thread_ts} skipped after retry: {retry_err}")
                session.thread_failures += 1
                return ()
        except (TransientExternalError, PermanentRequestError) as e:
            logger.warning(f"Thread {thread_ts} skipped: {e}")
            session.thread_failures += 1
            return ()

        session.threads_fetched += 1
        # first element echoes the root message
        candidates = [RawMessage.from_api(p) for p in payloads[1:]]
        replies: List[ReplyMessage] = []
        for reply in candidates:
            if not is_substantive_reply(reply):
                continue
            author = await self._display_name(reply.user, session) if reply.user else "unknown"
            replies.append(ReplyMessage(ts=reply.ts, text=reply.text, author=author, user=reply.user))
        logger.debug(f"Thread {thread_ts}: {len(replies)} of {len(candidates)} replies kept")
        return tuple(replies)

    async def _display_name(self, user_id: str, session: CollectionSession) -> str:
        cached = session.user_names.get(user_id)
        if cached is not None:
            USER_CACHE_HITS.inc()
            return cached
        USER_CACHE_MISSES.inc()
        try:
            profile = await self.client.lookup_user(user_id)
            name = profile.display_name
        except (TransientExternalError, PermanentRequestError) as e:
            logger.warning(f"User lookup failed for {user_id}: {e}")
            name = f"{user_id} (lookup failed)"
        session.user_names[user_id] = name
        return name
