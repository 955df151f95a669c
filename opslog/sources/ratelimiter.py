"""Adaptive inter-request delay for Slack history and thread fetches.

This module provides a `DelayController` used by the collector to pace the two
kinds of Slack calls it issues in a loop:

- ``page``: ``conversations.history`` pagination
- ``thread``: ``conversations.replies`` for every message with replies

Intended usage:
    controller = DelayController(base_delays={"page": 0.5, "thread": 0.3})
    await asyncio.sleep(controller.current_delay("thread"))
    # perform API call
    ...
    controller.on_result("thread", Outcome.SUCCESS)
    # on 429:
    controller.on_result("thread", Outcome.RATE_LIMITED)

Algorithm overview:
    - A single limiter hit counter H is shared by all kinds.
    - Backoff on rate limit:
        H is incremented and the delay of the limited kind becomes
        ``base * (1 + H * step)`` (step defaults to 0.5), capped at ``max_delay``.
    - Recovery:
        A successful call while H > 0 decrements H and recomputes the delay of
        that kind. Once H reaches zero every kind is restored to its base delay.

    This is a monotonic up / fast-decay down controller, not a token bucket. It only
    has to prevent runaway request rates after a limit and recover promptly.

Concurrency and scope:
    - One controller belongs to one collection session. Calls are awaited
      sequentially, so state is mutated without locking.
"""

import logging
from enum import Enum
from typing import Dict, Optional

from opslog.metrics.metrics import CURRENT_DELAY, RATE_LIMIT_HITS

logger = logging.getLogger(__name__)

PAGE = "page"
THREAD = "thread"


class Outcome(str, Enum):
    """Result of a paced call as seen by the controller."""

    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"


class _DelayState:
    """Internal per-kind delay state.

    Args:
        base: Delay in seconds applied while no rate limit is outstanding.
    """

    def __init__(self, base: float):
        self.base = max(0.0, float(base))
        self.current = self.base

    def scale(self, hits: int, step: float, max_delay: float) -> None:
        self.current = min(max_delay, self.base * (1.0 + hits * step))

    def restore(self) -> None:
        self.current = self.base


class DelayController:
    """Scales inter-request delays up on rate limits and back down on success.

    Args:
        base_delays: Mapping of kind -> base delay in seconds.
        step: Multiplier increment per outstanding limiter hit.
        max_delay: Upper bound for any scaled delay.
    """

    def __init__(
        self,
        base_delays: Optional[Dict[str, float]] = None,
        step: float = 0.5,
        max_delay: float = 30.0,
    ):
        defaults = {PAGE: 0.5, THREAD: 0.3}
        if base_delays:
            defaults.update(base_delays)
        self._states: Dict[str, _DelayState] = {kind: _DelayState(base) for kind, base in defaults.items()}
        self.step = float(step)
        self.max_delay = float(max_delay)
        self.hits = 0
        self.total_hits = 0

    def _get_state(self, kind: str) -> _DelayState:
        if kind not in self._states:
            self._states[kind] = _DelayState(self._states[PAGE].base if PAGE in self._states else 0.5)
        return self._states[kind]

    def current_delay(self, kind: str) -> float:
        """Return the delay in seconds to wait before the next call of `kind`."""
        return self._get_state(kind).current

    def on_result(self, kind: str, outcome: Outcome) -> None:
        """Feed back the outcome of a call of `kind`.

        Args:
            kind: Request kind (``page`` or ``thread``).
            outcome: Whether the call succeeded or was rate limited.
        """
        state = self._get_state(kind)
        if outcome == Outcome.RATE_LIMITED:
            self.hits += 1
            self.total_hits += 1
            previous = state.current
            state.scale(self.hits, self.step, self.max_delay)
            RATE_LIMIT_HITS.labels(kind=kind).inc()
            logger.info(f"Limiter backoff [{kind}]: delay {previous:.2f}s -> {state.current:.2f}s (hits={self.hits})")
        elif self.hits > 0:
            self.hits -= 1
            if self.hits == 0:
                for other in self._states.values():
                    other.restore()
                logger.debug(f"Limiter recovery: all delays restored to base ({kind} {state.current:.2f}s)")
            else:
                previous = state.current
                state.scale(self.hits, self.step, self.max_delay)
                logger.debug(f"Limiter recovery [{kind}]: delay {previous:.2f}s -> {state.current:.2f}s")
        CURRENT_DELAY.labels(kind=kind).set(state.current)
