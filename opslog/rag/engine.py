"""Single-shot AI completion on top of DSPy's LM client.

The classifier and the search service only need ``complete(prompt) -> str``; prompt
construction and response parsing stay with the caller. ``DSPyCompletionClient``
bounds every call with a timeout and, after a timeout or dropped connection, marks
itself stale so the next call rebuilds the underlying LM first.
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from time import perf_counter
from typing import Any, Optional

import dspy

from opslog.errors import ConfigurationError, StaleConnectionError, TransientExternalError
from opslog.metrics.metrics import API_CALLS, API_LATENCY
from opslog.models.config import CompletionConfig

logger = logging.getLogger(__name__)


class CompletionClient(ABC):
    """Abstract single-request completion endpoint."""

    @abstractmethod
    async def complete(self, prompt: str) -> str:
        """Return the model's text for `prompt`."""

    async def reconnect(self) -> None:
        """Re-establish the underlying connection. No-op by default."""


def configure_lm_environment(config: CompletionConfig) -> None:
    """Check provider credentials for the configured model.

    Bedrock models need either ``AWS_BEARER_TOKEN_BEDROCK`` or ``AWS_PROFILE``.

    Raises:
        ConfigurationError: If the required credentials are missing.
    """
    if not config.model_id.startswith("bedrock/"):
        return
    region = os.getenv("AWS_REGION", "us-east-1")
    os.environ["AWS_REGION"] = region

    if os.getenv("AWS_BEARER_TOKEN_BEDROCK"):
        os.environ.pop("AWS_PROFILE", None)
    else:
        profile = os.getenv("AWS_PROFILE")
        if not profile:
            raise ConfigurationError("Set AWS_BEARER_TOKEN_BEDROCK (bearer) or AWS_PROFILE (profile).")
        os.environ["AWS_PROFILE"] = profile


def _first_text(outputs: Any) -> str:
    if isinstance(outputs, str):
        return outputs
    if not outputs:
        return ""
    first = outputs[0]
    if isinstance(first, dict):
        return str(first.get("text", ""))
    return str(first)


class DSPyCompletionClient(CompletionClient):
    """Completion client backed by ``dspy.LM``."""

    def __init__(self, config: CompletionConfig, lm: Optional[Any] = None):
        self.config = config
        self._lm = lm
        self._stale = False

    def _build_lm(self) -> Any:
        return dspy.LM(
            model=self.config.model_id,
            temperature=self.config.temperature,
            max_tokens=self.config.max_tokens,
            cache=False,
        )

    async def reconnect(self) -> None:
        logger.info(f"Reconnecting completion client ({self.config.model_id})")
        self._lm = self._build_lm()
        self._stale = False

    async def complete(self, prompt: str) -> str:
        """Run one completion.

        Raises:
            StaleConnectionError: On timeout or connection failure; the next call reconnects.
            TransientExternalError: On any other provider failure.
        """
        if self._lm is None or self._stale:
            await self.reconnect()

        call_start = perf_counter()
        status = "ok"
        try:
            outputs = await asyncio.wait_for(self._lm.acall(prompt=prompt), timeout=self.config.timeout_seconds)
            return _first_text(outputs)
        except (asyncio.TimeoutError, ConnectionError) as e:
            status = "stale"
            self._stale = True
            raise StaleConnectionError(f"Completion call failed: {type(e).__name__}: {e}") from e
        except Exception as e:
            status = "error"
            raise TransientExternalError(f"Completion call failed: {e}") from e
        finally:
            API_CALLS.labels(service="llm", source_id=self.config.model_id, method="complete", status=status).inc()
            API_LATENCY.labels(service="llm", source_id=self.config.model_id, method="complete", status=status).observe(
                perf_counter() - call_start
            )
