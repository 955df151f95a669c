from typing import Callable, List, Optional, Sequence, Union

import pytest

from opslog.models.records import RawMessage, ReplyMessage, ThreadedMessage
from opslog.rag.engine import CompletionClient


class RecordingSleep:
    """Awaitable stand-in for asyncio.sleep that records requested delays."""

    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ScriptedCompletion(CompletionClient):
    """Completion client returning scripted responses; exceptions in the script are raised."""

    def __init__(self, responses: Union[Sequence[object], Callable[[str], object]]):
        self._responses = responses if callable(responses) else list(responses)
        self.prompts: List[str] = []
        self.reconnects = 0

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if callable(self._responses):
            item = self._responses(prompt)
        else:
            item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return str(item)

    async def reconnect(self) -> None:
        self.reconnects += 1


@pytest.fixture
def temp_dir(tmpdir):
    return tmpdir


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def scripted_completion():
    return ScriptedCompletion


@pytest.fixture
def make_message() -> Callable[..., ThreadedMessage]:
    def _make(
        ts: str,
        text: Optional[str] = None,
        replies: Sequence[str] = (),
        author: str = "alice",
    ) -> ThreadedMessage:
        raw = RawMessage(
            ts=ts,
            text=text or f"Database connection timeout on the API server at {ts}",
            user="U1",
            thread_ts=ts if replies else None,
            reply_count=len(replies),
        )
        reply_models = tuple(
            ReplyMessage(ts=f"{ts}{i}", text=body, author="bob", user="U2") for i, body in enumerate(replies)
        )
        return ThreadedMessage(message=raw, author_name=author, replies=reply_models)

    return _make


@pytest.fixture
def mock_config():
    return {
        "slack": {"id": "slack-test", "workspace_url": "https://acme.slack.com"},
        "classifier": {"batch_size": 5, "checkpoint_interval": 2},
        "writer": {"batch_size": 3},
        "search": {"top_n": 3, "context_budget_chars": 500},
        "llm": {
            "model_id": "bedrock/us.anthropic.claude-3-7-sonnet-20250219-v1:0",
            "temperature": 0.2,
            "max_tokens": 800,
        },
        "store": {"backend": "local"},
    }
