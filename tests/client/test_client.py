import os
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from typer.testing import CliRunner

from opslog.client.client import app, checkpoint_path_for
from opslog.models.config import OpsLogConfig
from opslog.models.records import ClassificationResult, ClassifiedMessage, RelevanceScoredPage
from opslog.rag.search import SearchResult, SearchState
from opslog.sources.checkpoint import CheckpointStore

runner = CliRunner()


def _missing_config(temp_dir):
    return os.path.join(temp_dir, "missing.yaml")


def test_checkpoint_path_for_channel():
    config = OpsLogConfig()
    assert checkpoint_path_for(config, "#ops/alerts") == Path("data/checkpoints/classification_ops_alerts.json")


def test_report_summarizes_checkpoint(temp_dir, make_message):
    path = os.path.join(temp_dir, "cp.json")
    CheckpointStore(path).save(
        [
            ClassifiedMessage.create(
                make_message("1700000000.0"), ClassificationResult(category="monitoring", is_issue=True)
            ),
            ClassifiedMessage.create(make_message("1700000100.0"), ClassificationResult(category="deployment")),
        ]
    )

    result = runner.invoke(app, ["--config", _missing_config(temp_dir), "report", path])

    assert result.exit_code == 0, result.output
    assert "monitoring" in result.output
    assert "deployment" in result.output


def test_report_without_checkpoint(temp_dir):
    result = runner.invoke(app, ["--config", _missing_config(temp_dir), "report", os.path.join(temp_dir, "none.json")])
    assert result.exit_code == 1
    assert "No checkpoint found" in result.output


def test_analyze_without_token_exits(temp_dir):
    with patch.dict(os.environ, {}, clear=True):
        result = runner.invoke(app, ["--config", _missing_config(temp_dir), "analyze", "ops"])
    assert result.exit_code == 1
    assert "SLACK_BOT_TOKEN" in result.output


def test_invalid_config_exits(temp_dir):
    path = os.path.join(temp_dir, "bad.yaml")
    with open(path, "w") as f:
        f.write("classifier:\n  batch_size: 2\nwriter:\n  batch_size: 4\n")
    result = runner.invoke(app, ["--config", path, "report"])
    assert result.exit_code == 1
    assert "Configuration error" in result.output


@patch("opslog.client.client.SearchService")
@patch("opslog.client.client.build_completion")
@patch("opslog.client.client.build_store")
def test_search_prints_answer(build_store, build_completion, service_cls, temp_dir):
    service = MagicMock()
    service.search = AsyncMock(
        return_value=SearchResult(
            found=True,
            state=SearchState.ANSWER_SYNTHESIZED,
            keywords=["Redis"],
            answer="Raise maxmemory and flush stale keys.",
            sources=[
                RelevanceScoredPage(id="r1", title="Redis OOM", body="", thread_link="https://x/p1", score=12)
            ],
        )
    )
    service_cls.return_value = service

    result = runner.invoke(app, ["--config", _missing_config(temp_dir), "search", "redis memory"])

    assert result.exit_code == 0, result.output
    assert "Raise maxmemory" in result.output
    assert "Redis OOM" in result.output
    service.search.assert_awaited_once_with("redis memory")


@patch("opslog.client.client.SearchService")
@patch("opslog.client.client.build_completion")
@patch("opslog.client.client.build_store")
def test_search_without_results(build_store, build_completion, service_cls, temp_dir):
    service = MagicMock()
    service.search = AsyncMock(
        return_value=SearchResult(found=False, state=SearchState.NO_RESULTS, message="No similar issue found.")
    )
    service_cls.return_value = service

    result = runner.invoke(app, ["--config", _missing_config(temp_dir), "search", "unrelated"])

    assert result.exit_code == 0
    assert "No similar issue found." in result.output
