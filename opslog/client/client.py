"""CLI client for the opslog application.

Provides commands to analyze a Slack channel into the issue store, search the stored
issues, and summarize a classification checkpoint offline.
"""

import asyncio
import logging
from pathlib import Path
from typing import List, NoReturn, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from opslog.errors import ConfigurationError, DataIntegrityError, NotFoundError, OpsLogError
from opslog.models.config import (
    NOTION_PARENT_PAGE_ID,
    NOTION_TOKEN,
    SLACK_BOT_TOKEN,
    ConfigLoader,
    OpsLogConfig,
    load_secrets,
)
from opslog.pipeline.classifier import BatchClassifier, ClassificationProgress
from opslog.pipeline.orchestrator import BulkAnalysisPipeline, RunReport
from opslog.pipeline.statistics import Statistics, aggregate
from opslog.pipeline.writer import BulkWriter
from opslog.rag.engine import DSPyCompletionClient, configure_lm_environment
from opslog.rag.search import SearchResult, SearchService
from opslog.sources.checkpoint import CheckpointStore
from opslog.sources.collector import MessageCollector
from opslog.sources.slack import SlackClient
from opslog.stores.base import DocumentStore
from opslog.stores.local import LocalDocumentStore
from opslog.stores.notion import NotionDocumentStore

# Configure logging to stay quiet by default, will be adjusted by verbose flag
logging.basicConfig(
    level=logging.WARNING, format="%(message)s", datefmt="[%X]", handlers=[RichHandler(rich_tracebacks=True)]
)

app = typer.Typer(help="opslog - Slack operations log analyzer and issue search")
console = Console()


class State:
    """Application state container."""

    def __init__(self) -> None:
        """Initialize application state."""
        self.config: OpsLogConfig = OpsLogConfig()
        self.verbose: bool = False


state = State()


@app.callback()  # type: ignore[misc]
def main(
    ctx: typer.Context,
    config: str = typer.Option("config/opslog.yaml", "--config", help="Path to configuration file"),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose logging (DEBUG level)"),
) -> None:
    """opslog - Slack operations log analyzer and issue search."""
    state.verbose = verbose

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logging.getLogger("opslog").setLevel(logging.DEBUG)
    else:
        logging.getLogger().setLevel(logging.INFO)
        logging.getLogger("opslog").setLevel(logging.INFO)

    try:
        state.config = ConfigLoader.load(config)
    except ConfigurationError as e:
        _fail(e)


def _fail(error: Exception) -> NoReturn:
    console.print(f"[red]Configuration error: {error}[/red]")
    raise typer.Exit(code=1)


def build_store(config: OpsLogConfig) -> DocumentStore:
    """Create the configured document store, reading Notion secrets from the environment."""
    if config.store.backend == "local":
        return LocalDocumentStore(config.store.local_path)
    required = [NOTION_TOKEN]
    if not config.store.parent_page_id:
        required.append(NOTION_PARENT_PAGE_ID)
    secrets = load_secrets(required)
    return NotionDocumentStore(
        token=secrets[NOTION_TOKEN],
        parent_page_id=config.store.parent_page_id or secrets[NOTION_PARENT_PAGE_ID],
        api_retries=config.store.api_retries,
    )


def build_completion(config: OpsLogConfig) -> DSPyCompletionClient:
    configure_lm_environment(config.llm)
    return DSPyCompletionClient(config.llm)


def checkpoint_path_for(config: OpsLogConfig, channel: str) -> Path:
    """Per-channel checkpoint file next to the configured one."""
    base = Path(config.classifier.checkpoint_path)
    safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in channel.lstrip("#")) or "channel"
    return base.with_name(f"{base.stem}_{safe}{base.suffix or '.json'}")


def render_statistics(stats: Statistics, title: str = "Run Statistics") -> None:
    table = Table(title=title)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Messages", str(stats.total_messages))
    table.add_row("Issues", str(stats.issue_count))
    table.add_row("With threads", f"{stats.messages_with_threads} ({stats.thread_percentage:.1f}%)")
    table.add_row("Replies", str(stats.total_replies))
    table.add_row("Estimated minutes", f"{stats.total_resource_minutes} (avg {stats.average_resource_minutes:.1f})")
    if stats.first_message_at and stats.last_message_at:
        table.add_row("Period", f"{stats.first_message_at:%Y-%m-%d} ~ {stats.last_message_at:%Y-%m-%d}")
    console.print(table)

    cat_table = Table(title="Categories", show_lines=False)
    cat_table.add_column("Category", style="bold green")
    cat_table.add_column("Messages", justify="right")
    cat_table.add_column("%", justify="right")
    cat_table.add_column("Minutes", justify="right")
    for category, count in stats.category_counts.items():
        cat_table.add_row(
            category,
            str(count),
            f"{stats.category_percentage(category):.1f}",
            str(stats.resource_minutes_by_category.get(category, 0)),
        )
    console.print(cat_table)

    if stats.urgency_counts:
        console.print("[bold]Urgency:[/bold] " + ", ".join(f"{k}={v}" for k, v in stats.urgency_counts.items()))
    if stats.keyword_counts:
        console.print("[bold]Top keywords:[/bold] " + ", ".join(f"{k} ({v})" for k, v in stats.top_keywords(10)))
    if stats.resolver_counts:
        top_resolvers: List[str] = [f"{k} ({v})" for k, v in list(stats.resolver_counts.items())[:5]]
        console.print("[bold]Top resolvers:[/bold] " + ", ".join(top_resolvers))


def render_report(report: RunReport) -> None:
    console.print(f"\n[bold]Channel:[/bold] #{report.channel.name} ({report.channel.id})")
    console.print(
        f"[bold]Collected:[/bold] {report.collected}  [bold]Analyzed:[/bold] {report.analyzed}  "
        f"[bold]Fallbacks:[/bold] {report.fallbacks}  [bold]Written:[/bold] {report.written}  "
        f"[bold]Failed writes:[/bold] {len(report.write_failures)}  "
        f"[bold]Success rate:[/bold] {report.success_rate:.0f}%"
    )
    if report.schema is not None:
        console.print(f"[bold]Database:[/bold] {report.schema.url or report.schema.id}")
    if report.collected:
        render_statistics(report.statistics)


@app.command()  # type: ignore[misc]
def analyze(
    channel: str = typer.Argument(..., help="Channel name (exact or partial) or ID"),
    days_back: int = typer.Argument(30, help="How many days of history to analyze"),
    limit: Optional[int] = typer.Argument(None, help="Analyze at most this many messages"),
) -> None:
    """Collect, classify and store a channel's recent history."""
    config = state.config
    try:
        secrets = load_secrets([SLACK_BOT_TOKEN])
        store = build_store(config)
        completion = build_completion(config)
    except ConfigurationError as e:
        _fail(e)

    async def _run(progress: Progress) -> RunReport:
        task_id = progress.add_task("Classifying...", total=None)

        def on_progress(p: ClassificationProgress) -> None:
            progress.update(
                task_id,
                total=p.total,
                completed=p.start_index + p.processed,
                description=f"Classifying ({p.throughput():.1f} msg/min)",
            )

        slack = SlackClient(config.slack, token=secrets[SLACK_BOT_TOKEN])
        pipeline = BulkAnalysisPipeline(
            collector=MessageCollector(slack, config.slack),
            classifier=BatchClassifier(completion, config.classifier, config.taxonomy, on_progress=on_progress),
            writer=BulkWriter(store, config.writer),
            checkpoint_store=CheckpointStore(checkpoint_path_for(config, channel)),
            config=config,
        )
        return await pipeline.run(channel, days_back, limit)

    try:
        with Progress(
            SpinnerColumn(), TextColumn("[progress.description]{task.description}"), BarColumn(), transient=True
        ) as progress:
            report = asyncio.run(_run(progress))
    except ConfigurationError as e:
        _fail(e)
    except NotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    except OpsLogError as e:
        console.print(f"[red]Analysis failed: {e}[/red]")
        if state.verbose:
            logging.exception("Analyze error")
        raise typer.Exit(code=1)

    render_report(report)


def render_search(result: SearchResult, question: str) -> None:
    console.print(f"\n[bold]Question:[/bold] {question}")
    console.print(f"[dim]Keywords: {', '.join(result.keywords) or '-'}[/dim]")
    if not result.found:
        console.print(f"\n[yellow]{result.message}[/yellow]")
        return
    console.print(f"\n[bold]Answer:[/bold]\n{result.answer}")

    table = Table(title="Sources")
    table.add_column("#", style="dim")
    table.add_column("Title", style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Thread", style="blue")
    for i, page in enumerate(result.sources, start=1):
        table.add_row(str(i), page.title or "Untitled", f"{page.score:.0f}", page.thread_link or page.url or "")
    console.print("\n")
    console.print(table)


@app.command()  # type: ignore[misc]
def search(question: str = typer.Argument(..., help="Free-text question about past issues")) -> None:
    """Search stored issues and answer from the best matches."""
    config = state.config
    try:
        service = SearchService(
            build_store(config),
            build_completion(config),
            config.search,
            schema_title_prefix=config.writer.schema_title_prefix,
        )
        with Progress(SpinnerColumn(), TextColumn("[bold green]Searching..."), transient=True) as progress:
            progress.add_task("search", total=None)
            result = asyncio.run(service.search(question))
    except ConfigurationError as e:
        _fail(e)
    except OpsLogError as e:
        console.print(f"[red]Error answering question: {e}[/red]")
        if state.verbose:
            logging.exception("Search error")
        raise typer.Exit(code=1)

    render_search(result, question)


@app.command()  # type: ignore[misc]
def report(
    checkpoint_path: Optional[str] = typer.Argument(None, help="Checkpoint file (default: configured path)"),
    channel: Optional[str] = typer.Option(None, "--channel", help="Use the checkpoint of this channel"),
) -> None:
    """Show statistics for a saved classification checkpoint."""
    if checkpoint_path:
        path = checkpoint_path
    elif channel:
        path = str(checkpoint_path_for(state.config, channel))
    else:
        path = state.config.classifier.checkpoint_path
    store = CheckpointStore(path)
    if not store.exists():
        console.print(f"[yellow]No checkpoint found at {path}.[/yellow]")
        raise typer.Exit(code=1)
    try:
        entries = store.load()
    except DataIntegrityError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1)
    render_statistics(aggregate(entries), title=f"Checkpoint {path}")


if __name__ == "__main__":
    app()
