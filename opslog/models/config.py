"""Configuration models for the opslog application.

This module defines the configuration structure for every pipeline stage, the YAML
loader and the environment-provided secrets.
"""

import os
from pathlib import Path
from typing import Dict, Iterable, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

from opslog.errors import ConfigurationError
from opslog.models.records import CategoryTaxonomy
from opslog.sources.slack import SlackConfig

SLACK_BOT_TOKEN = "SLACK_BOT_TOKEN"
NOTION_TOKEN = "NOTION_TOKEN"
NOTION_PARENT_PAGE_ID = "NOTION_PARENT_PAGE_ID"


class ClassifierConfig(BaseModel):
    """Configuration for the checkpointed batch classifier."""

    batch_size: int = Field(default=5, ge=1, description="Messages per classification batch")
    max_retries: int = Field(default=3, ge=0, description="Retries per message after the first attempt")
    retry_base_delay_seconds: float = Field(default=1.0, description="Linear backoff unit: attempt * base")
    delay_between_requests_seconds: float = Field(default=1.0, description="Pause after every message")
    delay_between_batches_seconds: float = Field(default=2.0, description="Pause after every batch")
    checkpoint_interval: int = Field(default=10, ge=1, description="Write the checkpoint every N batches")
    resume: bool = Field(default=True, description="Resume from an existing checkpoint")
    checkpoint_path: str = Field(default="data/checkpoints/classification.json", description="Checkpoint file")


class WriterConfig(BaseModel):
    """Configuration for the bulk persistence writer."""

    batch_size: int = Field(default=3, ge=1, description="Rows per write batch")
    delay_between_writes_seconds: float = Field(default=0.5, description="Pause after every row write")
    delay_between_batches_seconds: float = Field(default=1.0, description="Pause after every write batch")
    schema_title_prefix: str = Field(default="Ops issues", description="Prefix of created schema titles")


class SearchConfig(BaseModel):
    """Configuration for the retrieval-augmented search service."""

    candidate_limit: int = Field(default=10, ge=1, description="Records fetched from the store per query")
    top_n: int = Field(default=5, ge=1, description="Records included in the answer context")
    context_budget_chars: int = Field(default=3000, ge=1, description="Maximum context length in characters")
    max_keywords: int = Field(default=10, ge=1, description="Keywords sent to the store filter")
    issues_only: bool = Field(default=True, description="Restrict candidates to rows flagged as issues")
    include_page_content: bool = Field(default=True, description="Append each candidate's page content to its body")
    database_id: Optional[str] = Field(default=None, description="Schema to search; latest schema when unset")


class CompletionConfig(BaseModel):
    """Configuration for the AI completion endpoint."""

    model_id: str = "bedrock/us.anthropic.claude-3-7-sonnet-20250219-v1:0"
    temperature: float = 0.2
    max_tokens: int = 1200
    timeout_seconds: float = 60.0


class StoreConfig(BaseModel):
    """Configuration for the destination document store."""

    backend: Literal["notion", "local"] = "notion"
    parent_page_id: Optional[str] = Field(default=None, description="Notion page that holds created databases")
    local_path: str = Field(default="data/opslog_store.json", description="File used by the local backend")
    api_retries: int = Field(default=3, description="Retries for store rate limits and server errors")


class OpsLogConfig(BaseModel):
    """Main configuration for the opslog application."""

    slack: SlackConfig = Field(default_factory=SlackConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    writer: WriterConfig = Field(default_factory=WriterConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    llm: CompletionConfig = Field(default_factory=CompletionConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    taxonomy: CategoryTaxonomy = Field(default_factory=CategoryTaxonomy)

    @model_validator(mode="after")
    def _check_batch_sizes(self) -> "OpsLogConfig":
        if self.writer.batch_size >= self.classifier.batch_size:
            raise ValueError(
                f"writer.batch_size ({self.writer.batch_size}) must be smaller than "
                f"classifier.batch_size ({self.classifier.batch_size})"
            )
        return self


class ConfigLoader:
    """Utility class for loading configuration from YAML files."""

    @staticmethod
    def load(path: str) -> OpsLogConfig:
        """Load configuration from a YAML file.

        Args:
            path: Path to the YAML configuration file.

        Returns:
            OpsLogConfig: Loaded configuration object, defaults when the file is absent.

        Raises:
            ConfigurationError: If the file cannot be parsed or validated.
        """
        p = Path(path)
        if not p.exists():
            return OpsLogConfig()

        try:
            with open(p, "r", encoding="utf-8") as f:
                raw_data = yaml.safe_load(f) or {}
            return OpsLogConfig(**raw_data)
        except (yaml.YAMLError, ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid configuration in {path}: {e}") from e


def load_secrets(required: Iterable[str], env_file: Optional[str] = ".env") -> Dict[str, str]:
    """Read secrets from the environment, loading `env_file` first when present.

    Raises:
        ConfigurationError: Naming every required variable that is unset.
    """
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)
    names = list(required)
    missing = [name for name in names if not os.getenv(name)]
    if missing:
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")
    return {name: os.environ[name] for name in names}
