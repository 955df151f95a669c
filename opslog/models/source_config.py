"""Base configuration model for chat sources.

Holds the fields every source shares, so a workspace can be identified in
metrics labels and checkpoint paths.
"""

from pydantic import BaseModel, Field


class BaseSourceConfig(BaseModel):
    """Base configuration class for chat sources."""

    id: str = Field(default="slack-main", description="Source ID used in metrics labels")
