"""
Centralized configuration using Pydantic Settings.

All settings are loaded from environment variables with KNOWLEDGEMCP_ prefix.
Example: KNOWLEDGEMCP_LOG_LEVEL=DEBUG
"""

import logging
import re
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """KnowledgeMCP configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="KNOWLEDGEMCP_",
        env_file=".env",
        env_file_encoding="utf-8"
    )

    # Core paths
    project_root: str = "."
    storage_path: Optional[str] = None  # Auto-detect if not set
    db_name: str = "knowledge.db"

    # Default workspace (derived from project_root when not set)
    workspace: Optional[str] = None

    # Server
    log_level: str = "INFO"
    structured_logs: bool = False

    # Result limits
    default_max_results: int = Field(default=50, ge=1)
    max_results_limit: int = Field(default=500, ge=1)

    # Token budgets
    default_token_budget: int = Field(default=8000, ge=1)
    min_token_budget: int = Field(default=100, ge=1)
    max_token_budget: int = Field(default=50000, ge=1)
    data_budget_ratio: float = Field(default=0.3, gt=0.0, le=1.0)  # share of budget for items
    token_safety_margin: float = Field(default=1.3, ge=1.0)
    chars_per_token: int = Field(default=4, ge=1)

    # Relevance scoring
    text_match_weight: float = Field(default=1.0, ge=0.0)
    substring_match_score: float = Field(default=0.75, ge=0.0, le=1.0)
    access_weight: float = Field(default=0.1, ge=0.0)
    recency_weight_default: float = Field(default=0.3, ge=0.0)
    recency_weight_aggressive: float = Field(default=0.6, ge=0.0)
    recency_weight_gentle: float = Field(default=0.15, ge=0.0)
    recency_field: Literal["created", "modified"] = "created"

    # Overflow offload
    overflow_category: str = "search"

    def get_storage_path(self) -> str:
        """
        Determine storage path.

        Priority:
        1. storage_path setting (explicit override via KNOWLEDGEMCP_STORAGE_PATH)
        2. project_root/.knowledgemcp/storage
        """
        if self.storage_path:
            Path(self.storage_path).mkdir(parents=True, exist_ok=True)
            return self.storage_path

        storage = Path(self.project_root).resolve() / ".knowledgemcp" / "storage"
        storage.mkdir(parents=True, exist_ok=True)
        logger.info(f"Using project-specific storage: {storage}")
        return str(storage)

    def get_workspace(self) -> str:
        """Resolve the default workspace name for records written without one."""
        if self.workspace:
            return normalize_workspace(self.workspace)
        return normalize_workspace(Path(self.project_root).resolve().name or "default")


def normalize_workspace(name: str) -> str:
    """Lowercase a workspace name and collapse whitespace into dashes."""
    cleaned = re.sub(r"\s+", "-", name.strip()).lower()
    return cleaned or "default"


# Singleton instance
settings = Settings()
