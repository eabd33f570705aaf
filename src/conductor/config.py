"""Conductor configuration using pydantic-settings.

This module defines the ConductorSettings class that reads configuration
from environment variables with the CONDUCTOR_ prefix. Only the GitHub token
and target repository are required; everything else has a default suitable
for a single-host deployment.

Spawn ledger selection:
- database_url set: PostgreSQL ledger (asyncpg)
- otherwise: JSON state file at spawn_state_path
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConductorSettings(BaseSettings):
    """Conductor configuration from environment variables.

    All environment variables are prefixed with CONDUCTOR_
    (e.g., CONDUCTOR_GITHUB_TOKEN). Dict and list fields are read as JSON.

    Required fields:
    - github_token: GitHub API token for labels, comments and issue closing
    - repository: Target repository in "{owner}/{name}" form
    """

    model_config = SettingsConfigDict(
        env_prefix="CONDUCTOR_",
        case_sensitive=False,
    )

    # -------------------------------------------------------------------------
    # GitHub Configuration
    # -------------------------------------------------------------------------
    github_token: str

    # Base URL for GitHub API (supports GitHub Enterprise)
    github_base_url: str = "https://api.github.com"

    # Repository the orchestrator manages, "{owner}/{name}"
    repository: str

    # Per-request timeout and retry budget for GitHub API calls
    github_timeout_seconds: float = 30.0
    github_max_retries: int = 3
    github_backoff_base_seconds: float = 1.0
    github_backoff_max_seconds: float = 60.0

    # -------------------------------------------------------------------------
    # Spawn Ledger Configuration
    # -------------------------------------------------------------------------
    # PostgreSQL connection string; when unset the JSON state file is used
    database_url: Optional[str] = None

    # JSON spawn ledger used when no database is configured
    spawn_state_path: str = "/var/lib/conductor/spawn_state.json"

    # -------------------------------------------------------------------------
    # Agent Assignment
    # -------------------------------------------------------------------------
    # Agent type used when no label or title keyword matches
    default_agent_type: str = "general-purpose"

    # Label name -> agent type, checked in insertion order
    agent_type_labels: Dict[str, str] = {}

    # Title keyword (case-insensitive) -> agent type, checked after labels
    agent_type_keywords: Dict[str, str] = {}

    # Labels that hold an issue in Draft until removed
    hold_labels: List[str] = ["draft", "status:draft"]

    # Branch naming convention for agent branches: "<prefix>/<issue>-<slug>"
    branch_prefix: str = "agent"

    # -------------------------------------------------------------------------
    # Sweep Configuration
    # -------------------------------------------------------------------------
    scan_interval_seconds: int = 30

    # -------------------------------------------------------------------------
    # Server Configuration
    # -------------------------------------------------------------------------
    host: str = "0.0.0.0"
    port: int = 8080

    log_level: str = "INFO"

    # -------------------------------------------------------------------------
    # Validators
    # -------------------------------------------------------------------------
    @field_validator("github_token")
    @classmethod
    def validate_github_token(cls, v: str) -> str:
        """Validate that GitHub token is not empty."""
        if not v or not v.strip():
            raise ValueError("github_token cannot be empty")
        return v

    @field_validator("repository")
    @classmethod
    def validate_repository(cls, v: str) -> str:
        """Validate that repository is in owner/name form."""
        parts = v.strip().split("/")
        if len(parts) != 2 or not all(part.strip() for part in parts):
            raise ValueError("repository must be in the form owner/name")
        return v.strip()

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v: Optional[str]) -> Optional[str]:
        """Validate the database URL scheme when one is configured."""
        if v is None or not v.strip():
            return None
        if not v.startswith(("postgresql://", "postgres://")):
            raise ValueError(
                "database_url must start with postgresql:// or postgres://"
            )
        return v

    @field_validator("spawn_state_path")
    @classmethod
    def validate_spawn_state_path(cls, v: str) -> str:
        """Validate that the spawn state path is absolute."""
        if not Path(v).is_absolute():
            raise ValueError("spawn_state_path must be an absolute path")
        return v

    @field_validator("github_max_retries")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        """Validate that the retry budget is small and non-negative."""
        if not 0 <= v <= 10:
            raise ValueError("github_max_retries must be between 0 and 10")
        return v

    @field_validator("github_timeout_seconds", "github_backoff_base_seconds")
    @classmethod
    def validate_positive_seconds(cls, v: float) -> float:
        """Validate that timeouts and backoff bases are positive."""
        if v <= 0:
            raise ValueError("value must be positive")
        return v

    @field_validator("scan_interval_seconds")
    @classmethod
    def validate_scan_interval(cls, v: int) -> int:
        """Validate that the sweep interval is positive."""
        if v < 1:
            raise ValueError("scan_interval_seconds must be at least 1")
        return v

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is in valid range."""
        if not 1 <= v <= 65535:
            raise ValueError("port must be between 1 and 65535")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize the log level name."""
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level

    @property
    def owner_and_repo(self) -> Tuple[str, str]:
        """Split the configured repository into (owner, name)."""
        owner, name = self.repository.split("/")
        return owner, name


def get_settings() -> ConductorSettings:
    """Create and return ConductorSettings instance.

    Returns:
        ConductorSettings: Configured settings instance.

    Raises:
        pydantic.ValidationError: If required fields are missing or invalid.
    """
    return ConductorSettings()
