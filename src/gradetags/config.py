"""
gradetags Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables.
"""

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for gradetags logs.

    Follows XDG Base Directory Specification:
    - Uses $XDG_STATE_HOME/gradetags if XDG_STATE_HOME is set
    - Falls back to $HOME/.local/state/gradetags if not set
    - Returns relative path ./logs if HOME not available (dev/testing)

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "gradetags" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "gradetags" / "logs")

    # Fallback for development/testing environments without HOME
    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Database
    postgres_db: str = "gradetags"
    postgres_user: str = "gradetags"
    postgres_password: str = "gradetags_dev_password"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    db_pool_size: int = 5
    db_pool_max_overflow: int = 5
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct database URL from components (DATABASE_URL wins if set)."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Text generation
    llm_provider: str = "openai"  # openai or anthropic
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5-20250514"
    llm_max_tokens: int = 2000
    llm_temperature: float = 0.2
    llm_timeout_seconds: float = 45.0  # Soft timeout per model call

    # Assignment tag clustering
    tag_quiet_minutes: int = 5
    tag_max_wait_minutes: int = 30
    tag_min_sample_count: int = 5
    tag_top_issues: int = 50
    tag_limit: int = 8
    tag_prompt_version: str = "v1.0"
    tag_language: str = "Traditional Chinese"

    # Dictionary merge
    merge_quiet_minutes: int = 10
    merge_max_wait_minutes: int = 60
    merge_min_labels: int = 4
    merge_max_labels: int = 120
    merge_prompt_version: str = "v1.0"

    # Ability mapping
    ability_tag_limit: int = 60
    ability_min_tags: int = 4
    ability_prompt_version: str = "v1.0"

    # Manual override pins the assignment unless the caller says otherwise
    manual_lock_default: bool = True

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_reload: bool = False

    # Application
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_format: str = "standard"  # standard or json
    log_console_enabled: bool = True
    log_file_enabled: bool = False
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5
    log_to_stdout: bool = True  # Log INFO/DEBUG to stdout
    log_to_stderr: bool = True  # Log WARNING/ERROR/CRITICAL to stderr

    # LLM Logging
    llm_logging_enabled: bool = False  # Enable detailed model interaction logging
    llm_log_prompts: bool = False  # Include full prompt text (can be large)

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())


# Global settings instance
settings = Settings()
