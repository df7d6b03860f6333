"""Configuration management for the WBS orchestrator."""

from pathlib import Path

import yaml  # type: ignore[import-untyped]
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SmartsheetConfig(BaseSettings):
    """Smartsheet API configuration."""

    model_config = SettingsConfigDict(env_prefix="SMARTSHEET_")

    access_token: str = Field(description="Smartsheet API access token")
    portfolio_sheet_id: int = Field(description="Sheet holding one row per portfolio project")
    wbs_parent_folder_id: int = Field(
        description="Folder under which per-project WBS folders are created"
    )
    wbs_template_folder_id: int = Field(description="Folder whose contents are cloned per project")
    main_sheet_name: str = Field(
        default="Work Breakdown Schedule",
        description="Name of the template sheet that becomes the project's WBS sheet",
    )
    webhook_callback_url: str | None = Field(
        default=None,
        description="Public URL Smartsheet posts webhook events to",
    )
    contacts: dict[str, str] = Field(
        default_factory=dict,
        description="Display name (or last name) to email directory for contact columns",
    )


class RetryConfig(BaseSettings):
    """Retry behaviour for remote calls."""

    model_config = SettingsConfigDict(env_prefix="RETRY_")

    max_retries: int = Field(default=3, ge=0, description="Retries after the first attempt")
    base_delay: float = Field(default=1.0, gt=0, description="Delay before the first retry")
    multiplier: float = Field(default=2.0, ge=1, description="Backoff growth per attempt")
    max_delay: float = Field(default=30.0, gt=0, description="Cap on a single delay")
    jitter: float = Field(default=0.0, ge=0, description="Upper bound of random extra delay")


class AppSettings(BaseSettings):
    """Application-level settings."""

    model_config = SettingsConfigDict(env_prefix="WBS_")

    app_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the WBS application, used for back-links",
    )
    database_path: Path = Field(
        default=Path(".wbs-orchestrator.db"),
        description="Path to the SQLite cache database",
    )
    auto_project_codes: bool = Field(
        default=False,
        description="Generate P-#### codes for portfolio rows without a code",
    )
    default_actor: str = Field(default="system", description="Actor recorded in audit entries")


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    smartsheet: SmartsheetConfig = Field(default_factory=SmartsheetConfig)  # type: ignore[arg-type]
    retry: RetryConfig = Field(default_factory=RetryConfig)
    app: AppSettings = Field(default_factory=AppSettings)

    @classmethod
    def from_yaml(cls, path: Path) -> "AppConfig":
        """Load configuration from a YAML file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load application configuration from environment and optional YAML file."""
    if config_path:
        return AppConfig.from_yaml(config_path)
    return AppConfig()
