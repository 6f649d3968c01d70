"""Application configuration loaded from environment variables."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SECRET_KEY = "change-me-in-production"


class Settings(BaseSettings):
    """Collection sync process settings.

    Per-repository sync settings (provider, repository, token, branch) are not
    configured here; they are stored in the database and resolved per
    workspace by ``settings_service``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    secret_key: str = DEFAULT_SECRET_KEY
    debug: bool = False
    expose_docs: bool = False

    # Database
    database_url: str = "sqlite+aiosqlite:///data/db/collection-sync.db"

    # Server
    host: str = "127.0.0.1"
    port: int = Field(default=8000, ge=1, le=65535)

    # Git hosts
    github_api_url: str = "https://api.github.com"
    gitlab_api_url: str = "https://gitlab.com/api/v4"
    http_timeout_seconds: float = Field(default=30.0, gt=0)

    # Sync
    remote_collections_path: str = "collections"
    sync_log_max_entries: int = Field(default=200, ge=1)
    auto_sync_on_startup: bool = True

    def validate_runtime_security(self) -> None:
        """Validate security-critical production settings."""
        if self.debug:
            return

        if self.secret_key == DEFAULT_SECRET_KEY or len(self.secret_key) < 32:
            msg = (
                "Insecure production configuration: SECRET_KEY must be overridden "
                "with a high-entropy value (>=32 chars)"
            )
            raise ValueError(msg)
