"""Application configuration with validation."""

from enum import Enum
from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from typing import List


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class ConfigurationError(Exception):
    """Raised when application configuration is invalid for the environment."""
    pass


def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """
    Application settings with validation.

    Every value can be overridden by an environment variable of the same
    name (case-insensitive) or by an entry in ``.env``.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment (development/production)"
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./autoreadme.db",
        description="Database connection URL"
    )
    # Connection pool tuning (PostgreSQL only; ignored for SQLite).
    db_pool_size: int = Field(default=5, description="Number of persistent database connections")
    db_max_overflow: int = Field(default=10, description="Extra connections allowed during traffic bursts")
    db_pool_timeout: int = Field(default=30, description="Seconds to wait for a pooled connection")
    db_pool_recycle: int = Field(default=1800, description="Seconds before a connection is recycled")

    # Webhook Configuration
    # HMAC secret shared with GitHub. Empty means every delivery is rejected.
    github_webhook_secret: str = Field(
        default="",
        description="GitHub webhook secret for HMAC signature verification"
    )

    # Source host (GitHub REST API)
    github_api_base: str = Field(default="https://api.github.com", description="GitHub REST API base URL")
    source_timeout_seconds: int = Field(default=30, description="Timeout for each GitHub API call")
    source_max_retries: int = Field(default=3, description="Attempts for idempotent GitHub reads")

    # Loop prevention
    # Comma-separated markers; a push whose head commit message contains any
    # of them is never admitted. The bot commit message must carry one.
    loop_markers: str = Field(
        default="[skip ci],[autoreadme]",
        description="Commit-message markers that identify bot-authored pushes"
    )
    bot_commit_message: str = Field(
        default="docs: regenerate README [autoreadme] [skip ci]",
        description="Commit message used for README write-back"
    )
    readme_path: str = Field(default="README.md", description="Path of the README written back")

    # Context budget
    # Approximate tokens (chars / 4) of repository payload sent to the model.
    context_budget_tokens: int = Field(
        default=8000,
        ge=1,
        description="Token budget for tree, README, diff and file contents"
    )

    # Generation (LiteLLM model strings)
    # Keys are tried in order: every primary key with generation_model, then
    # every fallback key with fallback_model.
    generation_model: str = Field(
        default="groq/llama-3.3-70b-versatile",
        description="LiteLLM model for README synthesis"
    )
    generation_api_keys: str = Field(default="", description="Comma-separated API keys for generation_model")
    generation_api_base: str = Field(default="", description="Base URL for generation provider (optional)")
    fallback_model: str = Field(
        default="gemini/gemini-1.5-flash",
        description="LiteLLM model used once primary keys are exhausted"
    )
    fallback_api_keys: str = Field(default="", description="Comma-separated API keys for fallback_model")
    generation_max_output_tokens: int = Field(default=8192, description="Max completion tokens for synthesis")
    generation_timeout_seconds: int = Field(default=60, description="Timeout for each LLM call")

    # Optional cheap file-selection pass. Empty model = disabled.
    selection_model: str = Field(default="", description="LiteLLM model for file pre-selection (empty = disabled)")
    selection_api_keys: str = Field(
        default="",
        description="API keys for selection_model (falls back to generation_api_keys if empty)"
    )
    selection_max_files: int = Field(default=12, description="Files kept by the selection pass")

    # Worker / queue
    worker_concurrency: int = Field(default=2, ge=1, description="Parallel pipeline workers")
    worker_poll_interval: float = Field(default=5.0, description="Seconds between empty queue polls")
    job_max_attempts: int = Field(default=3, ge=1, description="Deliveries before a job is dead")
    job_backoff_base_seconds: int = Field(default=30, description="First retry delay")
    job_backoff_max_seconds: int = Field(default=1800, description="Retry delay cap")
    job_lease_seconds: int = Field(
        default=900,
        description="Seconds a claimed job stays invisible before redelivery"
    )

    # Audit Log
    audit_retention_days: int = Field(default=365, description="Days to keep audit entries (0 = keep forever)")
    audit_stale_minutes: int = Field(
        default=60,
        description="Started entries older than this with no terminal entry are closed as abandoned"
    )

    # Stored GitHub tokens (base64-encoded 32-byte AES key)
    token_encryption_key: str = Field(default="", description="AES-256-GCM key for stored GitHub tokens")

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)")
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    def get_loop_markers(self) -> List[str]:
        """Loop-prevention markers as a list."""
        return _split_csv(self.loop_markers)

    def get_generation_api_keys(self) -> List[str]:
        return _split_csv(self.generation_api_keys)

    def get_fallback_api_keys(self) -> List[str]:
        return _split_csv(self.fallback_api_keys)

    def get_selection_api_keys(self) -> List[str]:
        return _split_csv(self.selection_api_keys) or self.get_generation_api_keys()

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    def validate_production_config(self) -> None:
        """Validate configuration for production environment.

        In production, fails startup if security-critical settings are missing.
        In development, returns silently and the caller logs warnings.

        The bot commit message check applies in every environment: without a
        loop marker the service would re-trigger itself on its own commits.

        Raises:
            ConfigurationError: If the configuration is unsafe.
        """
        markers = [m.lower() for m in self.get_loop_markers()]
        message = self.bot_commit_message.lower()
        if not any(marker in message for marker in markers):
            raise ConfigurationError(
                "BOT_COMMIT_MESSAGE must contain one of LOOP_MARKERS "
                f"({self.loop_markers}); otherwise README commits re-trigger generation."
            )

        errors: list[str] = []

        if not self.github_webhook_secret:
            errors.append(
                "GITHUB_WEBHOOK_SECRET is empty. Every webhook delivery will be rejected."
            )

        if not self.get_generation_api_keys() and not self.get_fallback_api_keys():
            errors.append(
                "No generation credentials configured. "
                "Set GENERATION_API_KEYS and/or FALLBACK_API_KEYS."
            )

        if not self.token_encryption_key:
            errors.append(
                "TOKEN_ENCRYPTION_KEY is empty. Generate one: "
                "python -c \"import os,base64;print(base64.b64encode(os.urandom(32)).decode())\""
            )

        if errors:
            if self.environment == Environment.PRODUCTION:
                raise ConfigurationError(
                    "Production configuration is insecure:\n  - " + "\n  - ".join(errors)
                )
            # In development, just return; main.py logs warnings
            return

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Global settings instance
settings = Settings()
