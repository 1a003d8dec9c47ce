"""Configuration management for campusfeed.

This module provides centralized configuration using Pydantic Settings,
read from environment variables and an optional ``.env`` file.

Environment Profiles:
    - DEVELOPMENT: Verbose logging, human-readable output
    - PRODUCTION: INFO logging, JSON logs, tracing enabled
    - TESTING: Quiet logging, no file output, no tracing
    - STAGING: Production-like with more logging

Example:
    >>> from campusfeed.config import settings, MutationPolicy
    >>> print(settings.api_url)
    http://127.0.0.1:8001
    >>> settings.mutation_policy is MutationPolicy.QUEUE
    True
"""

import os
from enum import StrEnum
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class MutationPolicy(StrEnum):
    """What happens when an action is repeated while its first run is pending.

    Attributes:
        QUEUE: Run the repeat after the pending mutation settles
        COALESCE: Drop the repeat; only the pending mutation takes effect
    """

    QUEUE = "queue"
    COALESCE = "coalesce"


class FeedTermination(StrEnum):
    """Rule used to decide that a paginated feed has no more pages.

    Attributes:
        SHORT_PAGE: A page with fewer items than the page size ends the feed
        EMPTY_PAGE: Only a page with zero items ends the feed
    """

    SHORT_PAGE = "short_page"
    EMPTY_PAGE = "empty_page"


class StoryViewPolicy(StrEnum):
    """When the story viewer reports a view to the server.

    Attributes:
        EVERY_ENTRY: Each time an index is entered, including revisits
        ONCE_PER_STORY: Only the first time a story is shown in a session
    """

    EVERY_ENTRY = "every_entry"
    ONCE_PER_STORY = "once_per_story"


class Environment(StrEnum):
    """Runtime environment with specific behavior profiles."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"
    TESTING = "testing"
    STAGING = "staging"


class Settings(BaseSettings):
    """Application settings with environment variable support.

    Attributes:
        api_url: Base URL of the campus REST backend
        page_size: Number of posts requested per feed page
        request_timeout: Seconds before a read request is abandoned
        mutation_timeout: Seconds before a mutation is treated as failed
        max_retries: Attempts for retryable read failures
        data_dir: Directory for the session file and logs
        mutation_policy: Handling of repeated actions while one is pending
        feed_termination: End-of-feed detection rule
        story_tick_interval: Seconds between story progress ticks
        story_progress_step: Progress percentage added per tick
        story_view_policy: Whether revisiting a story re-records a view
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Runtime environment (development, production, testing, staging)",
    )

    # API Configuration
    api_url: str = Field(
        "http://127.0.0.1:8001",
        description="Base URL of the campus REST backend",
    )
    request_timeout: float = Field(
        15.0,
        gt=0,
        le=120,
        description="Per-request timeout for reads (seconds)",
    )
    mutation_timeout: float = Field(
        10.0,
        gt=0,
        le=120,
        description="Upper bound for a mutation round-trip (seconds)",
    )
    max_retries: int = Field(
        3,
        ge=1,
        le=10,
        description="Attempts for retryable read failures",
    )

    # Data Directory Configuration
    data_dir: Path = Field(
        Path("./data"),
        description="Base directory for the session file and logs",
    )
    session_file: Path = Field(
        Path("session.json"),  # Resolved against data_dir by validator
        description="Where the bearer token and user profile are kept",
    )

    # Feed
    page_size: int = Field(
        10,
        ge=1,
        le=100,
        description="Number of posts per feed page",
    )
    feed_termination: FeedTermination = Field(
        FeedTermination.SHORT_PAGE,
        description="End-of-feed detection rule",
    )
    scroll_threshold: int = Field(
        3,
        ge=0,
        description="Load the next page when this many items remain below the viewport",
    )

    # Mutations
    mutation_policy: MutationPolicy = Field(
        MutationPolicy.QUEUE,
        description="Policy for repeated actions on the same entity",
    )

    # Stories
    story_tick_interval: float = Field(
        0.05,
        gt=0,
        description="Seconds between story progress ticks",
    )
    story_progress_step: int = Field(
        2,
        ge=1,
        le=100,
        description="Progress percentage added on every tick",
    )
    story_view_policy: StoryViewPolicy = Field(
        StoryViewPolicy.EVERY_ENTRY,
        description="Whether revisiting a story records another view",
    )

    # Refresh policies
    group_posts_poll_seconds: float = Field(5.0, ge=0)
    notifications_poll_seconds: float = Field(30.0, ge=0)
    stories_poll_seconds: float = Field(60.0, ge=0)
    suggestions_stale_seconds: float = Field(300.0, ge=0)

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_to_file: bool = Field(
        default=False,
        description="Enable file logging in addition to console",
    )
    log_json: bool = Field(
        default=False,
        description="Output logs in JSON format (recommended for production)",
    )

    # Observability (OpenTelemetry)
    enable_tracing: bool = Field(
        default=False,
        description="Enable OpenTelemetry distributed tracing",
    )
    otlp_endpoint: str | None = Field(
        default=None,
        description="OpenTelemetry OTLP endpoint for traces (e.g., http://localhost:4317)",
    )

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Expand and resolve data directory path."""
        path = Path(v).expanduser().resolve()
        path.mkdir(parents=True, exist_ok=True)
        return path

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """Require an absolute http(s) URL and strip the trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("api_url must start with http:// or https://")
        return v.rstrip("/")

    @model_validator(mode="after")
    def set_session_file_default(self) -> "Settings":
        """Place a relative session_file inside data_dir."""
        if not self.session_file.is_absolute():
            self.session_file = self.data_dir / self.session_file
        return self

    @model_validator(mode="after")
    def apply_environment_profile(self) -> "Settings":
        """Apply environment-specific defaults.

        Profiles:
            - PRODUCTION: INFO logging, JSON logs, tracing enabled
            - DEVELOPMENT: DEBUG logging, human-readable, tracing disabled
            - TESTING: ERROR logging, no file logging, no tracing
            - STAGING: INFO logging, JSON logs, tracing enabled
        """
        if self.environment == Environment.PRODUCTION:
            if self.log_level == "DEBUG":
                self.log_level = "INFO"
            self.log_json = True
            self.enable_tracing = True

        elif self.environment == Environment.DEVELOPMENT:
            self.log_level = "DEBUG"
            self.log_json = False
            self.enable_tracing = False

        elif self.environment == Environment.TESTING:
            self.log_level = "ERROR"
            self.log_to_file = False
            self.log_json = False
            self.enable_tracing = False

        elif self.environment == Environment.STAGING:
            self.log_level = "INFO"
            self.log_json = True
            self.enable_tracing = True

        return self

    @property
    def log_file(self) -> Path:
        """Path of the rotating log file."""
        return self.data_dir / "campusfeed.log"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_testing(self) -> bool:
        """Check if running in testing environment."""
        return self.environment == Environment.TESTING


def get_settings() -> Settings:
    """Build a Settings instance from the current environment.

    ``CAMPUSFEED_ENV_FILE`` points at an alternative dotenv file.
    """
    env_file = os.environ.get("CAMPUSFEED_ENV_FILE")
    if env_file:
        return Settings(_env_file=env_file)  # type: ignore[call-arg]
    return Settings()


# Global settings instance
settings = get_settings()
