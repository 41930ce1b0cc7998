"""Application configuration with validation."""

from enum import Enum
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

from .exceptions import ErrorCode, ScreenScopeError


class Environment(str, Enum):
    """Application environment."""
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class ConfigurationError(ScreenScopeError):
    """Raised when configuration is unusable for the requested operation."""

    def __init__(self, missing: List[str]):
        super().__init__(
            message=f"Missing configuration: {', '.join(missing)}",
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=503,
            details={"missing": missing},
        )
        self.missing = missing


class Settings(BaseSettings):
    """
    screenscope settings.

    Read from environment variables (case-insensitive) and an optional
    ``.env`` file. Defaults mirror the limits observed on the tracker and
    design tool.
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment (development/production)"
    )

    # Cache
    cache_dir: str = Field(
        default="./cache",
        description="Root directory for per-design-file artifact caches"
    )

    # Spatial association
    max_note_distance: float = Field(
        default=500.0,
        description="Max edge-to-edge distance for a note to attach to a screen"
    )
    row_tolerance: float = Field(
        default=50.0,
        description="Frames whose top edges differ by at most this are in the same row"
    )
    comment_proximity: float = Field(
        default=50.0,
        description="Max edge distance from a canvas comment to the screen it belongs to"
    )

    # Scope decision
    question_threshold: int = Field(
        default=5,
        description="Unanswered questions allowed before asking for clarification"
    )

    # Document size ceiling
    # The tracker rejects descriptions above ~43KB of serialized content.
    description_limit: int = Field(
        default=43838,
        description="Maximum serialized size of the target document"
    )
    size_safety_margin: int = Field(
        default=2000,
        description="Headroom kept below description_limit"
    )

    # Screen analysis
    analysis_max_workers: int = Field(
        default=4,
        description="Concurrent per-screen analysis calls"
    )

    # LLM Configuration
    # LiteLLM model string, e.g. "anthropic/claude-sonnet-4-20250514", "openai/gpt-4o"
    llm_model: str = Field(
        default="openai/gpt-4o",
        description="LiteLLM model used for screen analysis, scope analysis and stories"
    )
    llm_api_key: str = Field(
        default="",
        description="API key for the LLM provider"
    )
    llm_api_base: str = Field(
        default="",
        description="Base URL for the LLM provider (optional, for custom endpoints)"
    )
    llm_timeout: int = Field(
        default=300,
        description="Seconds before an LLM request is abandoned"
    )
    llm_supports_parallel: bool = Field(
        default=True,
        description="False serializes LLM calls through a single queue"
    )
    screen_analysis_max_tokens: int = Field(default=8000)
    scope_analysis_max_tokens: int = Field(default=8000)
    shell_stories_max_tokens: int = Field(default=16000)

    # Design tool
    figma_api_url: str = Field(
        default="https://api.figma.com",
        description="Design tool REST base URL"
    )
    figma_token: str = Field(
        default="",
        description="Personal access token for the design tool"
    )
    figma_image_scale: float = Field(
        default=1.0,
        description="Scale factor for rendered screen images"
    )

    # Issue tracker
    jira_base_url: str = Field(
        default="",
        description="Issue tracker site URL, e.g. https://example.atlassian.net"
    )
    jira_email: str = Field(default="")
    jira_api_token: str = Field(
        default="",
        description="API token paired with jira_email for basic auth"
    )

    # HTTP adapters
    http_timeout: int = Field(
        default=60,
        description="Seconds before a design/tracker HTTP request times out"
    )
    http_max_retries: int = Field(
        default=3,
        description="Attempts for retryable (429/5xx) design/tracker requests"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log output format: 'json' for structured, 'text' for human-readable"
    )

    @property
    def effective_size_limit(self) -> int:
        return self.description_limit - self.size_safety_margin

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v_upper

    @field_validator('log_format')
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v_lower = v.lower()
        if v_lower not in ('json', 'text'):
            raise ValueError("Invalid log format. Must be 'json' or 'text'")
        return v_lower

    def missing_collaborator_settings(self) -> List[str]:
        """Names of env vars the default HTTP adapters need but are unset."""
        missing = []
        if not self.figma_token:
            missing.append("FIGMA_TOKEN")
        if not self.jira_base_url:
            missing.append("JIRA_BASE_URL")
        if not self.jira_api_token:
            missing.append("JIRA_API_TOKEN")
        return missing

    class Config:
        """Pydantic configuration."""
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()
