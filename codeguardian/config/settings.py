"""Application settings using Pydantic Settings for environment variable management."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from codeguardian.utils.filters import DEFAULT_PATH_FILTERS

DEFAULT_SYSTEM_MESSAGE = (
    "You are `@codeguardian` (aka `github-actions[bot]`), a senior developer "
    "reviewing pull requests. Provide comments and suggestions only where "
    "something can be improved: correctness, security, performance, data "
    "races, error handling and maintainability. Do not give positive comments "
    "or compliments. If you see no actual code changes, do not comment."
)

DEFAULT_RELEASE_NOTES_PROMPT = (
    "Craft concise release notes for the pull request. Focus on the purpose "
    'and user impact, categorizing changes as "New Feature", "Bug Fix", '
    '"Documentation", "Refactor", "Style", "Test", "Chore", or "Revert". '
    'Provide a bullet-point list, e.g. "- New Feature: Added search '
    'functionality to the UI". Limit your response to 50-100 words and '
    "emphasize features visible to the end-user while omitting code-level "
    "details. If for any reason you can NOT craft release notes for the pull "
    "request, do NOT write anything."
)

DEFAULT_BOT_ICON = (
    '<img src="https://avatars.githubusercontent.com/in/347564?s=41" '
    'alt="codeguardian" width="20" height="20">'
)


class ReviewOptions(BaseModel):
    """Immutable per-run options consumed by the review core.

    Built from ``Settings.review_options()`` so the pipelines never read
    module-level configuration.
    """

    model_config = ConfigDict(frozen=True)

    max_files: int = 150
    path_filters: tuple[str, ...] = DEFAULT_PATH_FILTERS
    review_simple_changes: bool = False
    review_comment_lgtm: bool = False
    disable_review: bool = False
    disable_release_notes: bool = False

    light_token_limit: int = 16000
    heavy_token_limit: int = 32000
    response_token_limit: int = 4000

    system_message: str = DEFAULT_SYSTEM_MESSAGE
    release_notes_prompt: str = DEFAULT_RELEASE_NOTES_PROMPT
    language: str = "en-US"
    bot_name: str = "codeguardian"
    bot_icon: str = DEFAULT_BOT_ICON
    ignore_keyword: str = "@codeguardian: ignore"

    model_concurrency: int = 6
    platform_concurrency: int = 6
    model_timeout_seconds: float = 360.0
    platform_timeout_seconds: float = 30.0
    model_retries: int = 5
    platform_retries: int = 3

    @property
    def unlimited_files(self) -> bool:
        return self.max_files <= 0


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # OpenAI Configuration
    openai_api_key: str | None = Field(
        default=None, description="OpenAI API key for AI models"
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="The url of the OpenAI API interface",
    )
    openai_light_model: str = Field(
        default="gpt-4.1-mini",
        description="Model for simple tasks like summarizing a file diff",
    )
    openai_heavy_model: str = Field(
        default="gpt-4.1", description="Model for complex tasks such as code reviews"
    )
    openai_model_temperature: float = Field(
        default=0.05, description="Temperature for model responses"
    )
    openai_retries: int = Field(
        default=5, description="Retries for model calls on timeouts or errors"
    )
    openai_timeout_ms: int = Field(
        default=360000, description="Timeout for a model call in millis"
    )
    openai_concurrency_limit: int = Field(
        default=6, description="Concurrent in-flight calls to the model provider"
    )

    # Token ceilings used to derive chunk budgets
    light_token_limit: int = Field(default=16000)
    heavy_token_limit: int = Field(default=32000)
    response_token_limit: int = Field(default=4000)

    # GitHub Configuration
    # Note: GitHub Actions doesn't allow env var names starting with GITHUB_
    # so we support GH_* / WEBHOOK_SECRET variants
    github_token: str | None = Field(
        default=None,
        validation_alias="GH_TOKEN",
        description="GitHub token used for API access",
    )
    github_webhook_secret: str | None = Field(
        default=None,
        validation_alias="WEBHOOK_SECRET",
        description="GitHub webhook secret for signature verification",
    )
    github_api_url: str = Field(
        default="https://api.github.com", description="GitHub REST API base URL"
    )
    github_concurrency_limit: int = Field(
        default=6, description="Concurrent in-flight calls to GitHub"
    )
    github_retries: int = Field(default=3, description="Retries for GitHub calls")
    github_timeout_ms: int = Field(
        default=30000, description="Timeout for a GitHub call in millis"
    )

    # Observability
    logfire_token: str | None = Field(
        default=None, description="Pydantic Logfire token for observability"
    )

    # Application Settings
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Application environment"
    )

    # Review Configuration
    bot_name: str = Field(
        default="codeguardian", description="Bot name to display in comments"
    )
    bot_login: str = Field(
        default="codeguardian[bot]",
        description="GitHub login the bot posts as (used to detect its own comments)",
    )
    bot_icon: str = Field(default=DEFAULT_BOT_ICON)
    max_files: int = Field(
        default=150,
        description="Max files to summarize and review; <= 0 means no limit",
    )
    review_simple_changes: bool = Field(
        default=False, description="Review even when the changes are simple"
    )
    review_comment_lgtm: bool = Field(
        default=False, description="Leave comments even if the patch is LGTM"
    )
    path_filters: str | None = Field(
        default=None,
        description="Newline separated glob rules, '!' excludes, last match wins",
    )
    disable_review: bool = Field(
        default=False, description="Only provide the summary and skip the code review"
    )
    disable_release_notes: bool = Field(
        default=False, description="Disable release notes"
    )
    system_message: str = Field(default=DEFAULT_SYSTEM_MESSAGE)
    summarize_release_notes: str = Field(default=DEFAULT_RELEASE_NOTES_PROMPT)
    language: str = Field(default="en-US", description="ISO code for responses")
    ignore_keyword: str = Field(
        default="@codeguardian: ignore",
        description="PR descriptions containing this keyword are not reviewed",
    )
    state_backend: Literal["comment", "database"] = Field(
        default="comment",
        description="Where incremental review state is persisted",
    )
    conversation_token_budget: int = Field(
        default=24000, description="Token budget for a single conversation thread"
    )

    # Server Configuration
    # Use a localhost default to avoid binding to all interfaces.
    host: str = Field(default="127.0.0.1", description="Server host")
    port: int = Field(default=8000, description="Server port")

    # Database Configuration
    database_url: str = Field(
        default="sqlite:///./codeguardian.db",
        description="SQLAlchemy database URL for review state and conversations",
    )

    # Queue Configuration
    redis_url: str | None = Field(default=None, description="Redis URL")
    redis_host: str = Field(default="localhost")
    redis_port: int = Field(default=6379)
    redis_password: str | None = Field(default=None)
    worker_name: str = Field(default="codeguardian-worker")
    worker_job_timeout: int = Field(
        default=1800, description="Seconds a single review job may run"
    )
    worker_with_scheduler: bool = Field(default=False)

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"

    @property
    def path_filter_rules(self) -> tuple[str, ...]:
        """Parsed path filter rules, one per non-empty line."""
        if self.path_filters is None:
            return DEFAULT_PATH_FILTERS
        return tuple(
            line.strip() for line in self.path_filters.splitlines() if line.strip()
        )

    def review_options(self) -> ReviewOptions:
        """Snapshot the settings the review core needs for one run."""
        return ReviewOptions(
            max_files=self.max_files,
            path_filters=self.path_filter_rules,
            review_simple_changes=self.review_simple_changes,
            review_comment_lgtm=self.review_comment_lgtm,
            disable_review=self.disable_review,
            disable_release_notes=self.disable_release_notes,
            light_token_limit=self.light_token_limit,
            heavy_token_limit=self.heavy_token_limit,
            response_token_limit=self.response_token_limit,
            system_message=self.system_message,
            release_notes_prompt=self.summarize_release_notes,
            language=self.language,
            bot_name=self.bot_name,
            bot_icon=self.bot_icon,
            ignore_keyword=self.ignore_keyword,
            model_concurrency=self.openai_concurrency_limit,
            platform_concurrency=self.github_concurrency_limit,
            model_timeout_seconds=self.openai_timeout_ms / 1000,
            platform_timeout_seconds=self.github_timeout_ms / 1000,
            model_retries=self.openai_retries,
            platform_retries=self.github_retries,
        )


# Global settings instance
settings = Settings()

# Validate required secrets in production to avoid silent failures
if settings.is_production:
    missing = []
    if not settings.openai_api_key:
        missing.append("OPENAI_API_KEY")
    if not settings.github_token:
        missing.append("GH_TOKEN")
    if not settings.github_webhook_secret:
        missing.append("WEBHOOK_SECRET")
    if missing:
        raise RuntimeError(
            "Missing required environment variables for production: "
            + ", ".join(missing)
        )
