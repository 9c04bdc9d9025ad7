"""Environment-driven settings for mailsync."""

from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Process-wide runtime settings."""

    model_config = SettingsConfigDict(extra="ignore")

    env: Literal["development", "production", "testing"] = Field(default="development", alias="APP_ENV")
    debug: bool = Field(default=False, alias="APP_DEBUG")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(default="json", alias="LOG_FORMAT")


class SyncConfig(BaseSettings):
    """Mailbox synchronization policy."""

    model_config = SettingsConfigDict(extra="ignore")

    mailbox: str = Field(default="INBOX", alias="SYNC_MAILBOX")
    backfill_days: int = Field(default=30, ge=1, alias="SYNC_BACKFILL_DAYS")
    reconnect_base_delay: float = Field(default=30.0, ge=0, alias="SYNC_RECONNECT_BASE_DELAY")
    reconnect_max_delay: float = Field(default=300.0, ge=0, alias="SYNC_RECONNECT_MAX_DELAY")
    max_reconnect_attempts: int = Field(default=5, ge=0, alias="SYNC_MAX_RECONNECT_ATTEMPTS")
    connect_timeout: float = Field(default=30.0, gt=0, alias="SYNC_CONNECT_TIMEOUT")
    # IMAP servers drop IDLE after ~30 minutes, re-issue well before that
    idle_timeout: float = Field(default=300.0, gt=0, alias="SYNC_IDLE_TIMEOUT")
    account_queue_size: int = Field(default=100, ge=1, alias="SYNC_ACCOUNT_QUEUE_SIZE")
    event_queue_size: int = Field(default=1000, ge=1, alias="SYNC_EVENT_QUEUE_SIZE")


class SecurityConfig(BaseSettings):
    """Credential encryption configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    encryption_key: SecretStr = Field(default=SecretStr(""), alias="EMAIL_ENCRYPTION_KEY")


class RedisConfig(BaseSettings):
    """Redis configuration (account store)."""

    model_config = SettingsConfigDict(extra="ignore")

    url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")
    account_prefix: str = Field(default="account:", alias="REDIS_ACCOUNT_PREFIX")


class ElasticsearchConfig(BaseSettings):
    """Elasticsearch configuration (message index)."""

    model_config = SettingsConfigDict(extra="ignore")

    node: str = Field(default="http://localhost:9200", alias="ELASTICSEARCH_NODE")
    index: str = Field(default="emails", alias="ELASTICSEARCH_INDEX")
    timeout_seconds: float = Field(default=10.0, alias="ELASTICSEARCH_TIMEOUT")
    max_retries: int = Field(default=3, ge=1, alias="ELASTICSEARCH_MAX_RETRIES")
    retry_wait_seconds: float = Field(default=1.0, ge=0, alias="ELASTICSEARCH_RETRY_WAIT")


class ClassifierConfig(BaseSettings):
    """Email classification (OpenAI-compatible chat completions)."""

    model_config = SettingsConfigDict(extra="ignore")

    api_base_url: str = Field(default="https://api.openai.com/v1", alias="CLASSIFIER_API_BASE_URL")
    api_key: SecretStr = Field(default=SecretStr(""), alias="OPENAI_API_KEY")
    model: str = Field(default="gpt-4o-mini", alias="OPENAI_MODEL")
    timeout_seconds: float = Field(default=15.0, gt=0, alias="CLASSIFIER_TIMEOUT")
    body_preview_chars: int = Field(default=1000, alias="CLASSIFIER_BODY_PREVIEW_CHARS")
    high_value_category: str = Field(default="interested", alias="HIGH_VALUE_CATEGORY")


class SlackConfig(BaseSettings):
    """Slack notification configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    bot_token: SecretStr = Field(default=SecretStr(""), alias="SLACK_BOT_TOKEN")
    channel_id: str = Field(default="", alias="SLACK_CHANNEL_ID")
    api_base_url: str = Field(default="https://slack.com/api", alias="SLACK_API_BASE_URL")
    timeout_seconds: float = Field(default=10.0, alias="SLACK_TIMEOUT")


class WebhookConfig(BaseSettings):
    """Outbound webhook configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    url: str = Field(default="", alias="WEBHOOK_URL")
    timeout_seconds: float = Field(default=10.0, alias="WEBHOOK_TIMEOUT")


class AdminConfig(BaseSettings):
    """Control API configuration."""

    model_config = SettingsConfigDict(extra="ignore")

    api_key: SecretStr = Field(alias="ADMIN_API_KEY")
    port: int = Field(default=8080, alias="ADMIN_PORT")
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        alias="ADMIN_CORS_ORIGINS",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_origins(cls, v: str | list[str]) -> list[str]:
        """Accept a comma-separated string as well as a list."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v


class Settings(BaseSettings):
    """All configuration sections, read once at import."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app: AppConfig = Field(default_factory=AppConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    elasticsearch: ElasticsearchConfig = Field(default_factory=ElasticsearchConfig)
    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    slack: SlackConfig = Field(default_factory=SlackConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    admin: AdminConfig = Field(default_factory=AdminConfig)


settings = Settings()
