from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class DigestPolicy(str, Enum):
    """When the orchestrator emails a run summary after processing an account."""

    NEVER = "never"
    ANY_PROCESSED = "any_processed"
    DRAFTS_CREATED = "drafts_created"


DEFAULT_SUMMARY_SUBJECT_MARKERS = [
    "AI Email Summary",
    "Inbox Summary",
    "AI Gmail Agent Summary",
]


class Config(BaseSettings):
    """
    Application configuration loaded from environment variables and .env file.
    """

    # Relational store
    database_url: str = Field(
        default="sqlite:///./inbox_triage.db",
        alias="DATABASE_URL",
    )

    # Shared secret for cron/job endpoints and the public base URL of this app
    cron_secret: Optional[str] = Field(default=None, alias="CRON_SECRET")
    app_url: Optional[str] = Field(default=None, alias="APP_URL")
    trigger_timeout_seconds: float = Field(
        default=300.0,
        alias="TRIGGER_TIMEOUT_SECONDS",
    )

    # Gmail OAuth
    google_client_id: str = Field(default="", alias="GOOGLE_CLIENT_ID")
    google_client_secret: str = Field(default="", alias="GOOGLE_CLIENT_SECRET")
    gmail_credentials_path: Path = Field(
        default=Path("credentials.json"),
        alias="GMAIL_CREDENTIALS_PATH",
    )
    custom_signature_html: str = Field(default="", alias="CUSTOM_SIGNATURE_HTML")

    # LLM
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    model_name: str = Field(default="gpt-4.1-mini", alias="MODEL_NAME")
    llm_base_url: str = Field(
        default="https://api.openai.com/v1/chat/completions",
        alias="LLM_BASE_URL",
    )
    llm_timeout_seconds: float = Field(default=60.0, alias="LLM_TIMEOUT_SECONDS")

    # Email triage
    default_lookback_days: int = Field(default=14, alias="LOOKBACK_DAYS")
    max_emails_per_run: int = Field(
        default=100,
        alias="MAX_EMAILS_PER_RUN",
    )
    summary_subject_markers: List[str] = Field(
        default_factory=lambda: list(DEFAULT_SUMMARY_SUBJECT_MARKERS),
        alias="SUMMARY_SUBJECT_MARKERS",
    )

    # Digest
    digest_policy: DigestPolicy = Field(
        default=DigestPolicy.DRAFTS_CREATED,
        alias="DIGEST_TRIGGER",
    )
    digest_lookback_hours: int = Field(default=24, alias="DIGEST_LOOKBACK_HOURS")
    digest_recipient: Optional[str] = Field(default=None, alias="DIGEST_RECIPIENT")

    # Schedule defaults for accounts without a settings row
    default_timezone: str = Field(default="America/New_York", alias="DEFAULT_TIMEZONE")
    default_window_start: str = Field(default="07:00", alias="DEFAULT_WINDOW_START")
    default_window_end: str = Field(default="21:00", alias="DEFAULT_WINDOW_END")
    default_interval_minutes: int = Field(
        default=60,
        alias="DEFAULT_INTERVAL_MINUTES",
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_to_file: bool = Field(default=False, alias="LOG_TO_FILE")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


def load_config() -> "Config":
    return Config()
