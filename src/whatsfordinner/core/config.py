from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration using environment variables."""

    # Slack Configuration
    slack_bot_token: str = Field(default="x")
    slack_signing_secret: str = Field(default="x")
    slack_app_token: str = Field(default="your_slack_app_token_here")
    slack_socket_mode: bool = Field(default=True)
    slack_port: int = Field(default=3000)

    # OpenAI Configuration
    openai_api_key: str = Field(default="x")
    openai_base_url: Optional[str] = Field(default=None)
    openai_model: str = Field(default="gpt-4o-mini")

    # Database Configuration
    database_url: str = Field(default="sqlite:///data/whatsfordinner.db")

    # Workflow Configuration
    cuisines: str = Field(default="European,Russian,Italian")
    scheduler_timezone: str = Field(default="UTC")
    daily_start_hour: int = Field(default=15, ge=0, le=23)
    daily_end_hour: int = Field(default=21, ge=0, le=23)
    window_slack_minutes: int = Field(default=5, ge=1, le=59)
    tick_seconds: int = Field(default=60, ge=1)
    volunteer_grace_minutes: int = Field(default=15, ge=1)
    quorum_fraction: float = Field(default=2 / 3, gt=0, le=1)
    default_member_count: int = Field(default=3, ge=1)
    session_idle_minutes: int = Field(default=10, ge=1)
    suggestion_count: int = Field(default=4, ge=1, le=10)

    # Timeouts
    transport_timeout_seconds: float = Field(default=15.0, gt=0)
    llm_timeout_seconds: float = Field(default=30.0, gt=0)

    # Observability
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="text")
    metrics_port: int = Field(default=0, ge=0)

    @field_validator("log_format")
    @classmethod
    def _normalize_log_format(cls, value: str) -> str:
        fmt = (value or "text").strip().lower()
        if fmt not in {"text", "json"}:
            raise ValueError("LOG_FORMAT must be one of: text, json")
        return fmt

    @property
    def cuisine_list(self) -> list[str]:
        return parse_cuisines(self.cuisines)

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


def parse_cuisines(raw: str) -> list[str]:
    """Split a comma separated cuisine list, dropping blanks and duplicates."""
    seen: set[str] = set()
    result: list[str] = []
    for part in (raw or "").split(","):
        name = part.strip()
        if not name or name.lower() in seen:
            continue
        seen.add(name.lower())
        result.append(name)
    return result


settings = Settings()
