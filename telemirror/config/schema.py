from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from telemirror.constants import (
    DEFAULT_CHAR_LIMIT,
    DEFAULT_POLL_INTERVAL_S,
    DEFAULT_SESSIONS_ROOT,
    DEFAULT_UPDATE_RATE_S,
)


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    path: str = "~/.telemirror/telemirror.db"


class WatchConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    poll_interval_s: float = Field(default=DEFAULT_POLL_INTERVAL_S, gt=0)
    update_rate_s: float = Field(default=DEFAULT_UPDATE_RATE_S, gt=0)
    sessions_root: str = DEFAULT_SESSIONS_ROOT


class SyncConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    char_limit: int = Field(default=DEFAULT_CHAR_LIMIT, ge=50)
    pacing_delay_ms: int = Field(default=0, ge=0)
    infinite_retry: bool = False


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    max_retries: int = Field(default=3, ge=1)
    max_timeout_s: float = Field(default=15.0, gt=0)
    infinite_base_delay_s: float = Field(default=3.0, gt=0)
    infinite_max_delay_s: float = Field(default=30.0, gt=0)


class TelegramConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    bot_token: Optional[str] = None
    chat_id: Optional[Union[int, str]] = None
    message_thread_id: Optional[int] = None
    parse_mode: Optional[str] = None

    @field_validator("parse_mode")
    @classmethod
    def validate_parse_mode(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if v not in ("Markdown", "MarkdownV2", "HTML"):
            raise ValueError(f"Invalid parse_mode: {v}. Expected Markdown, MarkdownV2 or HTML")
        return v


class TelemirrorConfig(BaseModel):
    model_config = ConfigDict(extra="allow")
    logging: LoggingConfig = LoggingConfig()
    database: DatabaseConfig = DatabaseConfig()
    watch: WatchConfig = WatchConfig()
    sync: SyncConfig = SyncConfig()
    retry: RetryConfig = RetryConfig()
    telegram: TelegramConfig = TelegramConfig()
