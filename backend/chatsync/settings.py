"""Settings for the chatsync client engine."""

from __future__ import annotations

from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_field(default, *env_names: str):
    if env_names:
        alias = AliasChoices(*env_names) if len(env_names) > 1 else env_names[0]
        return Field(default=default, validation_alias=alias)
    return Field(default=default)


class Settings(BaseSettings):
    # Side channel (request/response) and duplex channel endpoints
    api_base_url: str = _env_field("http://localhost:3000/api/chat", "CHAT_API_BASE_URL")
    socket_url: str = _env_field("http://localhost:3000", "CHAT_SOCKET_URL")
    socket_path: str = _env_field("socket.io", "CHAT_SOCKET_PATH")
    socket_namespace: str = _env_field("/", "CHAT_SOCKET_NAMESPACE")
    auth_token: Optional[str] = _env_field(None, "CHAT_AUTH_TOKEN")

    # Reconnection policy: delay = base * 2^(attempt-1), capped
    reconnect_base_delay_ms: int = _env_field(1000, "CHAT_RECONNECT_BASE_MS")
    reconnect_max_delay_ms: int = _env_field(30000, "CHAT_RECONNECT_MAX_MS")
    reconnect_max_attempts: int = _env_field(5, "CHAT_RECONNECT_MAX_ATTEMPTS")
    heartbeat_interval_seconds: float = _env_field(30.0, "CHAT_HEARTBEAT_SECONDS")

    # Presence
    typing_debounce_seconds: float = _env_field(2.0, "CHAT_TYPING_DEBOUNCE_SECONDS")
    # Remote typing entries are dropped after this long without a refresh even
    # when the stop event never arrives.
    typing_ttl_seconds: float = _env_field(6.0, "CHAT_TYPING_TTL_SECONDS")

    # 0 disables the per-message acknowledgement timeout.
    ack_timeout_seconds: float = _env_field(30.0, "CHAT_ACK_TIMEOUT_SECONDS")
    history_page_size: int = _env_field(50, "CHAT_HISTORY_PAGE_SIZE")
    http_timeout_seconds: float = _env_field(10.0, "CHAT_HTTP_TIMEOUT_SECONDS")
    max_attachments: int = _env_field(5, "CHAT_MAX_ATTACHMENTS")
    max_attachment_bytes: int = _env_field(10 * 1024 * 1024, "CHAT_MAX_ATTACHMENT_BYTES")

    environment: str = _env_field("production", "ENV", "APP_ENV", "ENVIRONMENT")
    service_name: str = _env_field("chatsync", "SERVICE_NAME")
    obs_enabled: bool = _env_field(True, "OBS_ENABLED")
    obs_log_level: str = _env_field("INFO", "LOG_LEVEL")
    obs_log_sampling_rate_info: float = _env_field(1.0, "LOG_SAMPLING_RATE_INFO")

    def is_prod(self) -> bool:
        return self.environment.lower() in ("prod", "production", "live")

    def is_dev(self) -> bool:
        return self.environment.lower() in ("dev", "development")

    @property
    def reconnect_base_delay(self) -> float:
        return self.reconnect_base_delay_ms / 1000.0

    @property
    def reconnect_max_delay(self) -> float:
        return self.reconnect_max_delay_ms / 1000.0

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("obs_log_level", mode="before")
    def _normalise_level(cls, value):  # type: ignore[override]
        if value in (None, ""):
            return "INFO"
        return str(value).upper()

    @field_validator("reconnect_max_attempts", "history_page_size", "max_attachments")
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


settings = Settings()
