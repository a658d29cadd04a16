import uuid
from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Literal

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from huddle.rooms.constants import RoomLimits, RoomTimings


class Settings(BaseSettings):
    """Sidecar settings loaded from environment variables and ``.env``."""

    app_name: str = Field(default="Huddle Presence", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", env="LOG_LEVEL", description="Level of the huddle loggers"
    )

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1",
        ],
        env="CORS_ORIGINS",
        description="Origins of the desktop shell allowed to call the sidecar",
    )

    presence_store_backend: Literal["memory", "redis"] = Field(
        default="memory",
        env="PRESENCE_STORE_BACKEND",
        description="Presence store implementation: in-process memory or shared Redis",
    )
    presence_redis_url: str = Field(
        default="redis://localhost:6379/0",
        env="PRESENCE_REDIS_URL",
        description="Redis connection URL used by the redis presence store",
    )
    presence_namespace: str = Field(
        default="huddle.presence",
        env="PRESENCE_NAMESPACE",
        description="Key and channel prefix for presence data in Redis",
    )
    presence_client_id: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        env="PRESENCE_CLIENT_ID",
        description="Identifier of this client connection in the presence store",
    )
    presence_heartbeat_interval_seconds: float = Field(
        default=5.0,
        env="PRESENCE_HEARTBEAT_INTERVAL_SECONDS",
        description="How often the liveness key is refreshed",
    )
    presence_liveness_timeout_seconds: float = Field(
        default=30.0,
        env="PRESENCE_LIVENESS_TIMEOUT_SECONDS",
        description="Silence after which a client's disconnect hooks run",
    )

    huddle_account_id: str | None = Field(
        default=None, env="HUDDLE_ACCOUNT_ID", description="Authenticated account id of the local user"
    )
    huddle_nickname: str = Field(default="Guest", env="HUDDLE_NICKNAME", description="Display name used in rooms")

    room_max_members: int = Field(default=8, env="ROOM_MAX_MEMBERS", ge=1)
    room_id_length: int = Field(default=8, env="ROOM_ID_LENGTH", ge=4, le=32)
    reconnect_max_attempts: int = Field(default=3, env="RECONNECT_MAX_ATTEMPTS", ge=1)
    reconnect_backoff_seconds: float = Field(default=3.0, env="RECONNECT_BACKOFF_SECONDS", ge=0)
    members_debounce_seconds: float = Field(default=0.3, env="MEMBERS_DEBOUNCE_SECONDS", ge=0)
    directory_cache_ttl_seconds: float = Field(default=5.0, env="DIRECTORY_CACHE_TTL_SECONDS", ge=0)
    directory_refresh_debounce_seconds: float = Field(
        default=1.0, env="DIRECTORY_REFRESH_DEBOUNCE_SECONDS", ge=0
    )
    intentional_leave_cooldown_seconds: float = Field(
        default=10.0, env="INTENTIONAL_LEAVE_COOLDOWN_SECONDS", ge=0
    )
    chat_max_messages: int = Field(default=200, env="CHAT_MAX_MESSAGES", ge=1)
    chat_message_max_length: int = Field(default=200, env="CHAT_MESSAGE_MAX_LENGTH", ge=1)
    chat_rate_limit_seconds: float = Field(default=1.0, env="CHAT_RATE_LIMIT_SECONDS", ge=0)

    telemetry_endpoint: AnyHttpUrl | None = Field(
        default=None,
        env="TELEMETRY_ENDPOINT",
        description="Optional endpoint receiving room lifecycle events",
    )
    telemetry_timeout_seconds: float = Field(default=5.0, env="TELEMETRY_TIMEOUT_SECONDS")
    session_journal_path: Path | None = Field(
        default=None,
        env="SESSION_JOURNAL_PATH",
        description="File remembering the live member id so a restart can drop it",
    )

    ui_confirm_timeout_seconds: float = Field(
        default=30.0,
        env="UI_CONFIRM_TIMEOUT_SECONDS",
        description="How long to wait for the UI to answer a confirmation prompt",
    )
    websocket_keepalive_timeout_seconds: float = Field(
        default=20.0, env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS"
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=20.0, env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS"
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("session_journal_path", mode="before")
    @classmethod
    def resolve_journal_path(cls, value: str | Path | None) -> Path | None:
        if value in (None, "", Ellipsis):
            return None
        return Path(value).expanduser().resolve()

    @field_validator("huddle_nickname")
    @classmethod
    def strip_nickname(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("nickname must not be empty")
        return value

    @property
    def room_timings(self) -> RoomTimings:
        return RoomTimings(
            reconnect_backoff=self.reconnect_backoff_seconds,
            reconnect_max_attempts=self.reconnect_max_attempts,
            members_debounce=self.members_debounce_seconds,
            directory_cache_ttl=self.directory_cache_ttl_seconds,
            directory_refresh_debounce=self.directory_refresh_debounce_seconds,
            intentional_leave_cooldown=self.intentional_leave_cooldown_seconds,
        )

    @property
    def room_limits(self) -> RoomLimits:
        return RoomLimits(
            max_members=self.room_max_members,
            room_id_length=self.room_id_length,
            chat_max_messages=self.chat_max_messages,
            chat_max_length=self.chat_message_max_length,
            chat_rate_limit=self.chat_rate_limit_seconds,
        )


@lru_cache
def get_settings() -> Settings:
    return Settings()
