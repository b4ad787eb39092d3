from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Nooke API", description="Human readable service name")
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:8081"],
        description="Origins allowed to call the API from a browser",
    )
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root logging level")

    database_url_override: str | None = Field(
        default=None,
        validation_alias="DATABASE_URL",
        description="Full SQLAlchemy URL; takes precedence over the DB_* fields",
    )
    database_user: str = Field(default="nooke", validation_alias="DB_USER")
    database_password: str = Field(default="nooke", validation_alias="DB_PASSWORD")
    database_host: str = Field(default="db", validation_alias="DB_HOST")
    database_port: int = Field(default=3306, validation_alias="DB_PORT")
    database_name: str = Field(default="nooke", validation_alias="DB_NAME")

    jwt_secret_key: str = Field(default="changeme")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=30)

    livekit_url: str = Field(
        default="ws://localhost:7880",
        description="Transport server URL handed to clients together with their token",
    )
    livekit_api_key: str = Field(default="devkey", description="LiveKit API key (token issuer)")
    livekit_api_secret: str = Field(
        default="secret", description="LiveKit API secret used to sign transport tokens"
    )
    livekit_token_ttl_minutes: int = Field(
        default=10, ge=1, description="Lifetime of room scoped transport tokens"
    )

    voice_token_endpoint: AnyHttpUrl | None = Field(
        default=None,
        description="Base URL of the API issuing transport tokens to clients",
    )

    realtime_redis_url: str | None = Field(
        default=None, description="Redis URL for the change feed and hint cache"
    )
    realtime_namespace: str = Field(
        default="nooke.realtime", description="Prefix for Redis change feed channels"
    )
    realtime_feed_backend: Literal["local", "redis"] = Field(
        default="local", description="Change feed used by the room store"
    )

    # Creator-only close is what the client room hook enforces; Study Hall
    # needs last-one-out closing, hence the False default.
    room_close_requires_creator: bool = Field(
        default=False,
        description="Only close an empty room when the creator is the last to leave",
    )
    presence_refresh_throttle_seconds: float = Field(
        default=3.0, ge=0, description="Minimum interval between presence resyncs"
    )
    audio_silence_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Quiet period after which audio disconnects"
    )
    audio_token_timeout_seconds: float = Field(
        default=10.0, gt=0, description="Upper bound for fetching a transport token"
    )
    audio_connect_timeout_seconds: float = Field(
        default=15.0, gt=0, description="Upper bound for opening the audio transport"
    )
    hint_ttl_seconds: int = Field(
        default=0, ge=0, description="Lifetime of cached UI hints (0 keeps them)"
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalise_log_level(cls, value: str | None) -> str:
        if value in (None, ""):
            return "INFO"
        return str(value).strip().upper()

    @field_validator("realtime_redis_url", "database_url_override", mode="before")
    @classmethod
    def empty_as_none(cls, value: str | None) -> str | None:
        if value in (None, "", Ellipsis):
            return None
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
