from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from parley.realtime import RelayConfig


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Parley Relay", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    database_url: str = Field(
        default="sqlite+pysqlite:///./parley.db",
        env="DATABASE_URL",
        description="SQLAlchemy URL of the conversation store",
    )

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60 * 24 * 7, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    presence_debounce_seconds: float = Field(
        default=5.0,
        env="PRESENCE_DEBOUNCE_SECONDS",
        description="Grace period after the last session closes before a user is reported offline.",
    )
    typing_ttl_seconds: float = Field(
        default=5.0,
        env="TYPING_TTL_SECONDS",
        description="Lifetime of a typing indicator without a fresh signal.",
    )
    typing_sweep_interval_seconds: float = Field(
        default=1.0,
        env="TYPING_SWEEP_INTERVAL_SECONDS",
        description="Upper bound between background sweeps of expired typing indicators.",
    )
    collaborator_timeout_seconds: float = Field(
        default=3.0,
        env="COLLABORATOR_TIMEOUT_SECONDS",
        description="Time bound on identity and persistence lookups.",
    )
    send_timeout_seconds: float = Field(
        default=5.0,
        env="SEND_TIMEOUT_SECONDS",
        description="Time bound on pushing a single frame to a client.",
    )
    delivery_tracker_capacity: int = Field(
        default=10_000,
        env="DELIVERY_TRACKER_CAPACITY",
        description="Number of recent messages whose delivery state is kept in memory.",
    )
    websocket_keepalive_timeout_seconds: float = Field(
        default=30, env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS"
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=25, env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS"
    )
    internal_api_token: str | None = Field(
        default=None,
        env="INTERNAL_API_TOKEN",
        description="Shared secret expected in X-Relay-Token on collaborator hooks.",
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

    def relay_config(self) -> RelayConfig:
        return RelayConfig(
            secret_key=self.jwt_secret_key,
            algorithm=self.jwt_algorithm,
            presence_debounce_seconds=self.presence_debounce_seconds,
            typing_ttl_seconds=self.typing_ttl_seconds,
            typing_sweep_interval_seconds=self.typing_sweep_interval_seconds,
            collaborator_timeout_seconds=self.collaborator_timeout_seconds,
            send_timeout_seconds=self.send_timeout_seconds,
            delivery_capacity=self.delivery_tracker_capacity,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
