from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Aether Chat", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root logging level")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1",
            "http://127.0.0.1:3000",
        ],
        description="List of allowed CORS origins",
    )

    database_url: str = Field(
        default="sqlite:///./aether.db",
        description="SQLAlchemy database URL",
    )

    jwt_secret_key: str = Field(default="changeme")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=24 * 60)

    chat_history_default_limit: int = Field(default=50)
    chat_history_max_limit: int = Field(default=200)
    chat_message_max_length: int = Field(default=4000)

    websocket_keepalive_timeout_seconds: float = Field(
        default=30,
        description="Idle receive timeout after which the server considers sending a ping.",
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=25,
        description="Minimum spacing between two server keepalive pings.",
    )

    community_access_code_length: int = Field(default=8)
    community_default_max_members: int = Field(default=100)

    realtime_redis_url: str | None = Field(
        default=None,
        description="Redis URL used to fan out broadcasts between server instances.",
    )
    realtime_namespace: str = Field(default="aether.realtime")
    realtime_node_id: str | None = Field(
        default=None,
        description="Stable identifier of this instance; random when unset.",
    )

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

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


@lru_cache
def get_settings() -> Settings:
    return Settings()
