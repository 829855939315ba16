"""Application configuration loaded from the environment."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal
from urllib.parse import urlparse

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="CineRelay", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=8000, alias="PORT")
    environment: Literal["development", "production"] = Field(
        default="production", alias="ENVIRONMENT"
    )

    catalog_origin: str = Field(
        default="https://111.90.159.132", alias="CATALOG_ORIGIN"
    )
    media_origin: str = Field(default="https://cmlhz.com", alias="MEDIA_ORIGIN")
    media_base_path: str = Field(
        default="/movies-xxx/jun-24", alias="MEDIA_BASE_PATH"
    )
    user_agent: str = Field(default=DEFAULT_USER_AGENT, alias="USER_AGENT")

    upstream_mode: Literal["direct", "proxy"] = Field(
        default="direct", alias="UPSTREAM_MODE"
    )
    upstream_proxy_url: str | None = Field(default=None, alias="UPSTREAM_PROXY_URL")
    upstream_timeout: float = Field(default=15.0, alias="UPSTREAM_TIMEOUT", gt=0)
    relay_read_timeout: float = Field(
        default=60.0, alias="RELAY_READ_TIMEOUT", gt=0
    )

    relay_mode: Literal["stream", "buffer"] = Field(
        default="stream", alias="RELAY_MODE"
    )
    relay_chunk_size: int = Field(
        default=1_048_576, alias="RELAY_CHUNK_SIZE", ge=4_096
    )
    relay_signing_secret: str | None = Field(
        default=None, alias="RELAY_SIGNING_SECRET"
    )
    relay_url_ttl: int = Field(default=21_600, alias="RELAY_URL_TTL", ge=60)

    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")

    full_page_size: int = Field(default=10, alias="FULL_PAGE_SIZE", ge=1)
    estimated_page_count: int = Field(
        default=50, alias="ESTIMATED_PAGE_COUNT", ge=1
    )

    openai_api_key: str | None = Field(default=None, alias="OPENAI_API_KEY")
    openai_api_url: str = Field(
        default="https://api.openai.com/v1", alias="OPENAI_API_URL"
    )
    openai_image_model: str = Field(default="dall-e-3", alias="OPENAI_IMAGE_MODEL")
    poster_backfill: bool = Field(default=True, alias="POSTER_BACKFILL")

    @field_validator("catalog_origin", "media_origin", mode="after")
    @classmethod
    def _strip_origin(cls, value: str) -> str:
        """Origins are stored without a trailing slash."""

        parsed = urlparse(value)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("Origins must be absolute http(s) URLs")
        return value.rstrip("/")

    @field_validator("media_base_path", mode="after")
    @classmethod
    def _normalise_base_path(cls, value: str) -> str:
        value = "/" + value.strip("/")
        return value if value != "/" else ""

    @property
    def allowed_origins(self) -> tuple[str, ...]:
        """Parse CORS_ORIGINS; a single "*" allows any origin."""

        cleaned = tuple(
            part.strip().rstrip("/")
            for part in self.cors_origins.split(",")
            if part.strip()
        )
        return cleaned or ("*",)

    @property
    def media_marker(self) -> str:
        """Host plus library root that identifies URLs inside the media library."""

        host = urlparse(self.media_origin).netloc
        root = self.media_base_path.strip("/").split("/")[0]
        return f"{host}/{root}" if root else host

    @property
    def media_base_url(self) -> str:
        return f"{self.media_origin}{self.media_base_path}"

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", populate_by_name=True
    )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
