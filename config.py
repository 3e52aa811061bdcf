"""Environment-driven configuration with Pydantic v2."""

import logging
from typing import Literal

from pydantic import Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from errors import ConfigError

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class Settings(BaseSettings):
    """Resolver settings, read from the environment (or a local .env file)."""

    # Forward proxy (required)
    proxy_endpoint: str = Field(min_length=1)
    proxy_port: int = Field(ge=1, le=65535)
    proxy_username: str = Field(min_length=1)
    proxy_password: SecretStr
    # Accept self-signed certificates on the proxy hop. Off unless asked for.
    proxy_insecure_tls: bool = False

    # Rate limiting
    scrape_rate_limit_window: int = Field(default=60_000, ge=1)  # milliseconds
    scrape_rate_limit_max: int = Field(default=10, ge=1)

    # Upstream fetch
    fetch_timeout_seconds: float = Field(default=15.0, gt=0)
    fetch_retries: int = Field(default=2, ge=0, le=10)

    # Cache
    cache_db_path: str = "url_cache.sqlite3"
    cache_ttl_days: int = Field(default=7, ge=1)
    cache_sweep_probability: float = Field(default=0.1, ge=0.0, le=1.0)
    cache_sweep_batch: int = Field(default=25, ge=1)
    cache_similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)

    # Consumed by the external text-rewrite step, not by this service
    gemini_api_key: SecretStr | None = None

    app_env: Literal["development", "production"] = "production"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def proxy_url(self) -> str:
        password = self.proxy_password.get_secret_value()
        return f"http://{self.proxy_username}:{password}@{self.proxy_endpoint}:{self.proxy_port}"

    @property
    def cache_ttl_ms(self) -> int:
        return self.cache_ttl_days * 24 * 60 * 60 * 1000

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def load_settings(**overrides) -> Settings:
    """Build Settings, turning validation failures into a ConfigError.

    The error names the offending variables but never echoes their values.
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        names = sorted({str(err["loc"][0]).upper() for err in e.errors() if err.get("loc")})
        raise ConfigError(f"Invalid or missing configuration: {', '.join(names)}") from e


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
