from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")

    # Store: "redis" or "memory"
    store_backend: str = Field(default="redis", alias="STORE_BACKEND")

    # Redis. REDIS_URL wins; otherwise built from REDIS_HOST / REDIS_PORT.
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_connect_timeout: float = Field(default=5.0, alias="REDIS_CONNECT_TIMEOUT")
    redis_retry_attempts: int = Field(default=3, alias="REDIS_RETRY_ATTEMPTS")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    @property
    def store_url(self) -> str:
        return self.redis_url or f"redis://{self.redis_host}:{self.redis_port}"

    # Ledger
    default_balance: int = 100
    default_account: str = "account"
    default_charges: int = 10

    # Charge retry policy (milliseconds)
    charge_max_retries: int = 10
    charge_retry_min_ms: int = 3
    charge_retry_max_ms: int = 10
    charge_retry_factor: float = 2


@lru_cache
def get_settings() -> Settings:
    return Settings()
