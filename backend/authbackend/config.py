"""Application configuration management"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List
from urllib.parse import quote_plus

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode

# Base directory: backend/
_BASE_DIR = Path(__file__).resolve().parent.parent

SUPPORTED_ENVIRONMENTS = ("development", "production")


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Application
    APP_NAME: str = "Auth Backend"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # Database (PostgreSQL)
    DATABASE_URL: str = ""
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "auth_db"
    POSTGRES_USER: str = "auth"
    POSTGRES_PASSWORD: str = "auth"
    POSTGRES_REQUIRE_SSL: bool = False
    DATABASE_POOL_SIZE: int = 30
    DATABASE_MAX_OVERFLOW: int = 20
    DATABASE_POOL_TIMEOUT_SECONDS: int = 5
    DATABASE_CONNECT_TIMEOUT_SECONDS: int = 5
    DATABASE_STATEMENT_TIMEOUT_MS: int = 5000

    # Session cache
    SESSION_CACHE_BACKEND: str = "redis"  # redis | memory
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_POOL_MAX_CONNECTIONS: int = 50
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 2.0

    # Token signing
    SECRET_KEY: str = "dev-secret-key-change-in-production-use-openssl-rand-hex-32"
    SIGNING_KEY_ID: str = "k1"
    # Verification-only keys kept during a rotation overlap, as "kid:secret"
    PREVIOUS_SIGNING_KEYS: Annotated[List[str], NoDecode] = []
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    REFRESH_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7
    REFRESH_FAMILY_MAX_LIFETIME_HOURS: int = 24 * 30
    CLOCK_SKEW_SECONDS: int = 5

    # Password hashing (Argon2id)
    ARGON2_TIME_COST: int = 3
    ARGON2_MEMORY_COST_KIB: int = 65536
    ARGON2_PARALLELISM: int = 4

    # Rate Limiting
    RATE_LIMIT_PER_MINUTE: int = 100
    RATE_LIMIT_PER_HOUR: int = 1000
    LOGIN_RATE_LIMIT_PER_MINUTE: int = 10
    LOGIN_RATE_LIMIT_PER_HOUR: int = 50
    REGISTER_RATE_LIMIT_PER_HOUR: int = 20

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # CORS
    CORS_ORIGINS: Annotated[List[str], NoDecode] = ["http://localhost:3000"]

    # Database initialization discipline
    DB_INIT_MODE: str = "migrate"  # migrate | create_all | off
    DB_REQUIRE_HEAD: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True

    @field_validator("CORS_ORIGINS", "PREVIOUS_SIGNING_KEYS", mode="before")
    @classmethod
    def _parse_string_list(cls, value: Any) -> Any:
        """
        Accept JSON array or comma-separated values from env.

        Examples:
            CORS_ORIGINS=["http://localhost:3000","http://example.com"]
            PREVIOUS_SIGNING_KEYS=k0:old-secret,k-1:older-secret
        """
        if not isinstance(value, str):
            return value

        raw = value.strip()
        if not raw:
            return []

        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None

        if isinstance(parsed, str):
            return [parsed]
        if isinstance(parsed, list):
            return [str(item).strip() for item in parsed if str(item).strip()]

        return [item.strip() for item in raw.split(",") if item.strip()]

    @field_validator("ENVIRONMENT")
    @classmethod
    def _check_environment(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in SUPPORTED_ENVIRONMENTS:
            raise ValueError(
                f"{value} is not a supported environment. "
                "Use either `development` or `production`."
            )
        return normalized

    def get_log_file(self) -> str:
        p = self.LOG_FILE
        if not p or p.startswith(".."):
            return str(_BASE_DIR.parent / "logs" / "app.log")
        return p

    def get_database_url(self) -> str:
        """
        Resolve database URL.

        Priority:
          1) Explicit DATABASE_URL
          2) Construct from POSTGRES_* parts with safe URL encoding
        """
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = quote_plus(self.POSTGRES_USER)
        password = quote_plus(self.POSTGRES_PASSWORD)
        ssl_mode = "require" if self.POSTGRES_REQUIRE_SSL else "prefer"
        return (
            f"postgresql://{user}:{password}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            f"?sslmode={ssl_mode}"
        )

    def get_previous_signing_keys(self) -> List[tuple]:
        """Parse PREVIOUS_SIGNING_KEYS into (kid, secret) pairs."""
        pairs = []
        for entry in self.PREVIOUS_SIGNING_KEYS:
            kid, sep, secret = entry.partition(":")
            if not sep or not kid or not secret:
                raise ValueError(f"Malformed PREVIOUS_SIGNING_KEYS entry for key id '{kid}'")
            pairs.append((kid, secret))
        return pairs

    def validate_security_settings(self) -> None:
        """
        Validate runtime security defaults in production.

        Raises:
            ValueError: If insecure defaults are detected.
        """
        if self.ENVIRONMENT != "production":
            return

        insecure_secret_markers = {
            "",
            "dev-secret-key-change-in-production-use-openssl-rand-hex-32",
            "change-me",
        }

        if self.SECRET_KEY in insecure_secret_markers or len(self.SECRET_KEY) < 32:
            raise ValueError(
                "Insecure SECRET_KEY for production. Use a strong key (e.g. `openssl rand -hex 32`)."
            )

        if self.SESSION_CACHE_BACKEND != "redis":
            raise ValueError(
                "SESSION_CACHE_BACKEND must be `redis` in production; the memory backend is per-process."
            )

        if self.REFRESH_TOKEN_EXPIRE_MINUTES <= self.ACCESS_TOKEN_EXPIRE_MINUTES:
            raise ValueError("REFRESH_TOKEN_EXPIRE_MINUTES must exceed ACCESS_TOKEN_EXPIRE_MINUTES.")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
