"""Configuration management for the contest voting API."""
from typing import Literal, Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Service configuration
    SERVICE_NAME: str = "contest-api"
    API_VERSION: str = "v1"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Server configuration
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Storage backend: "postgres" in production, "memory" for tests and demos
    STORAGE_BACKEND: Literal["postgres", "memory"] = "postgres"

    # PostgreSQL configuration
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "contest_db"
    POSTGRES_USER: str = "contest_user"
    POSTGRES_PASSWORD: str = "contest_pass"

    # Redis configuration (rate limit storage)
    REDIS_ENABLED: bool = True
    REDIS_HOST: str = "redis"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # Rate limiting
    RATE_LIMIT: str = "30/minute"

    # CORS settings
    CORS_ORIGINS: list = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = True
    CORS_ALLOW_METHODS: list = ["*"]
    CORS_ALLOW_HEADERS: list = ["*"]

    # Connection pools
    POSTGRES_POOL_MIN_SIZE: int = 5
    POSTGRES_POOL_MAX_SIZE: int = 20
    POSTGRES_COMMAND_TIMEOUT: float = 10.0

    # Vote retry policy (whole cast operation, transient conflicts only)
    VOTE_MAX_RETRIES: int = 3
    VOTE_RETRY_DELAY_SECONDS: float = 0.05

    # Chat polling
    CHAT_DEFAULT_LIMIT: int = 50
    CHAT_MAX_LIMIT: int = 100

    # Shared secret checked by the admin gate; empty denies every admin call
    ADMIN_TOKEN: str = ""

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"

    @property
    def postgres_dsn(self) -> str:
        """Generate PostgreSQL connection string."""
        return (
            f"postgresql://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        """Generate Redis connection URL."""
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def rate_limit_storage_uri(self) -> str:
        """Storage backend URI for slowapi."""
        return self.redis_url if self.REDIS_ENABLED else "memory://"


settings = Settings()
