from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings


class Environment(str, Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class StorageBackendType(str, Enum):
    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


class Settings(BaseSettings):
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "LEADLENS_",
        "extra": "ignore",
    }

    # Application
    app_name: str = "LeadLens"
    app_version: str = "1.0.0"
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = True

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # console renderer in development

    # Event store
    event_buffer_cap: int = 1000  # persisted events, FIFO-evicted
    realtime_buffer_cap: int = 100  # recent events mirrored for live dashboards
    realtime_window_minutes: int = 30
    churn_window_days: int = 7

    # Persistence
    storage_backend: StorageBackendType = StorageBackendType.MEMORY
    storage_path: str = ".leadlens"  # directory for the file backend
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "leadlens:"

    # Remote collector (empty disables forwarding)
    collector_url: str = ""
    collector_timeout: float = 5.0

    # API
    # Format: comma-separated list, e.g., "http://localhost:3000,http://localhost:8000"
    cors_origins: str = "http://localhost:3000"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
