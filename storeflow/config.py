"""
Configuration settings for StoreFlow.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)

    # Application
    APP_NAME: str = "StoreFlow"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = True

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Step retries
    STEP_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 0.5  # Seconds
    RETRY_MAX_DELAY: float = 30.0  # Seconds

    # Loops
    LOOP_MAX_CONCURRENCY: int = 10
    LOOP_MAX_ITEMS: int = 1000

    # External collaborators
    HTTP_TIMEOUT: float = 30.0  # Seconds

    # Storage
    STORAGE_BACKEND: str = "memory"  # "memory" or "file"
    DATA_DIR: str = "./data"

    # Scheduler (cron triggers and DELAY resumption)
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_INTERVAL: float = 30.0  # Seconds

    # Event bus
    EVENT_HISTORY_SIZE: int = 1000

    # Logging
    LOG_LEVEL: str = "INFO"


# Global settings instance
settings = Settings()
