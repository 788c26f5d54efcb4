from functools import lru_cache
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database
    DATABASE_URL: str = "sqlite:///./chatsync.db"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Webhook signature check is skipped when empty
    WEBHOOK_SECRET: str = ""

    # Evolution API gateway
    EVOLUTION_API_URL: str = "http://localhost:8080"
    EVOLUTION_API_KEY: str = ""
    GATEWAY_REQUEST_TIMEOUT: float = 10.0
    GATEWAY_MAX_RETRIES: int = 3

    # Poll synchronizer
    POLL_ENABLED: bool = True
    POLL_INTERVAL_SECONDS: float = 10.0
    POLL_QUIET_SECONDS: float = 8.0
    POLL_SWEEP_TIMEOUT_SECONDS: float = 30.0
    POLL_MAX_CHATS: int = Field(default=3, ge=1)
    POLL_MAX_MESSAGES: int = Field(default=5, ge=1)

    # Outbound send path
    SEND_TIMEOUT_SECONDS: float = 15.0

    # Merge engine
    FINGERPRINT_WINDOW_SECONDS: int = 1

    # Realtime broadcaster
    REALTIME_QUEUE_SIZE: int = 100


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
