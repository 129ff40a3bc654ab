"""Application Settings - Central Configuration"""
from functools import lru_cache
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Helpdesk REST backend (tickets, emails, attachments)
    helpdesk_api_url: str = "http://localhost:3001/api"
    helpdesk_api_token: str = ""
    request_timeout_seconds: float = 30.0

    # Change stream transport - leave realtime_url empty to use the in-process bus
    realtime_url: str = ""
    realtime_api_key: str = ""

    # Subscription coordination
    ticket_switch_debounce_ms: int = 300
    stream_retry_base_seconds: float = 1.0
    stream_retry_max_seconds: float = 30.0
    stream_retry_jitter: float = 0.5  # +/- fraction applied to each delay
    stream_retry_max_attempts: int = 8

    # Ticket lists
    page_size: int = 20
    fallback_refresh_interval_seconds: int = 30  # Only runs while live updates are degraded

    # Inline content / attachments
    blob_url_prefix: str = "/api/blobs"
    attachments_max_mb: int = 25

    # Logging
    logs_path: str = "./logs"
    log_level: str = "INFO"

    # CORS - set to "*" to allow all origins
    cors_origins: str = "*"

    # Environment
    environment: str = "development"
    debug: bool = True

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins string to list"""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def attachments_max_bytes(self) -> int:
        """Max attachment size in bytes"""
        return self.attachments_max_mb * 1024 * 1024

    @property
    def ticket_switch_debounce_seconds(self) -> float:
        """Debounce window for ticket selection in seconds"""
        return self.ticket_switch_debounce_ms / 1000.0


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
