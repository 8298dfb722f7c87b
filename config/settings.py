"""Configuration management using pydantic-settings."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # LMS web service configuration
    lms_base_url: str = "https://lms.example.com"
    lms_service_path: str = "/webservice/rest/server.php"
    lms_token: Optional[str] = None

    # Transport
    request_timeout_seconds: float = 10.0
    read_retries: int = 2

    # Cache settings
    cache_enabled: bool = True
    cache_database_url: str = "sqlite:///./dashboard_cache.db"

    # Request batching
    queue_batch_size: int = 3
    directory_batch_size: int = 5
    queue_pacing_ms: int = 50

    # Orchestrator
    refresh_workers: int = 4
    dashboard_course_limit: int = 3
    http_wait_seconds: float = 15.0

    # Role heuristics
    role_enrollment_inference: bool = True
    role_inactivity_inference: bool = True
    role_inactivity_days: int = 30

    # Server
    host: str = "127.0.0.1"
    port: int = 8000

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def service_url(self) -> str:
        """Full URL of the REST web service endpoint."""
        return self.lms_base_url.rstrip("/") + self.lms_service_path


settings = Settings()
