"""Shared configuration for all services."""
from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # MongoDB Configuration
    mongo_url: str = "mongodb://localhost:27017"
    mongo_db_name: str = "nav_tracker"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8080
    api_debug: bool = False
    api_base_url: str = "http://localhost:8080"
    log_level: str = "INFO"

    # AMFI Data Source
    amfi_daily_url: str = "https://www.amfiindia.com/spages/NAVAll.txt"
    amfi_historical_url: str = "http://portal.amfiindia.com/DownloadNAVHistoryReport_Po.aspx"
    amfi_fund_group: str = "62"
    amfi_report_type: str = "1"

    # Fetch Configuration
    fetch_retry_attempts: int = 3
    fetch_retry_delay: float = 1.0  # seconds, doubled per attempt
    fetch_rate_limit_delay: float = 1.0  # minimum spacing between outbound calls
    fetch_timeout: float = 30.0
    daily_cache_ttl: float = 60.0
    historical_cache_ttl: float = 300.0
    max_span_days: int = 90

    # Download Orchestration
    max_chunk_days: int = 90
    progress_retention_seconds: float = 300.0
    weekly_scheme_limit: int = 100
    daily_bookmark_limit: int = 1000

    # Workflow Trigger (scheduler webhook)
    workflow_base_url: str = "http://localhost:5678"
    workflow_webhook_name: str = "nav-download-trigger"
    workflow_api_key: Optional[str] = None
    workflow_timeout: float = 30.0

    # Scheduler
    scheduler_timezone: str = "UTC"
    scheduler_misfire_grace_seconds: int = 300
    recent_executions_limit: int = 10

    class Config:
        env_file = ".env"
        case_sensitive = False

    @property
    def default_webhook_url(self) -> str:
        return f"{self.workflow_base_url.rstrip('/')}/webhook/{self.workflow_webhook_name}"


settings = Settings()
