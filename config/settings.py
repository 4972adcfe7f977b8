"""
DeriveStreet Ingestion Settings
Configuration management using Pydantic Settings
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Dict, Optional


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "DeriveStreet Ingestion"
    debug: bool = False
    log_level: str = "INFO"

    # Database
    database_url: str = "sqlite:///./derivestreet.db"

    # Upstream social-data provider
    upstream_base_url: str = "http://localhost:54321"
    upstream_api_key: Optional[str] = None
    upstream_timeout: float = 30.0
    credential_max_age_seconds: float = Field(default=600.0, description="Age after which outbound credentials are refreshed")

    # Analysis (LLM) provider
    analysis_api_url: str = "http://localhost:8080/v1/chat/completions"
    analysis_api_key: Optional[str] = None
    analysis_model: str = "google/gemini-2.5-flash"
    analysis_timeout: float = 60.0

    # Response cache
    cache_ttl_overrides: Dict[str, int] = Field(default_factory=dict)
    cache_sweep_probability: float = 0.05
    cache_sweep_interval_seconds: float = 300.0

    # Backfill
    backfill_daily_batch_size: int = 3
    backfill_hourly_batch_size: int = 5
    backfill_daily_min_messages: int = 10
    backfill_hourly_min_messages: int = 5
    backfill_daily_message_limit: int = 500
    backfill_hourly_message_limit: int = 200
    backfill_inter_unit_delay: float = 0.5
    backfill_analysis_delay: float = 0.3

    # Market clock (fixed offset, no DST table)
    market_utc_offset_hours: int = -5
    hourly_window_start: int = 5
    hourly_window_end: int = 18


# Global settings instance
settings = Settings()
