"""
Sleep Olympics Configuration
============================
All environment variables in one place. Pydantic Settings validates
types at startup so misconfigurations fail fast, not on the first sync.
"""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings

# Oura invalidates tokens on its own clock; never refresh later than this.
MIN_SAFETY_MARGIN_SECONDS = 300


class Settings(BaseSettings):
    """Loaded from environment variables or a .env file."""

    # --- Supabase ---
    supabase_url: str = "http://localhost:54321"
    supabase_service_key: str = ""  # service_role key for backend operations

    # --- Oura Ring OAuth ---
    oura_client_id: str = ""
    oura_client_secret: str = ""
    oura_redirect_uri: str = "http://localhost:8000/api/v1/oura/callback"
    oura_request_timeout_seconds: float = 10.0

    # --- Token storage ---
    # Operator secret for token encryption at rest. Empty means insecure
    # passthrough, which is refused in production.
    encryption_key: str = ""
    token_expiry_safety_margin_seconds: int = MIN_SAFETY_MARGIN_SECONDS
    oauth_state_ttl_minutes: int = 10

    # --- Sync ---
    sync_lookback_months: int = 6
    sync_batch_size: int = 25

    # --- Summaries ---
    # Product decision, not physiology: older iterations used 70/85.
    good_score_threshold: int = 75
    excellent_score_threshold: int = 85
    summary_history_days: int = 730

    # --- App settings ---
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    frontend_url: str = "http://localhost:3000/oura"
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @field_validator("token_expiry_safety_margin_seconds")
    @classmethod
    def _margin_at_least_five_minutes(cls, value: int) -> int:
        if value < MIN_SAFETY_MARGIN_SECONDS:
            raise ValueError(
                f"token_expiry_safety_margin_seconds must be >= {MIN_SAFETY_MARGIN_SECONDS}"
            )
        return value

    @field_validator("sync_batch_size")
    @classmethod
    def _positive_batch_size(cls, value: int) -> int:
        if value < 1:
            raise ValueError("sync_batch_size must be positive")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    return Settings()
