"""Centralized configuration via pydantic-settings.

All compliance thresholds, backend selection, and transport credentials live
here. Override any value via environment variable (e.g., ``STATE_BACKEND=redis``).
"""

from functools import lru_cache

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- API ---
    API_KEY: SecretStr = SecretStr("")  # When set, all routes except /health require X-API-Key
    MAX_REQUEST_BODY_SIZE: int = 5_242_880  # 5 MB (bulk DNC imports)

    # --- State backend ---
    STATE_BACKEND: str = "memory"  # "memory" (single container) or "redis"
    REDIS_URL: str = ""
    MONTHLY_COUNTER_TTL_SECONDS: int = 40 * 24 * 3600  # outlives the month it counts

    # --- Compliance ---
    DEFAULT_TIMEZONE: str = "America/New_York"  # used when recipient timezone is unknown
    QUIET_HOURS_START: int = 21  # 9 PM recipient local time
    QUIET_HOURS_END: int = 10  # 10 AM (CRTC requires 9:30, rounded up)
    COMPLIANCE_CACHE_TTL_SECONDS: int = 300  # decision cache TTL, never covers quiet hours
    DNC_IMPORT_BATCH_SIZE: int = 1000
    AUDIT_HMAC_SECRET: SecretStr = SecretStr("change-me-in-production")  # HMAC key for the audit hash chain

    # --- SMS transport ---
    TELNYX_API_KEY: SecretStr = SecretStr("")
    TELNYX_MESSAGING_PROFILE_ID: str = ""
    SMS_FROM_NUMBER: str = ""  # E.164 format (e.g. +14165550100)

    # --- Observability ---
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"
    VERSION: str = "0.1.0"

    model_config = {"env_prefix": "", "case_sensitive": True}

    @model_validator(mode="after")
    def validate_quiet_hours(self) -> "Settings":
        """Validate default quiet-hours bounds are wall-clock hours."""
        for name in ("QUIET_HOURS_START", "QUIET_HOURS_END"):
            value = getattr(self, name)
            if not 0 <= value <= 23:
                raise ValueError(f"{name} ({value}) must be between 0 and 23")
        return self

    @model_validator(mode="after")
    def validate_batch_size(self) -> "Settings":
        """DNC import batches must be positive."""
        if self.DNC_IMPORT_BATCH_SIZE < 1:
            raise ValueError(
                f"DNC_IMPORT_BATCH_SIZE ({self.DNC_IMPORT_BATCH_SIZE}) must be at least 1"
            )
        return self

    @model_validator(mode="after")
    def validate_audit_hmac(self) -> "Settings":
        """Warn if AUDIT_HMAC_SECRET is using the default insecure value outside development."""
        if (
            self.ENVIRONMENT != "development"
            and self.AUDIT_HMAC_SECRET.get_secret_value() == "change-me-in-production"
        ):
            import warnings

            warnings.warn(
                "AUDIT_HMAC_SECRET is using the default value. "
                "Set a secure secret via environment variable before deploying.",
                UserWarning,
                stacklevel=2,
            )
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()
