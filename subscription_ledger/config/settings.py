"""Application settings using Pydantic for environment-based configuration."""
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Network Configuration
    network_endpoint: str = Field(
        default="memory://local", description="Settlement network endpoint"
    )
    owner_address: str = Field(
        default="0xowner", description="Governance address allowed to widen the token allowlist"
    )

    # Settlement Tokens
    settlement_tokens: str = Field(
        default="SPT",
        description="Accepted settlement tokens (comma-separated)",
    )
    default_token: str = Field(default="SPT", description="Token used when none is given")

    # Fee Abstraction (Relayer)
    relayer_address: str = Field(default=ZERO_ADDRESS, description="Fee relayer address")
    fee_m_enabled: bool = Field(default=False, description="Enable gasless batch settlement")

    # Ledger Policies
    single_active_subscription: bool = Field(
        default=True, description="Allow at most one active subscription per subscriber"
    )
    delinquency_policy: str = Field(
        default="retain", description="Failed recurring charge handling (retain/cancel)"
    )
    confirmation_delay_seconds: float = Field(
        default=0.0, description="Simulated confirmation latency for ledger mutations"
    )
    ledger_call_timeout_seconds: float = Field(
        default=30.0, description="Timeout for a single ledger call (seconds)"
    )

    # Payment Scheduler
    scheduler_interval_minutes: float = Field(
        default=5.0, description="Minutes between sweep cycles"
    )
    resync_every_sweeps: int = Field(
        default=12, description="Full resync against the ledger every N sweeps"
    )

    # Reconciler
    listener_queue_size: int = Field(default=1000, description="Per-listener channel capacity")
    listener_overflow_policy: str = Field(
        default="drop_oldest", description="Channel overflow policy (drop_oldest/block)"
    )
    listener_block_timeout_seconds: float = Field(
        default=5.0, description="Max wait on a full channel under the block policy"
    )
    recent_events_window: int = Field(
        default=10000, description="Log entries scanned for recent-event queries"
    )

    # Application Configuration
    app_name: str = Field(default="subscription-ledger", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/production)")
    log_level: str = Field(default="INFO", description="Logging level")
    debug: bool = Field(default=False, description="Debug mode")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level. Must be one of: {valid_levels}")
        return v.upper()

    @field_validator("delinquency_policy")
    @classmethod
    def validate_delinquency_policy(cls, v: str) -> str:
        """Validate delinquency policy name."""
        if v.lower() not in ("retain", "cancel"):
            raise ValueError("Invalid delinquency policy. Must be 'retain' or 'cancel'")
        return v.lower()

    @field_validator("listener_overflow_policy")
    @classmethod
    def validate_overflow_policy(cls, v: str) -> str:
        """Validate listener channel overflow policy."""
        if v.lower() not in ("drop_oldest", "block"):
            raise ValueError("Invalid overflow policy. Must be 'drop_oldest' or 'block'")
        return v.lower()

    @field_validator("listener_queue_size", "recent_events_window", "resync_every_sweeps")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Must be positive")
        return v

    def get_settlement_tokens_list(self) -> List[str]:
        """Parse settlement tokens from comma-separated string."""
        return [token.strip() for token in self.settlement_tokens.split(",") if token.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env.lower() == "production"

    @property
    def relayer_configured(self) -> bool:
        """Check if a real relayer address is configured."""
        return bool(self.relayer_address) and self.relayer_address != ZERO_ADDRESS


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()
