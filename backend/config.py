from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_key: str = ""

    # Market data provider
    market_data_api_url: str = "https://data.solanatracker.io"
    market_data_api_key: str = ""
    market_data_timeout_seconds: float = 30.0
    market_data_min_request_interval: float = 0.1  # Seconds between provider requests
    market_data_deadline_seconds: float = 45.0  # Per-token budget before deferring to next cycle

    # Refresh sweep
    refresh_enabled: bool = True
    refresh_interval_seconds: int = 30
    refresh_concurrency: int = 4

    # Per-token lock
    lock_backend: str = "supabase"  # "supabase" or "memory" (single instance only)
    lock_ttl_seconds: int = 60  # Must outlive one token's fetch plus its writes
    lock_write_budget_seconds: float = 10.0

    # Corruption audit
    corruption_ratio_threshold: float = 2.5
    corruption_extreme_pct: float = 50000.0
    corruption_audit_enabled: bool = False
    corruption_audit_interval_hours: int = 24
    corruption_auto_fix: bool = False

    # Fresh call near ATH: skip the ATH-after-call rule for very young calls
    fresh_call_guard_enabled: bool = False
    fresh_call_window_seconds: int = 60
    fresh_call_ath_tolerance: float = 0.01

    # Backfill
    backfill_default_limit: int = 500
    backfill_max_limit: int = 1000
    backfill_run_retention_days: int = 30

    # Admin
    admin_secret: str = ""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @model_validator(mode="after")
    def _check_lock_ttl(self) -> "Settings":
        floor = self.market_data_deadline_seconds + self.lock_write_budget_seconds
        if self.lock_ttl_seconds <= floor:
            raise ValueError(
                f"lock_ttl_seconds ({self.lock_ttl_seconds}) must exceed "
                f"market_data_deadline_seconds + lock_write_budget_seconds ({floor:.0f})"
            )
        return self


settings = Settings()
