from __future__ import annotations

from functools import lru_cache
import json

from pydantic_settings import BaseSettings, SettingsConfigDict


# Tier ranks are part of the installation contract and must never drift.
TIER_RANKS: dict[str, int] = {
    "free": 0,
    "pro": 1,
    "epic": 2,
    "legendary": 3,
}

_DEFAULT_TIER_CALL_LIMITS = '{"free": 0, "pro": 500, "epic": 2000, "legendary": 0}'


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "skillmint"
    # Production mode requires an explicit KEK.
    environment: str = "development"
    log_level: str = "INFO"

    database_url: str = "sqlite+aiosqlite:///./skillmint.db"
    # Bounded pools keep latency predictable under concurrent installs.
    db_pool_size: int = 10
    db_max_overflow: int = 20
    # Wait for SQLite write locks instead of failing fast under bursts.
    sqlite_busy_timeout_s: int = 30

    # Key-encryption key material (64 hex chars or base64 of 32 bytes).
    kek: str | None = None

    # Per-call overage price in cents for pay-per-call invocations.
    overage_price_cents: int = 5
    # Creator share of paid invocation revenue.
    creator_share: float = 0.70
    # JSON mapping tier -> monthly included calls; 0 means unlimited.
    tier_call_limits: str = _DEFAULT_TIER_CALL_LIMITS

    # Optional process-wide credential for the external reasoner.
    reasoner_credential: str | None = None
    reasoner_timeout_ms: int = 30_000
    reasoner_base_url: str = "https://api.anthropic.com"
    reasoner_model: str = "claude-haiku-4-5"
    reasoner_max_tokens: int = 1024
    # Retry the reasoner once on transport errors only.
    reasoner_max_attempts: int = 2
    reasoner_backoff_ms: int = 200
    # Overall invoke deadline; expiry aborts the request.
    request_deadline_ms: int = 60_000

    # Total admission attempts on deadlocks/serialization failures: one try plus three retries.
    install_max_attempts: int = 4
    install_retry_backoff_ms: int = 50

    # Header used to carry the bearer API key.
    auth_api_key_header: str = "Authorization"

    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    def call_limits(self) -> dict[str, int]:
        # Parse once per call site; malformed config falls back to defaults.
        try:
            raw = json.loads(self.tier_call_limits)
        except ValueError:
            raw = json.loads(_DEFAULT_TIER_CALL_LIMITS)
        return {str(tier): max(0, int(limit)) for tier, limit in raw.items()}


@lru_cache
def get_settings() -> Settings:
    return Settings()
