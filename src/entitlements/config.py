"""Entitlements configuration.

Values are read from environment variables prefixed with ``ENTITLEMENTS_``
(or a ``.env`` file). Nothing sensitive has a default.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for code generation, redemption and storage."""

    model_config = SettingsConfigDict(
        env_prefix="ENTITLEMENTS_",
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Storage
    MONGO_URI: Optional[str] = None
    MONGO_DB: str = "entitlements"
    # Multi-document transactions need a replica set
    MONGO_USE_TRANSACTIONS: bool = False

    # Audit ledger
    LEDGER_FILE_PATH: str = "logs/entitlement_ledger.log"

    # Code generation
    CODE_ALPHABET: str = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
    CODE_LENGTH: int = 10
    MAX_ATTEMPTS_PER_CODE: int = 100
    MAX_BATCH_SIZE: int = 10000
    COLLISION_PROBABILITY_THRESHOLD: float = 0.001
    HIGH_ENTROPY_RATIO: float = 0.8

    # Redemption
    SUBSCRIPTION_UPDATE_RETRIES: int = 5
    COUNTER_INCREMENT_RETRIES: int = 3
    COUNTER_RETRY_BACKOFF_SECONDS: float = 0.05
    # Pending claims older than this are settled by recover_pending_claims
    PENDING_CLAIM_TIMEOUT_SECONDS: int = 300

    # Read model
    STATUS_CACHE_TTL_SECONDS: int = 60


settings = Settings()
