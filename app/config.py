"""
Application Configuration
"""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    database_url: Optional[str] = None

    # Redis (shared cache for locks and idempotency results)
    redis_url: Optional[str] = None
    cache_key_prefix: str = "library"

    # Environment
    environment: str = "development"

    # Lending Rules
    loan_period_days: int = 14
    max_books_per_member: int = 5  # Active loans per member, checked under the member lock

    # Distributed Lock
    lock_lease_seconds: int = 30  # Lock expiry, reclaims locks of crashed holders
    lock_wait_timeout_seconds: int = 30
    lock_poll_interval_ms: int = 100

    # Idempotency
    idempotency_ttl_seconds: int = 3600  # 1 hour

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
