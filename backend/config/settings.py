from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache
from decimal import Decimal
from typing import Optional


class Settings(BaseSettings):
    """
    Settlement engine settings loaded from environment variables.

    Environment variables can come from:
    - docker-compose.yml environment section
    - .env file (for secrets like the relayer API key)
    - System environment

    Variable names match docker-compose conventions:
    - POSTGRES_HOST, POSTGRES_PORT, etc. (for the epoch store)
    - REDIS_URL (for the tracking event queue)
    - LEDGER_URL, LEDGER_API_KEY (for the on-chain relayer)
    - KEEPER_* (for the hourly keeper)
    """

    # PostgreSQL (from docker-compose)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "settlement_user"
    postgres_password: str = "settlement_pass"
    postgres_db: str = "settlement"
    postgres_pool_min: int = 2
    postgres_pool_max: int = 10

    # Redis
    redis_url: str = "redis://localhost:6379"
    tracking_queue: str = "queue:tracking:events"

    # Ledger relayer
    ledger_url: str = "http://localhost:8545"
    ledger_api_key: str = ""
    ledger_timeout_seconds: float = 30.0

    # Opaque fee parameters forwarded to the relayer
    ledger_gas_limit: Optional[int] = None
    ledger_max_fee_per_gas_gwei: Optional[Decimal] = None
    ledger_priority_fee_gwei: Optional[Decimal] = None

    # Keeper
    keeper_enabled: bool = True
    keeper_interval_seconds: int = 3600    # every hour
    keeper_offset_seconds: int = 60        # one minute past the boundary
    keeper_batch_size: int = 10            # epochs per stage per run
    keeper_auto_submit: bool = False
    keeper_auto_distribute: bool = False
    keeper_max_concurrency: int = 4        # campaigns in parallel
    keeper_catchup_hours: int = 24         # how far back missed windows are retried
    distribution_chunk_size: int = 100     # payouts per batch_distribute call

    # Fraud filter
    min_dwell_ms: int = 1000
    dedup_window_seconds: int = 30
    max_impressions_per_epoch: int = 1000
    max_clicks_per_epoch: int = 100

    # Allocation
    click_weight: int = 10
    min_payout: Decimal = Decimal("0.01")
    max_hourly_budget: Decimal = Decimal("1000")
    platform_fee_percent: Decimal = Decimal("0")   # withheld before the host split

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra env vars

    @field_validator('keeper_interval_seconds', 'keeper_batch_size',
                     'keeper_max_concurrency', 'keeper_catchup_hours',
                     'distribution_chunk_size')
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError("must be >= 1")
        return v

    @field_validator('platform_fee_percent')
    @classmethod
    def fee_in_range(cls, v):
        if v < 0 or v >= 100:
            raise ValueError("must be >= 0 and < 100")
        return v

    def ledger_call_options(self) -> dict:
        """Fee parameters passed opaquely to the ledger client (unset keys omitted)"""
        options = {
            'gas_limit': self.ledger_gas_limit,
            'max_fee_per_gas_gwei': self.ledger_max_fee_per_gas_gwei,
            'priority_fee_gwei': self.ledger_priority_fee_gwei,
        }
        return {k: v for k, v in options.items() if v is not None}


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
