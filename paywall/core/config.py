from decimal import Decimal
from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional, List, Union


class Settings(BaseSettings):
    # Database
    database_url: str

    # Redis (rate limit counters, per-user locks)
    redis_url: str = "redis://localhost:6379/0"
    redis_password: Optional[str] = None
    redis_db: int = 0

    # Firebase (ID token verification only)
    firebase_project_id: str
    firebase_credentials_path: str

    # API
    api_v1_str: str = "/api/v1"

    # Environment
    environment: str = "development"
    debug: bool = True

    # CORS
    cors_origins: List[str] = ["http://localhost:3000"]

    # Admin access for stats / manual sweep
    admin_emails: List[str] = []

    # Deposit addresses (where users send USDT)
    usdt_trc20_address: Optional[str] = None
    usdt_erc20_address: Optional[str] = None
    usdt_bep20_address: Optional[str] = None

    # USDT token contracts
    usdt_trc20_contract: str = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"
    usdt_erc20_contract: str = "0xdAC17F958D2ee523a2206206994597C13D831ec7"
    usdt_bep20_contract: str = "0x55d398326f99059fF775485246999027B3197955"

    # On-chain decimal precision of USDT per network
    usdt_trc20_decimals: int = 6
    usdt_erc20_decimals: int = 6
    usdt_bep20_decimals: int = 18

    # Block explorers
    trongrid_api_url: str = "https://api.trongrid.io"
    tronscan_api_url: str = "https://apilist.tronscanapi.com"
    tron_api_key: Optional[str] = None
    etherscan_api_url: str = "https://api.etherscan.io/api"
    etherscan_api_key: Optional[str] = None
    bscscan_api_url: str = "https://api.bscscan.com/api"
    bscscan_api_key: Optional[str] = None
    explorer_timeout_seconds: float = 10.0
    explorer_requests_per_minute: int = 60
    address_scan_limit: int = 50

    # Subscription policy
    subscription_price_usdt: Decimal = Decimal("100")
    subscription_period_days: int = 30
    grace_period_days: int = 7
    scan_freshness_minutes: int = 10

    # Periodic sweep
    sweep_enabled: bool = True
    sweep_interval_minutes: int = 60
    sweep_persist_attempts: int = 3
    subscription_lock_timeout_seconds: int = 10

    @field_validator('cors_origins', 'admin_emails', mode='before')
    @classmethod
    def parse_comma_separated(cls, v: Union[str, List[str]]) -> List[str]:
        """Parse list settings from a comma-separated environment variable."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(',') if item.strip()]
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
