"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class LendingConfig(BaseSettings):
    """Lending engine configuration"""
    
    # Storage configuration
    use_sqlite: bool = True
    database_path: str = "p2p_lending.db"
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cron_secret: str = ""  # Empty = cron endpoints unauthenticated
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Matching configuration
    offer_ttl_hours: int = 24
    max_offers_per_loan: int = 5
    default_interest_rate: str = "10"  # Percent, used when no lender policy applies
    
    # Payment configuration
    early_payment_days: int = 2  # Paid more than this many days before due = early
    payment_failed_penalty: int = -5
    
    # Eligibility configuration
    repayment_threshold: str = "0.75"
    loans_per_tier_upgrade: int = 3
    restriction_days: int = 90
    tier_1_limit: str = "150"
    tier_2_limit: str = "300"
    tier_3_limit: str = "600"
    tier_4_limit: str = "1200"
    tier_5_limit: str = "2000"
    tier_6_limit: Optional[str] = None  # Unlimited
    
    # Vouching configuration
    vouch_lock_threshold: int = 2
    min_voucher_account_age_days: int = 7
    
    # Notification configuration
    notification_webhook_url: str = ""  # Empty = webhook delivery disabled
    notification_timeout: float = 10.0
    
    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False
    
    def tier_limits(self) -> dict:
        """Borrowing ceiling per personal-lending tier (None = unlimited)"""
        return {
            1: self.tier_1_limit,
            2: self.tier_2_limit,
            3: self.tier_3_limit,
            4: self.tier_4_limit,
            5: self.tier_5_limit,
            6: self.tier_6_limit,
        }


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
