"""
TicketMatch Configuration Module

Loads environment variables for backend configuration, including the escrow
policy knobs (fees, confirmation and dispute windows, sweep cadence).
"""
from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Escrow Notes:
    - Windows are expressed in hours/minutes and converted by EscrowPolicy
    - Demo mode makes the mock payment gateway approve every charge
    """

    # Demo Configuration
    demo_mode: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Database
    database_path: str = "./ticketmatch.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    # Escrow policy
    platform_fee_rate: Decimal = Decimal("0.05")
    confirmation_window_hours: int = 72
    dispute_window_hours: int = 72
    payment_window_minutes: int = 30
    offer_reactivation_hours: int = 24

    # Payment gateway
    gateway_timeout_seconds: float = 10.0
    settlement_lease_seconds: int = 300

    # Expiry sweep
    sweep_interval_seconds: int = 60
    sweep_concurrency: int = 8

    # Notifications
    notification_queue_size: int = 100
    notification_history_size: int = 50
    notification_history_users: int = 1000

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
