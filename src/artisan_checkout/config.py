"""Configuration management for the artisan checkout service."""

from __future__ import annotations

from decimal import Decimal

from common.config import Settings as BaseSettings


class Settings(BaseSettings):
    """Checkout orchestration configuration.

    Inherits infrastructure and logging settings from
    ``common.config.Settings`` and adds checkout-specific options.
    """

    # Service identity
    service_name: str = "artisan-checkout"
    service_version: str = "0.1.0"
    host: str = "0.0.0.0"
    port: int = 8030
    currency: str = "CAD"

    # Collaborating services
    use_mock_services: bool = True
    geocoding_url: str = "https://nominatim.openstreetmap.org"
    courier_url: str = "http://localhost:8031"
    payment_gateway_url: str = "http://localhost:8032"
    ledger_url: str = "http://localhost:8033"
    orders_url: str = "http://localhost:8034"

    # Timeouts and limits
    geocode_timeout: float = 5.0
    courier_timeout: float = 10.0
    gateway_timeout: float = 30.0
    ledger_timeout: float = 10.0
    geocode_min_interval_seconds: float = 1.0

    # Courier quotes
    courier_buffer_percent: Decimal = Decimal("20")
    courier_min_buffer: Decimal | None = None
    courier_max_buffer: Decimal | None = None
    courier_quote_validity_seconds: int = 900
    courier_fallback_base_fee: Decimal = Decimal("8.00")
    courier_fallback_per_km: Decimal = Decimal("1.50")
    courier_fallback_distance_km: float = 10.0

    # Buffer settlement
    courier_refund_threshold: Decimal = Decimal("0")
    courier_auto_approve_threshold: Decimal = Decimal("0.50")
    courier_seller_absorption_limit: Decimal = Decimal("5.00")

    # Pickup scheduling
    pickup_days_ahead: int = 7

    # Session behaviour
    address_debounce_seconds: float = 0.5
    session_ttl_seconds: int = 3600

    # Payment rails
    ledger_roles: list[str] = ["artisan"]


def get_settings() -> Settings:
    """Return a settings instance."""
    return Settings()
