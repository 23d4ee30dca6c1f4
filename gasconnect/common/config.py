from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_APP_NAME = "gasconnect-service"


class ServiceSettings(BaseSettings):
    """Settings shared by the GasConnect services and the order engine."""

    app_name: str = Field(default=DEFAULT_APP_NAME)
    environment: Literal["local", "dev", "staging", "prod"] = Field(default="local")
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    service_host: str = Field(default="0.0.0.0")
    service_port: int = Field(default=8000)
    enable_metrics: bool = Field(default=True)
    enable_tracing: bool = Field(default=False)
    tracing_endpoint: str | None = Field(default=None)
    tracing_protocol: Literal["http/protobuf", "grpc"] = Field(default="http/protobuf")
    tracing_insecure: bool = Field(default=True)
    tracing_sample_rate: float = Field(default=1.0, ge=0.0, le=1.0)
    database_url: str | None = Field(default=None)
    redis_url: str | None = Field(default=None)
    broker_url: str | None = Field(default=None)
    auth_service_url: str | None = Field(default=None)
    supplier_service_url: str | None = Field(default=None)
    internal_service_token: str | None = Field(default=None)
    http_timeout_seconds: float = Field(default=5.0, gt=0.0)

    # Order pricing and fees. Amounts are major currency units.
    currency: str = Field(default="NGN", min_length=3, max_length=3)
    order_number_prefix: str = Field(default="GC", min_length=1, max_length=8)
    tax_rate_percent: float = Field(default=7.5, ge=0.0)
    emergency_surcharge_percent: float = Field(default=15.0, ge=0.0)
    delivery_base_fee: float = Field(default=500.0, ge=0.0)
    delivery_fee_per_km: float = Field(default=50.0, ge=0.0)
    delivery_fee_max_km: float = Field(default=20.0, ge=0.0)
    delivery_min_fee: float = Field(default=500.0, ge=0.0)
    delivery_default_fee: float = Field(default=1000.0, ge=0.0)
    emergency_delivery_multiplier: float = Field(default=2.0, ge=1.0)

    # Supplier selection
    supplier_search_radius_km: float = Field(default=50.0, gt=0.0)
    selection_rating_weight: float = Field(default=0.4, ge=0.0)
    selection_distance_weight: float = Field(default=0.3, ge=0.0)
    selection_price_weight: float = Field(default=0.3, ge=0.0)
    selection_score_ceiling: float = Field(default=100.0, gt=0.0)

    # Inventory
    inventory_mode: Literal["reservation", "direct"] = Field(default="reservation")
    reservation_ttl_seconds: int = Field(default=900, ge=1)
    confirmed_reservation_ttl_seconds: int = Field(default=86400, ge=1)
    enable_reaper: bool = Field(default=True)
    reaper_interval_seconds: int = Field(default=60, ge=1)
    reaper_batch_size: int = Field(default=500, ge=1)
    sync_remote_inventory: bool = Field(default=False)
    check_remote_availability: bool = Field(default=False)

    # Delivery
    average_speed_kmh: float = Field(default=30.0, gt=0.0)
    preparation_lead_time_minutes: int = Field(default=120, ge=0)
    delivery_schedule_offset_days: int = Field(default=1, ge=0)
    tracking_history_limit: int = Field(default=20, ge=1)

    # Event publishing
    event_publish_attempts: int = Field(default=3, ge=1)
    event_retry_backoff_seconds: float = Field(default=0.05, ge=0.0)

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"), env_prefix="SERVICE_", extra="ignore"
    )


@lru_cache
def get_settings() -> ServiceSettings:
    """Return cached service settings."""

    return ServiceSettings()
