from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict

from pydantic_settings import BaseSettings, SettingsConfigDict

from station_reconciler.core.exceptions import ConfigurationError


def find_env_file() -> str:
    env_file = ".env" if Path("/.dockerenv").exists() else ".env.local"

    current_path = Path.cwd()

    for path in [current_path] + list(current_path.parents):
        env_path = path / env_file
        if env_path.exists():
            return str(env_path)

    return env_file


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=find_env_file(),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Ledger database
    database_url: str = "postgresql+psycopg2://app:app@db:5432/stations"
    ledger_timeout_sec: float = 5.0
    ledger_write_retries: int = 3

    # Station telemetry API
    telemetry_base: str = "https://api.heycharge.example"
    telemetry_api_key: str = ""
    http_timeout_sec: float = 5.0
    fetch_concurrency: int = 8
    fetch_deadline_sec: float = 30.0

    # Reconciliation
    reconcile_interval_sec: int = 300
    grace_period_sec: int = 120
    # price tier (amount paid) -> allowed rental duration in seconds
    price_tier_allowances: Dict[str, int] = {"0.5": 2 * 3600, "1": 12 * 3600}
    auto_close_overdue: bool = False
    min_available_charge: int = 60

    # Station metadata cache
    station_metadata_ttl_sec: int = 300
    station_metadata_cache_size: int = 1024

    # Circuit Breaker settings
    cb_telemetry_fail_max: int = 5
    cb_telemetry_reset_timeout: int = 60

    # Observability
    metrics_port: int = 8002
    log_level: str = "INFO"


def parse_price_tiers(raw: Dict[str, int]) -> Dict[Decimal, int]:
    """Normalize the price tier table keys to Decimal amounts.

    Raises ConfigurationError for keys that are not positive amounts or
    for non-positive durations.
    """
    tiers: Dict[Decimal, int] = {}
    for key, seconds in raw.items():
        try:
            amount = Decimal(str(key))
        except InvalidOperation as e:
            raise ConfigurationError(f"Invalid price tier {key!r}") from e
        if not amount.is_finite() or amount <= 0:
            raise ConfigurationError(f"Price tier must be positive: {key!r}")
        if int(seconds) <= 0:
            raise ConfigurationError(
                f"Allowed duration for tier {key!r} must be positive, got {seconds}"
            )
        tiers[amount] = int(seconds)
    return tiers


def validate_settings(settings: Settings) -> Settings:
    positive = {
        "reconcile_interval_sec": settings.reconcile_interval_sec,
        "http_timeout_sec": settings.http_timeout_sec,
        "fetch_concurrency": settings.fetch_concurrency,
        "fetch_deadline_sec": settings.fetch_deadline_sec,
        "ledger_timeout_sec": settings.ledger_timeout_sec,
        "station_metadata_ttl_sec": settings.station_metadata_ttl_sec,
        "station_metadata_cache_size": settings.station_metadata_cache_size,
    }
    for name, value in positive.items():
        if value <= 0:
            raise ConfigurationError(f"{name} must be positive, got {value}")

    if settings.grace_period_sec < 0:
        raise ConfigurationError(
            f"grace_period_sec must not be negative, got {settings.grace_period_sec}"
        )
    if settings.ledger_write_retries < 1:
        raise ConfigurationError("ledger_write_retries must be at least 1")
    if not 0 <= settings.min_available_charge <= 100:
        raise ConfigurationError("min_available_charge must be within 0..100")

    parse_price_tiers(settings.price_tier_allowances)
    return settings
