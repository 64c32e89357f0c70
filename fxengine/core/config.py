from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_COMMON_CURRENCIES: Tuple[str, ...] = (
    "USD",
    "EUR",
    "GBP",
    "JPY",
    "CAD",
    "AUD",
    "CHF",
    "CNY",
    "NGN",
)


@dataclass(frozen=True)
class EngineConfig:
    """Immutable tunables handed to every rate engine component at startup."""

    api_key: Optional[str]
    api_base_url: str
    http_timeout_seconds: float
    http_retries: int
    cache_ttl: timedelta
    quota_threshold: float
    full_sync_interval: timedelta
    quota_check_interval: timedelta
    janitor_interval: timedelta
    inter_call_delay_seconds: float
    common_currencies: Tuple[str, ...]
    fallback_currency: str = "USD"
    override_ttl: timedelta = timedelta(hours=24)

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)


class Settings(BaseSettings):
    """Application settings loaded from environment with defaults.

    Environment variable mapping follows pydantic's rules (e.g., APP_NAME, DEBUG,
    DATA_DIR, DB_FILENAME, EXCHANGE_RATE_API_KEY, EXCHANGE_RATE_CACHE_TTL).
    """

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=False, extra="ignore"
    )

    # Basic app metadata
    app_name: str = "FX Rate Engine"
    debug: bool = False
    version: str = "0.1.0"

    # Data & persistence
    data_dir: Path = Path("data")
    db_filename: str = "fxengine.sqlite3"
    db_path: Optional[Path] = None  # derived if not provided

    # Upstream provider (ExchangeRate-API v6 wire format)
    exchange_rate_api_key: Optional[str] = None
    exchange_rate_api_url: str = "https://v6.exchangerate-api.com/v6"
    http_timeout_seconds: float = 10.0
    http_retries: int = 1

    # Cache & sync cadence
    exchange_rate_cache_ttl: int = 3600  # seconds
    quota_threshold: float = 0.1
    exchange_rate_sync_interval: int = 86400  # full sync, seconds
    quota_check_interval: int = 6 * 3600
    cache_cleanup_interval: int = 12 * 3600
    sync_inter_call_delay: float = 1.0
    common_currencies: Tuple[str, ...] = DEFAULT_COMMON_CURRENCIES

    # Background jobs can be disabled for tests / one-off scripts
    enable_scheduler: bool = True

    def init_post_load(self) -> None:
        """Finalize derived fields and ensure directories exist."""
        if self.db_path is None:
            self.db_path = self.data_dir / self.db_filename
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        if not (0 < self.quota_threshold < 1):
            raise ValueError(
                f"quota_threshold must be between 0 and 1, got {self.quota_threshold}"
            )
        if self.exchange_rate_cache_ttl <= 0:
            raise ValueError("exchange_rate_cache_ttl must be positive seconds")
        if self.sync_inter_call_delay < 0:
            raise ValueError("sync_inter_call_delay cannot be negative")

    def engine_config(self) -> EngineConfig:
        return EngineConfig(
            api_key=self.exchange_rate_api_key or None,
            api_base_url=self.exchange_rate_api_url.rstrip("/"),
            http_timeout_seconds=self.http_timeout_seconds,
            http_retries=max(0, self.http_retries),
            cache_ttl=timedelta(seconds=self.exchange_rate_cache_ttl),
            quota_threshold=self.quota_threshold,
            full_sync_interval=timedelta(seconds=self.exchange_rate_sync_interval),
            quota_check_interval=timedelta(seconds=self.quota_check_interval),
            janitor_interval=timedelta(seconds=self.cache_cleanup_interval),
            inter_call_delay_seconds=self.sync_inter_call_delay,
            common_currencies=tuple(c.upper() for c in self.common_currencies),
        )


@lru_cache
def get_settings() -> Settings:
    settings = Settings()
    settings.init_post_load()
    return settings
