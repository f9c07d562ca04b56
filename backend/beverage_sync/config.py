"""Application configuration using Pydantic settings."""

from enum import StrEnum
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class RunKind(StrEnum):
    """Background run kinds guarded by their own lock, checkpoint and log."""

    FORWARD = "forward"
    BACKFILL = "backfill"
    GEOCODE = "geocode"
    ENRICHMENT_SYNC = "enrichment_sync"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Analytical store (single-writer SQLite file)
    data_dir: Path = Path("data")
    store_path: Path = Path("data/analytics.sqlite")

    # Texas.gov SODA API
    soda_app_token: str | None = None  # Optional but recommended for higher rate limits
    soda_base_url: str = "https://data.texas.gov/resource"
    receipts_dataset_id: str = "naix-2893"
    receipts_date_field: str = "obligation_end_date_yyyymmdd"

    # Fetch client
    fetch_timeout_seconds: float = 60.0
    fetch_max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_multiplier: float = 2.0

    # Ingestion
    forward_batch_size: int = 50000
    backfill_batch_size: int = 5000
    forward_lookback_months: int = 37
    backfill_default_months: int = 6
    max_record_errors: int = 100
    batch_pacing_seconds: float = 0.1
    # Half-cent tolerance for DECIMAL(15,2) round-tripping; tuned to this dataset.
    # Comparison is strict, so a whole-cent revision counts as modified. Raise it
    # above 0.01 (e.g. 0.011) to treat one-cent revisions as unchanged.
    monetary_epsilon: float = 0.005
    # Typical receipts filed per month in Texas; tuned to this dataset.
    typical_records_per_month: int = 23000

    # Geocoding
    geocode_providers: list[str] = ["census", "nominatim"]
    geocode_user_agent: str = "BeverageSync-Geocoder/1.0 (Texas beverage distribution analytics)"
    geocode_chunk_size: int = 50
    geocode_timeout_seconds: float = 30.0
    census_geocode_url: str = (
        "https://geocoding.geo.census.gov/geocoder/locations/onelineaddress"
    )
    census_requests_per_window: int = 170
    census_window_seconds: float = 60.0
    nominatim_url: str = "https://nominatim.openstreetmap.org/search"
    nominatim_requests_per_window: int = 1
    nominatim_window_seconds: float = 1.1
    mapbox_token: str | None = None
    mapbox_geocode_url: str = "https://api.mapbox.com/search/geocode/v6/forward"
    mapbox_requests_per_window: int = 600
    mapbox_window_seconds: float = 60.0

    # Enrichment source (operational database holding AI-assisted classifications)
    enrichment_source_url: str = "postgresql+asyncpg://localhost:5432/crm"

    # Detached runs
    launcher: str = "subprocess"  # "subprocess" or "screen"
    session_prefix: str = "beverage-sync"
    python_executable: str = "python"
    log_tail_lines: int = 50

    # Remote command channel (unset means the orchestrator runs on this host)
    remote_host: str | None = None
    remote_user: str | None = None
    remote_key_path: str = "~/.ssh/id_ed25519"
    remote_app_path: str = "~/beverage-sync"
    remote_command_timeout_seconds: float = 30.0

    # API settings
    api_v1_prefix: str = "/api/v1"
    cors_origins: list[str] = ["*"]  # Restrict in production
    rate_limit_per_minute: int = 60
    forward_trigger_interval_minutes: int = 0  # 0 disables the scheduled trigger

    # Environment
    debug: bool = False

    @property
    def store_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.store_path}"

    @property
    def staging_store_path(self) -> Path:
        path = self.store_path
        return path.with_name(f"{path.stem}-staging{path.suffix}")

    def lock_path(self, kind: RunKind) -> Path:
        return self.data_dir / f".{kind.value}-lock.json"

    def checkpoint_path(self, kind: RunKind) -> Path:
        return self.data_dir / f".{kind.value}-checkpoint.json"

    def log_path(self, kind: RunKind) -> Path:
        return self.data_dir / f".{kind.value}-log.txt"

    def session_name(self, kind: RunKind) -> str:
        return f"{self.session_prefix}-{kind.value.replace('_', '-')}"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
