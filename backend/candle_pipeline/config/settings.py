"""
Candle pipeline settings: one pydantic-settings model per component,
grouped under a root Settings object (env vars use "__" nesting).
"""
from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional
from pathlib import Path


# ============================================================================
# COMPONENT SETTINGS
# ============================================================================

# backend/.env, resolved independent of the working directory
_BASE_DIR = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _BASE_DIR / ".env"


class CandleCacheConfig(BaseSettings):
    """Candle cache manager tuning.

    All durations are in seconds; the manager converts them to epoch-ms
    arithmetic internally.
    """
    cache_ttl_seconds: int = 30 * 60
    storage_ttl_seconds: int = 60 * 60
    max_incremental_gap_seconds: int = 24 * 60 * 60
    update_quiet_window_seconds: float = 5.0
    max_cached_candles: int = 2000
    max_recent_bars: int = 100
    max_out_bars: int = 1200
    base_cushion: float = 1.05
    default_limit: int = 500
    preload_timeframe: str = "5m"
    preload_limit: int = 2000
    sweep_interval_seconds: float = 10 * 60
    storage_prefix: str = "candles_cache_"
    model_config = SettingsConfigDict(env_prefix="CANDLE_CACHE__", extra="ignore")


class AggregatorConfig(BaseSettings):
    """Realtime tick aggregator tuning."""
    tick_buffer_max: int = 1000
    tick_buffer_keep: int = 500
    validation_window: int = 20
    max_deviation: float = 0.5
    max_check_interval_seconds: float = 5.0
    auto_track_timeframes: List[str] = Field(default_factory=list)
    model_config = SettingsConfigDict(env_prefix="AGGREGATOR__", extra="ignore")

    @field_validator("tick_buffer_keep")
    @classmethod
    def _keep_below_max(cls, v: int, info) -> int:
        max_size = info.data.get("tick_buffer_max", 1000)
        if v > max_size:
            raise ValueError(
                f"tick_buffer_keep ({v}) must not exceed tick_buffer_max ({max_size})"
            )
        return v


class AlpacaConfig(BaseSettings):
    """Alpaca market data endpoints and keys (REST history plus websocket stream)."""
    api_key_id: str = ""
    api_secret_key: str = ""
    data_base_url: str = "https://data.alpaca.markets"
    stream_url: str = "wss://stream.data.alpaca.markets/v2/iex"
    timeout_seconds: float = 30.0
    model_config = SettingsConfigDict(env_prefix="ALPACA__", extra="ignore")


class StorageConfig(BaseSettings):
    """Persistent cache storage configuration."""
    backend: str = "sql"  # "sql" or "memory"
    url: str = "sqlite+aiosqlite:///./data/candle_cache.db"
    model_config = SettingsConfigDict(env_prefix="STORAGE__", extra="ignore")


class LoggerConfig(BaseSettings):
    """Log file sink and call-site dedup filter."""
    default_level: str = "INFO"
    file_path: str = "./data/logs/candle_pipeline.log"
    rotation: str = "10 MB"
    retention: str = "30 days"
    filter_enabled: bool = True
    filter_max_history: int = 5
    filter_time_threshold_seconds: float = 1.0
    model_config = SettingsConfigDict(env_prefix="LOGGER__", extra="ignore")


# ============================================================================
# ROOT SETTINGS
# ============================================================================

class Settings(BaseSettings):
    """Root settings; each component section reads its own env prefix.

    Sections are rebuilt in __init__ so they see variables from .env.

    Example:
        LOGGER__DEFAULT_LEVEL=DEBUG
        CANDLE_CACHE__CACHE_TTL_SECONDS=900
        AGGREGATOR__AUTO_TRACK_TIMEFRAMES='["1m","5m"]'
    """

    # Application metadata
    APP_NAME: str = "Candle Pipeline"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Nested configuration sections (constructed after environment is loaded)
    CANDLE_CACHE: Optional[CandleCacheConfig] = None
    AGGREGATOR: Optional[AggregatorConfig] = None
    ALPACA: Optional[AlpacaConfig] = None
    STORAGE: Optional[StorageConfig] = None
    LOGGER: Optional[LoggerConfig] = None

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Each section reads its own prefixed variables
        self.CANDLE_CACHE = CandleCacheConfig()
        self.AGGREGATOR = AggregatorConfig()
        self.ALPACA = AlpacaConfig()
        self.STORAGE = StorageConfig()
        self.LOGGER = LoggerConfig()

    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        validate_default=True,
        env_prefix=""
    )


# Process-wide settings; .env values win over inherited environment

if _ENV_FILE.exists():
    load_dotenv(str(_ENV_FILE), override=True)

settings = Settings()
