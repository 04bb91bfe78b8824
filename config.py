import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        base_currency: str,
        fx_provider: str,
        fx_markup_bps: int,
        fx_timeout_secs: float,
        fx_cache_ttl_hours: int,
        fx_refresh_hour: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.base_currency = base_currency
        self.fx_provider = fx_provider
        self.fx_markup_bps = fx_markup_bps
        self.fx_timeout_secs = fx_timeout_secs
        self.fx_cache_ttl_hours = fx_cache_ttl_hours
        self.fx_refresh_hour = fx_refresh_hour
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    base_currency = os.getenv("LEDGER_BASE_CURRENCY", "USD").strip().upper()
    fx_provider = os.getenv("LEDGER_FX_PROVIDER", "frankfurter")
    fx_markup_bps = int(os.getenv("LEDGER_FX_MARKUP_BPS", "0"))
    fx_timeout_secs = float(os.getenv("LEDGER_FX_TIMEOUT_SECS", "5"))
    fx_cache_ttl_hours = int(os.getenv("LEDGER_FX_CACHE_TTL_HOURS", "24"))
    fx_refresh_hour = int(os.getenv("LEDGER_FX_REFRESH_HOUR", "2"))
    scheduler_enabled = _env_flag("LEDGER_SCHEDULER_ENABLED", "1")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        base_currency=base_currency,
        fx_provider=fx_provider,
        fx_markup_bps=fx_markup_bps,
        fx_timeout_secs=fx_timeout_secs,
        fx_cache_ttl_hours=fx_cache_ttl_hours,
        fx_refresh_hour=fx_refresh_hour,
        scheduler_enabled=scheduler_enabled,
    )
