import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        data_dir: Path,
        database_url: str,
        timezone: str,
        user_id: str,
        fx_provider: str,
        fx_timeout_secs: float,
        cache_capacity: int,
        cache_ttl_secs: float,
        save_debounce_secs: float,
        periodic_save_secs: float,
        sync_interval_secs: float,
        log_level: str,
    ) -> None:
        self.data_dir = data_dir
        self.database_url = database_url
        self.timezone = timezone
        self.user_id = user_id
        self.fx_provider = fx_provider
        self.fx_timeout_secs = fx_timeout_secs
        self.cache_capacity = cache_capacity
        self.cache_ttl_secs = cache_ttl_secs
        self.save_debounce_secs = save_debounce_secs
        self.periodic_save_secs = periodic_save_secs
        self.sync_interval_secs = sync_interval_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    return Settings(
        data_dir=data_dir,
        database_url=os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}"),
        timezone=os.getenv("LEDGER_TIMEZONE", "Europe/Berlin"),
        user_id=os.getenv("LEDGER_USER_ID", "local-user"),
        fx_provider=os.getenv("LEDGER_FX_PROVIDER", "frankfurter"),
        fx_timeout_secs=float(os.getenv("LEDGER_FX_TIMEOUT_SECS", "5")),
        cache_capacity=int(os.getenv("LEDGER_CACHE_CAPACITY", "10")),
        cache_ttl_secs=float(os.getenv("LEDGER_CACHE_TTL_SECS", "3600")),
        save_debounce_secs=float(os.getenv("LEDGER_SAVE_DEBOUNCE_SECS", "2")),
        periodic_save_secs=float(os.getenv("LEDGER_PERIODIC_SAVE_SECS", "30")),
        sync_interval_secs=float(os.getenv("LEDGER_SYNC_INTERVAL_SECS", "30")),
        log_level=os.getenv("LEDGER_LOG_LEVEL", "INFO"),
    )
