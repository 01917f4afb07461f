import os
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        run_hour: int,
        run_minute: int,
        concurrency: int,
        run_on_startup: bool,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.run_hour = run_hour
        self.run_minute = run_minute
        self.concurrency = concurrency
        self.run_on_startup = run_on_startup
        self.log_level = log_level

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    database_url = os.getenv("LEDGER_DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{_ensure_data_dir() / 'ledger.db'}"
    timezone = os.getenv("LEDGER_TIMEZONE", "Asia/Kuala_Lumpur")
    # Fail at startup rather than at the first run.
    ZoneInfo(timezone)
    run_hour = int(os.getenv("LEDGER_RUN_HOUR", "0"))
    run_minute = int(os.getenv("LEDGER_RUN_MINUTE", "0"))
    concurrency = max(1, int(os.getenv("LEDGER_CONCURRENCY", "4")))
    run_on_startup = _env_flag("LEDGER_RUN_ON_STARTUP", True)
    log_level = os.getenv("LEDGER_LOG_LEVEL", "INFO").upper()
    return Settings(
        database_url=database_url,
        timezone=timezone,
        run_hour=run_hour,
        run_minute=run_minute,
        concurrency=concurrency,
        run_on_startup=run_on_startup,
        log_level=log_level,
    )
