import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        data_dir: Path,
        database_url: str,
        timezone: str,
        csrf_secret: str,
        store_timeout_secs: float,
        page_size: int,
        due_soon_days: int,
        trend_cycles: int,
        top_merchants: int,
        sync_interval_minutes: int,
    ) -> None:
        self.data_dir = data_dir
        self.database_url = database_url
        self.timezone = timezone
        self.csrf_secret = csrf_secret
        self.store_timeout_secs = store_timeout_secs
        self.page_size = page_size
        self.due_soon_days = due_soon_days
        self.trend_cycles = trend_cycles
        self.top_merchants = top_merchants
        self.sync_interval_minutes = sync_interval_minutes

    @property
    def receipts_dir(self) -> Path:
        return self.data_dir / "receipts"

    @property
    def drafts_dir(self) -> Path:
        return self.data_dir / "drafts"


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "Asia/Jakarta")
    csrf_secret = os.getenv(
        "BUDGET_CSRF_SECRET",
        "3f9d0c6e8a1b47d2a5e6c7b8d9f0a1b2c3d4e5f60718293a4b5c6d7e8f901a2b",
    )
    store_timeout_secs = float(os.getenv("BUDGET_STORE_TIMEOUT_SECS", "5"))
    page_size = int(os.getenv("BUDGET_PAGE_SIZE", "20"))
    due_soon_days = int(os.getenv("BUDGET_DUE_SOON_DAYS", "7"))
    trend_cycles = int(os.getenv("BUDGET_TREND_CYCLES", "6"))
    top_merchants = int(os.getenv("BUDGET_TOP_MERCHANTS", "7"))
    sync_interval_minutes = int(os.getenv("BUDGET_SYNC_INTERVAL_MINUTES", "15"))
    return Settings(
        data_dir=data_dir,
        database_url=database_url,
        timezone=timezone,
        csrf_secret=csrf_secret,
        store_timeout_secs=store_timeout_secs,
        page_size=page_size,
        due_soon_days=due_soon_days,
        trend_cycles=trend_cycles,
        top_merchants=top_merchants,
        sync_interval_minutes=sync_interval_minutes,
    )
