import os
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path
from typing import Optional
from zoneinfo import ZoneInfo


class SplitwiseSettings:
    def __init__(
        self,
        root_url: str,
        api_key: str,
        user_id: int,
        group_id: int,
        timeout_secs: float,
    ) -> None:
        self.root_url = root_url
        self.api_key = api_key
        self.user_id = user_id
        self.group_id = group_id
        self.timeout_secs = timeout_secs


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        concurrency_retries: int,
        processor_interval_hours: float,
        splitwise_interval_hours: float,
        splitwise: Optional[SplitwiseSettings],
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.concurrency_retries = concurrency_retries
        self.processor_interval_hours = processor_interval_hours
        self.splitwise_interval_hours = splitwise_interval_hours
        self.splitwise = splitwise


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINANCE_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _splitwise_settings() -> Optional[SplitwiseSettings]:
    api_key = os.getenv("FINANCE_SPLITWISE_API_KEY")
    if not api_key:
        return None
    return SplitwiseSettings(
        root_url=os.getenv(
            "FINANCE_SPLITWISE_URL", "https://secure.splitwise.com/api/v3.0/"
        ),
        api_key=api_key,
        user_id=int(os.getenv("FINANCE_SPLITWISE_USER_ID", "0")),
        group_id=int(os.getenv("FINANCE_SPLITWISE_GROUP_ID", "0")),
        timeout_secs=float(os.getenv("FINANCE_SPLITWISE_TIMEOUT_SECS", "10")),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finance.db"
    database_url = os.getenv("FINANCE_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINANCE_TIMEZONE", "Europe/Amsterdam")
    concurrency_retries = int(os.getenv("FINANCE_CONCURRENCY_RETRIES", "10"))
    processor_interval_hours = float(
        os.getenv("FINANCE_PROCESSOR_INTERVAL_HOURS", "6")
    )
    splitwise_interval_hours = float(
        os.getenv("FINANCE_SPLITWISE_INTERVAL_HOURS", "1")
    )
    return Settings(
        database_url=database_url,
        timezone=timezone,
        concurrency_retries=concurrency_retries,
        processor_interval_hours=processor_interval_hours,
        splitwise_interval_hours=splitwise_interval_hours,
        splitwise=_splitwise_settings(),
    )


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()
