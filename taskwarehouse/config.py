from dataclasses import dataclass
from datetime import date
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    warehouse_database_url: str
    source_database_url: str
    log_level: str
    source_system: str
    created_by: str
    calendar_start: date
    calendar_end: date
    workday_hours: float
    history_hours: int
    max_batch_retries: int
    retry_backoff_seconds: float
    schedule_hour_utc: int
    schedule_minute_utc: int


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "taskwarehouse"),
        warehouse_database_url=os.getenv("WAREHOUSE_DATABASE_URL", "sqlite:///./warehouse.db"),
        source_database_url=os.getenv("SOURCE_DATABASE_URL", "sqlite:///./oltp.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        source_system=os.getenv("SOURCE_SYSTEM", "OLTP"),
        created_by=os.getenv("ETL_CREATED_BY", "ETL_MASTER"),
        calendar_start=date.fromisoformat(os.getenv("CALENDAR_START", "2020-01-01")),
        calendar_end=date.fromisoformat(os.getenv("CALENDAR_END", "2030-12-31")),
        workday_hours=float(os.getenv("WORKDAY_HOURS", "8")),
        history_hours=int(os.getenv("HISTORY_HOURS", "24")),
        max_batch_retries=int(os.getenv("MAX_BATCH_RETRIES", "1")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "30")),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "1")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
    )
