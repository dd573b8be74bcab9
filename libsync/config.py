import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    data_file: str = os.getenv("LIBSYNC_DB_FILE", "libsync.db")
    db_timeout: float = float(os.getenv("LIBSYNC_DB_TIMEOUT", "30"))

    # Circulation policy defaults (seed values for the settings table)
    loan_duration_days: int = int(os.getenv("LOAN_DURATION_DAYS", "14"))
    fine_per_day: int = int(os.getenv("FINE_PER_DAY", "10"))
    max_active_loans_per_student: int = int(os.getenv("MAX_ACTIVE_LOANS_PER_STUDENT", "4"))

    # Overdue reminder schedule
    reminder_daily_window_days: int = int(os.getenv("REMINDER_DAILY_WINDOW_DAYS", "15"))
    reminder_interval_days: int = int(os.getenv("REMINDER_INTERVAL_DAYS", "15"))

    # Notification settings
    notify_webhook_url: Optional[str] = os.getenv("NOTIFY_WEBHOOK_URL")
    notify_timeout: float = float(os.getenv("NOTIFY_TIMEOUT", "5"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "LibSync Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")


settings = Settings()
