import os
from dataclasses import dataclass
from decimal import Decimal
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
    # None lets database.py pick LIBRARY_DB_FILE or a per-process temp file
    database_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Circulation rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    default_max_books: int = int(os.getenv("DEFAULT_MAX_BOOKS", "5"))

    # Fine policy fallback, used when no active policy row exists
    default_fine_rate: Decimal = Decimal(os.getenv("DEFAULT_FINE_RATE", "5.00"))

    # Daily fine sweep time, local clock (midnight by default)
    fine_sweep_hour: int = int(os.getenv("FINE_SWEEP_HOUR", "0"))
    fine_sweep_minute: int = int(os.getenv("FINE_SWEEP_MINUTE", "0"))
    enable_scheduler: bool = os.getenv("ENABLE_SCHEDULER", "True").lower() in ("true", "1", "yes")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Circulation")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()
