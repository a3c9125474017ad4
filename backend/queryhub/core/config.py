from pydantic_settings import BaseSettings
from pathlib import Path
from typing import Dict, Optional


class Settings(BaseSettings):
    APP_NAME: str = "QueryHub – Ad-hoc Queries & CSV Uploads"

    # Holds both upload metadata and the uploaded tables themselves
    DATABASE_URL: str = "sqlite:///./queryhub.db"

    # Optional schema for uploaded tables (e.g. "uploads" on PostgreSQL)
    UPLOADS_SCHEMA: Optional[str] = None

    # -------- Query execution --------
    # Extra data sources, JSON in .env: DATA_SOURCES='{"warehouse": "postgresql://..."}'
    # "main" always points at DATABASE_URL unless overridden here
    DATA_SOURCES: Dict[str, str] = {}
    DEFAULT_DATA_SOURCE: str = "main"

    # How long a single /queries/run call may wait before handing back a token
    QUERY_TIME_BUDGET_SECONDS: float = 3.0
    QUERY_ROW_LIMIT: int = 10_000
    QUERY_WORKERS: int = 4

    # Abandoned runs are forgotten after this long
    CONTINUATION_TTL_SECONDS: int = 600
    SECRET_KEY: str = "change-me"

    # Client-side polling interval
    POLL_INTERVAL_SECONDS: float = 1.0

    # -------- Logging --------
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[Path] = None

    class Config:
        # Environment file for secrets
        env_file = ".env"
        # Ignore extra env vars instead of crashing
        extra = "ignore"

    def data_source_urls(self) -> Dict[str, str]:
        urls = {"main": self.DATABASE_URL}
        urls.update(self.DATA_SOURCES)
        return urls


settings = Settings()
