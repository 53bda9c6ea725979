"""Configuration and settings management."""

from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import field_validator
from pathlib import Path

class Settings(BaseSettings):
    # JustTCG API
    JUSTTCG_API_KEY: Optional[str] = None
    JUSTTCG_BASE_URL: str = "https://api.justtcg.com/v1"

    # Logging
    LOG_LEVEL: str = "INFO"

    # Storage
    DB_PATH: str = "data/pricesync.db"

    # Pagination
    PAGE_SIZE: int = 200
    MAX_PAGES: int = 50

    # Transport
    REQUEST_TIMEOUT_S: float = 30.0
    RETRY_MAX_ATTEMPTS: int = 4
    RETRY_BASE_DELAY_S: float = 0.4
    RETRY_MAX_DELAY_S: float = 20.0

    @field_validator('JUSTTCG_API_KEY', mode='before')
    @classmethod
    def validate_api_key(cls, v):
        """Convert empty/whitespace strings to None."""
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator('LOG_LEVEL', mode='before')
    @classmethod
    def validate_log_level(cls, v):
        """Convert empty/whitespace strings to default."""
        if isinstance(v, str) and not v.strip():
            return "INFO"
        return v

    @field_validator('DB_PATH', mode='before')
    @classmethod
    def validate_db_path(cls, v):
        """Convert empty/whitespace strings to default."""
        if isinstance(v, str) and not v.strip():
            return "data/pricesync.db"
        return v

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }

# Global settings instance
settings = Settings()

def resolve_db_path(db_path: Optional[str] = None) -> Path:
    """Resolve the database path, relative paths against the project root."""
    path = Path(db_path or settings.DB_PATH)
    if not path.is_absolute():
        project_root = Path(__file__).parent.parent.parent
        path = project_root / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path
