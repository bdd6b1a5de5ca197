from pydantic_settings import BaseSettings
from pydantic import field_validator
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # App Settings
    APP_NAME: str = "Return Lifecycle Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database (backs the SQL document store)
    DATABASE_URL: str = "sqlite+aiosqlite:///./returns.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # Document Store
    STORE_BACKEND: str = "sql"  # Options: sql, memory
    STORE_MAX_RETRIES: int = 25  # Attempts for run_atomic before giving up

    # Numbering periods are computed in this timezone
    TIMEZONE: str = "Asia/Bangkok"

    # Shared secret for admin actions and undo confirmations
    ADMIN_SECRET: str = ""

    # Document number that never takes part in the lock rule
    DOCUMENT_NO_PLACEHOLDER: str = "-"

    # NCR save guard: attempts per report write before rolling back the number
    NCR_SAVE_MAX_RETRIES: int = 3
    NCR_SAVE_RETRY_DELAY_SECONDS: float = 0.5

    # Telegram notifications (system_config/telegram overrides these when present)
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_CHAT_ID: str = ""
    TELEGRAM_ENABLED: bool = False
    TELEGRAM_API_URL: str = "https://api.telegram.org"
    TELEGRAM_TIMEOUT_SECONDS: float = 10.0

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @field_validator('STORE_BACKEND')
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("sql", "memory"):
            raise ValueError("STORE_BACKEND must be 'sql' or 'memory'")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
