"""Service settings, read from the environment or a local .env file."""
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, extra="ignore")

    # Database
    DATABASE_URL: str = "sqlite:///./rule_workflow.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Approval listing
    DEFAULT_PAGE_SIZE: int = 10
    MAX_PAGE_SIZE: int = 100

    # HTTP
    CORS_ALLOW_ORIGINS: List[str] = ["*"]

    @property
    def sqlalchemy_url(self) -> str:
        # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
        if self.DATABASE_URL.startswith("postgres://"):
            return self.DATABASE_URL.replace("postgres://", "postgresql://", 1)
        return self.DATABASE_URL


@lru_cache
def get_settings() -> Settings:
    return Settings()
