from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str
    SECRET_KEY: Optional[str] = None
    REDIS_URL: Optional[str] = None

    CACHE_GROUP: str = "formsync"
    CACHE_INVALIDATION: Literal["index", "flush"] = "index"

    POOL_MIN: int = 1
    POOL_MAX: int = 10
    STATEMENT_TIMEOUT_MS: Optional[int] = None

    INTEGRATIONS: str = "mailchimp"
    BATCH_SIZE: int = 50
    POLL_INTERVAL: float = 5.0
    DEFAULT_TIMEOUT: float = 30.0
    MAX_ATTEMPTS: int = 3
    RATE_LIMIT_WAIT: float = 2.0
    NETWORK_WAIT: float = 1.0
    DEFER_SECONDS: int = 300
    STALE_CLAIM_SECONDS: int = 300

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False
    METRICS_PORT: Optional[int] = None
    ALEMBIC_INI: str = "alembic.ini"

    @property
    def database_url(self) -> str:
        return self.DATABASE_URL.replace("postgresql+psycopg://", "postgresql://", 1)

    @property
    def sqlalchemy_url(self) -> str:
        """Same database, addressed through the psycopg 3 SQLAlchemy dialect."""
        return self.database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    @property
    def integration_ids(self) -> list[str]:
        return [i.strip() for i in self.INTEGRATIONS.split(",") if i.strip()]

    class Config:
        env_prefix = "FORMSYNC_"
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
