from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    APP_NAME: str = "Procurement Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    PORT: int = 8000

    DATABASE_URL: str = "sqlite+aiosqlite:///./procurement.db"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_RECYCLE: int = 300
    DB_REQUIRE_SSL: bool = False
    AUTO_CREATE_TABLES: bool = True

    JWT_SECRET_KEY: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # Concurrency
    LOCK_TIMEOUT_SECONDS: float = 5.0
    PERSISTENCE_TIMEOUT_SECONDS: float = 10.0
    CONFLICT_RETRY_ATTEMPTS: int = 3

    # Approval ceilings in cents; 0 means no cap
    APPROVAL_CEILING_MANAGER_CENTS: int = 10_000_000
    APPROVAL_CEILING_EMPLOYEE_CENTS: int = 2_500_000
    APPROVAL_WARNING_RATIO: float = 0.8

    LARGE_QUANTITY_THRESHOLD: int = 10_000
    NEAR_EXPIRY_DAYS: int = 30

    EMERGENCY_ACCESS_ENABLED: bool = False

    CORS_ORIGINS: str = "http://localhost:3000"
    CORS_ORIGIN_REGEX: Optional[str] = None

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.CORS_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
