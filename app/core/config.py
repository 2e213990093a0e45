from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    DATABASE_URL: Optional[str] = None
    POSTGRES_USER: str = 'gymspace_user'
    POSTGRES_PASSWORD: str = 'gymspace_pass'
    POSTGRES_DB: str = 'gymspace_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432

    # Redis settings (broker de Celery)
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # Billing
    RENEWAL_WINDOW_DAYS: int = 30  # días antes del vencimiento
    EXPIRING_SOON_DAYS: int = 7
    GRACE_PERIOD_DAYS: int = 3  # días después del vencimiento
    BILLING_TRANSACTION_TIMEOUT_SECONDS: int = 30
    DEFAULT_CURRENCY: str = 'PEN'
    MONEY_DECIMAL_PLACES: int = 2  # máximo 2: escala de las columnas DECIMAL(10, 2)
    SUBSCRIPTION_EVENTS_ASYNC: bool = False

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", mode="before")
    @classmethod
    def parse_debug(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("SUBSCRIPTION_EVENTS_ASYNC", mode="before")
    @classmethod
    def parse_events_async(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("MONEY_DECIMAL_PLACES")
    @classmethod
    def validate_money_places(cls, v):
        if not 0 <= v <= 2:
            raise ValueError("MONEY_DECIMAL_PLACES debe estar entre 0 y 2")
        return v

    @field_validator("DEFAULT_CURRENCY", mode="before")
    @classmethod
    def parse_currency(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

settings = Settings()
