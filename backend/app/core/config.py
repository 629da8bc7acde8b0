"""
Application Configuration
Loads settings from environment variables using Pydantic Settings.
"""
from typing import List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # Application
    APP_NAME: str = "QueueFlow"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = True
    ENVIRONMENT: str = "development"
    UVICORN_PORT: int = 8000

    # Security (tokens are issued by the auth service, verified here)
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Database
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 0

    # Redis
    REDIS_URL: str

    # Celery
    CELERY_BROKER_URL: str
    CELERY_RESULT_BACKEND: str
    CELERY_TASK_SOFT_TIME_LIMIT: int = 270   # 4.5 min
    CELERY_TASK_TIME_LIMIT: int = 300        # 5 min

    # Celery Beat — intervalos das tarefas agendadas
    REMINDER_CHECK_MINUTES: int = 30

    # Frontend
    FRONTEND_URL: str = "http://localhost:3000"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"
    ALLOWED_HOSTS: List[str] = ["localhost", "127.0.0.1"]

    # Logging
    LOG_LEVEL: str = "INFO"

    # Subscription lifecycle
    TRIAL_DAYS: int = 2
    BILLING_PERIOD_DAYS: int = 30
    TRIAL_REMINDER_HOURS: int = 24
    RENEWAL_REMINDER_DAYS: int = 1
    SUBSCRIPTION_CACHE_TTL_SECONDS: int = 120

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_PUBLISHABLE_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PRICE_ID_STARTER: str = ""
    STRIPE_PRICE_ID_PROFESSIONAL: str = ""
    STRIPE_PRICE_ID_ENTERPRISE: str = ""

    # Operator (super admin) — receives approval notices
    SUPER_ADMIN_EMAIL: str = ""

    # Email (Mailtrap)
    EMAIL_ENABLED: bool = False
    MAILTRAP_API_KEY: str = ""
    MAILTRAP_SENDER_EMAIL: str = "noreply@queueflow.app"
    MAILTRAP_SENDER_NAME: str = "QueueFlow"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def stripe_price_ids(self) -> dict[str, str]:
        """Plan type -> Stripe price id, only for configured prices."""
        prices = {
            "starter": self.STRIPE_PRICE_ID_STARTER,
            "professional": self.STRIPE_PRICE_ID_PROFESSIONAL,
            "enterprise": self.STRIPE_PRICE_ID_ENTERPRISE,
        }
        return {plan: price for plan, price in prices.items() if price}

    @property
    def database_url_sync(self) -> str:
        """URL sincrona derivada da async para uso no Celery worker."""
        return (
            self.DATABASE_URL
            .replace("postgresql+asyncpg://", "postgresql+psycopg2://")
            .replace("sqlite+aiosqlite://", "sqlite://")
        )


# Singleton instance
settings = Settings()
