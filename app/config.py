from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Database settings
    DATABASE_URL: str = "postgresql://localhost:5432/astrotalk"

    # Redis settings
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20

    # Auth settings (shared with the HTTP login flow that issues tokens)
    JWT_SECRET: str | None = None
    JWT_ALGORITHM: str = "HS256"

    # Firebase Cloud Messaging (service account)
    FIREBASE_PROJECT_ID: str | None = None
    FIREBASE_CLIENT_EMAIL: str | None = None
    FIREBASE_PRIVATE_KEY: str | None = None

    # SendGrid settings
    SENDGRID_API_KEY: str | None = None
    FROM_EMAIL: str = "noreply@trueastrotalk.com"
    FROM_NAME: str = "True Astrotalk"
    FRONTEND_URL: str = "https://trueastrotalk.com"

    # Upper bound for a single push/email provider call
    NOTIFICATION_PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_BACKEND: str = "redis"  # "redis" or "memory"

    # Realtime hub
    REALTIME_REGISTRY_BACKEND: str = "memory"  # "memory" or "redis"
    CALL_RING_TIMEOUT_SECONDS: int = 60
    CALL_REAPER_INTERVAL_SECONDS: int = 30
    CALL_DISCONNECT_GRACE_SECONDS: int = 120
    PRESENCE_HEARTBEAT_SECONDS: int = 30
    PRESENCE_TTL_SECONDS: int = 90  # Redis presence entries not refreshed for this long are swept

    # =================================================================
    # DATABASE POOL SETTINGS - Simple and configurable
    # =================================================================
    DB_POOL_MIN_SIZE: int = 3
    DB_POOL_MAX_SIZE: int = 12
    DB_POOL_TIMEOUT: float = 30.0
    DB_POOL_MAX_IDLE: float = 600.0  # 10 minutes
    DB_POOL_MAX_LIFETIME: float = 3600.0  # 1 hour
    DB_STATEMENT_TIMEOUT_MS: int = 30_000

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def firebase_configured(self) -> bool:
        """True when every service-account field needed for FCM is present."""
        return bool(
            self.FIREBASE_PROJECT_ID and self.FIREBASE_CLIENT_EMAIL and self.FIREBASE_PRIVATE_KEY
        )

    def firebase_private_key(self) -> str | None:
        """
        Private key with escaped newlines restored.

        Keys pasted into env files usually arrive as a single line with
        literal "\\n" sequences.
        """
        if not self.FIREBASE_PRIVATE_KEY:
            return None
        return self.FIREBASE_PRIVATE_KEY.replace("\\n", "\n")

    def sendgrid_configured(self) -> bool:
        return bool(self.SENDGRID_API_KEY)

    def get_db_pool_config(self) -> dict:
        """
        Get database pool configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "min_size": self.DB_POOL_MIN_SIZE,
            "max_size": self.DB_POOL_MAX_SIZE,
            "timeout": self.DB_POOL_TIMEOUT,
            "max_idle": self.DB_POOL_MAX_IDLE,
            "max_lifetime": self.DB_POOL_MAX_LIFETIME,
        }

        if self.environment == "development":
            # More conservative for local development
            config.update(
                {
                    "min_size": 2,
                    "max_size": 6,
                    "timeout": 15.0,
                }
            )

        return config


settings = Settings()
