"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version (format: a.bc.de - major.feature.patch)
    VERSION: str = "0.01.00"

    # Database
    DATABASE_URL: str

    # Session Token (supports key rotation)
    JWT_SECRET: str = "change-this-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 4

    # Google OAuth (per-user Gmail / Calendar connections)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""
    GMAIL_REDIRECT_URI: str = "http://localhost:8000/integrations/mail/callback"
    CALENDAR_REDIRECT_URI: str = "http://localhost:8000/integrations/calendar/callback"

    # Token Encryption (for storing OAuth tokens)
    FERNET_KEY: str = ""  # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Frontend (for safe redirects after OAuth)
    FRONTEND_URL: str = "http://localhost:3000"

    # Redis (rate limiting + cross-process progress events). Empty = in-memory.
    REDIS_URL: str = ""

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    RATE_LIMIT_API: int = 60
    RATE_LIMIT_SYNC: int = 10

    # Worker
    WORKER_POLL_INTERVAL: float = 2.0
    WORKER_CONCURRENCY: int = 4
    WORKER_TICK_SECONDS: float = 30.0
    JOB_TIMEOUT_SECONDS: int = 5 * 60
    JOB_MAX_ATTEMPTS: int = 3
    RETRY_DELAY_BASE_SECONDS: int = 30
    JOB_RETENTION_DAYS: int = 30

    # Token vault
    TOKEN_REFRESH_MARGIN_SECONDS: int = 60
    TOKEN_REFRESH_LOCK_SECONDS: int = 30
    PROVIDER_TIMEOUT_SECONDS: float = 20.0

    # Incremental fetch
    DEFAULT_OVERLAP_HOURS: int = 6
    INITIAL_LOOKBACK_DAYS: int = 30
    MAX_LOOKBACK_DAYS: int = 365
    MAX_RECORDS_PER_SYNC: int = 2000

    # Pipeline
    AUTO_ACCEPT_CONFIDENCE: float = 0.85
    SYNC_SCHEDULE_MINUTES: int = 60
    OPENAI_API_KEY: str = ""  # Enables remote embeddings when set
    EMBEDDING_MODEL: str = "text-embedding-3-small"

    # Progress events
    EVENT_HEARTBEAT_SECONDS: float = 15.0
    EVENT_QUEUE_SIZE: int = 100
    EVENT_RETRY_BASE_MS: int = 1000
    EVENT_RETRY_MAX_MS: int = 30000

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def cookie_secure(self) -> bool:
        """Secure cookies only in production."""
        return self.ENV != "dev"


settings = Settings()
