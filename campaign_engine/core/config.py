"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_RATE_LIMIT_BUCKETS: dict[str, dict[str, float]] = {
    # capacity / refill_rate tokens every interval_seconds
    "lemlist": {"capacity": 20, "refill_rate": 20, "interval_seconds": 10},
    "postmark": {"capacity": 50, "refill_rate": 50, "interval_seconds": 10},
    "phantombuster": {"capacity": 30, "refill_rate": 30, "interval_seconds": 60},
    "heygen": {"capacity": 10, "refill_rate": 10, "interval_seconds": 60},
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version
    VERSION: str = "0.1.0"

    # Database
    DATABASE_URL: str

    # Redis (memory:// disables Redis-backed stores)
    REDIS_URL: str = ""
    REDIS_MAX_CONNECTIONS: int = 20
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 2.0

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000"

    # Public base URL used for provider callbacks (HeyGen callback_url)
    API_BASE_URL: str = "http://localhost:8000"

    # Sentry (optional)
    SENTRY_DSN: str = ""

    # Worker
    WORKER_POLL_INTERVAL: int = 5  # seconds between polls
    WORKER_BATCH_SIZE: int = 10
    WORKER_STALE_CLAIM_SECONDS: int = 900  # processing claims older than this are requeued
    WORKER_SWEEP_INTERVAL: int = 60  # seconds between dispatch sweeps

    # Job retries
    JOB_MAX_ATTEMPTS: int = 3
    JOB_RETRY_BASE_SECONDS: int = 30
    JOB_RETRY_MAX_SECONDS: int = 3600
    JOB_RETENTION_DAYS: int = 90
    ORPHANED_EVENT_MAX_ATTEMPTS: int = 6

    # Outbound rate limiting (token buckets, per service)
    RATE_LIMIT_BUCKETS: dict[str, dict[str, float]] = DEFAULT_RATE_LIMIT_BUCKETS
    RATE_LIMIT_DEFAULT_CAPACITY: int = 10
    RATE_LIMIT_DEFAULT_REFILL_RATE: int = 10
    RATE_LIMIT_DEFAULT_INTERVAL_SECONDS: float = 10.0
    RATE_LIMIT_MAX_WAIT_SECONDS: float = 120.0

    # Inbound rate limiting (slowapi)
    RATE_LIMIT_WEBHOOK: int = 300  # webhook requests per minute per client

    # Provider selection (one selector per capability)
    EMAIL_PROVIDER: str = "lemlist"
    LINKEDIN_PROVIDER: str = "lemlist"
    VIDEO_PROVIDER: str = "heygen"
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_MAX_ATTEMPTS: int = 3
    WEBHOOK_MAX_PAYLOAD_BYTES: int = 1_000_000

    # Lemlist (email + LinkedIn)
    LEMLIST_API_KEY: str = ""
    LEMLIST_WEBHOOK_SECRET: str = ""
    LEMLIST_API_URL: str = "https://api.lemlist.com/api"

    # Postmark (email)
    POSTMARK_SERVER_TOKEN: str = ""
    POSTMARK_WEBHOOK_SECRET: str = ""  # "user:password" expected in Basic auth
    POSTMARK_SENDER_EMAIL: str = ""
    POSTMARK_MESSAGE_STREAM: str = "outbound"
    POSTMARK_API_URL: str = "https://api.postmarkapp.com"

    # PhantomBuster (LinkedIn)
    PHANTOMBUSTER_API_KEY: str = ""
    PHANTOMBUSTER_WEBHOOK_SECRET: str = ""
    PHANTOMBUSTER_API_URL: str = "https://api.phantombuster.com/api/v2"
    PHANTOMBUSTER_PROFILE_VISITOR_AGENT_ID: str = ""
    PHANTOMBUSTER_CONNECTION_AGENT_ID: str = ""
    PHANTOMBUSTER_MESSAGE_AGENT_ID: str = ""
    LINKEDIN_SESSION_COOKIE: str = ""
    # Daily caps per LinkedIn account, reset at midnight in LINKEDIN_LIMITS_TIMEZONE
    LINKEDIN_DAILY_CONNECTION_LIMIT: int = 20
    LINKEDIN_DAILY_MESSAGE_LIMIT: int = 50
    LINKEDIN_DAILY_PROFILE_LIMIT: int = 500
    LINKEDIN_LIMITS_TIMEZONE: str = "America/Los_Angeles"
    LINKEDIN_USAGE_RETENTION_DAYS: int = 30

    # HeyGen (video)
    HEYGEN_API_KEY: str = ""
    HEYGEN_WEBHOOK_SECRET: str = ""
    HEYGEN_API_URL: str = "https://api.heygen.com"

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]

    @property
    def is_dev(self) -> bool:
        return self.ENV.lower() in ("dev", "development", "test")


settings = Settings()
