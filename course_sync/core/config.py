from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Course Sync"
    ENVIRONMENT: str = "development"  # "development", "staging" or "production"

    # Database (SQLite for local runs, Postgres in production)
    DATABASE_URL: str = "sqlite:///./course_sync.db"

    # Error reporting / alerting
    SENTRY_DSN: str = ""
    DISCORD_ALERTS_WEBHOOK_URL: str = ""

    # External course provider
    COURSE_API_BASE_URL: str = "https://api.golfcourseapi.com"
    COURSE_API_KEY: str = ""
    COURSE_API_TIMEOUT: float = 30.0

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RECOVERY_TIMEOUT: float = 60.0  # seconds
    CIRCUIT_PERSIST_STATE: bool = True

    # Retry policy
    RETRY_MAX_BACKOFF_SECONDS: int = 600  # 10 minutes
    RETRY_API_MAX_EXECUTIONS: int = 5  # network / API errors
    RETRY_DEFAULT_MAX_EXECUTIONS: int = 3  # everything else
    RATE_LIMIT_MAX_EXECUTIONS: Optional[int] = None  # None = unbounded
    DEADLOCK_MAX_ATTEMPTS: int = 3

    # Dead letter
    FAILED_JOB_RETENTION: int = 1000
    CRITICAL_JOB_CLASSES: set[str] = {"CoursesSyncJob", "UserHandicapUpdateJob", "PaymentProcessingJob"}

    # Error tracker
    ERROR_TRACKER_CAPACITY: int = 100

    # Sync passes
    SYNC_BATCH_SIZE: int = 50
    SYNC_REQUEST_DELAY: float = 1.0  # seconds between provider requests
    SYNC_FETCH_MAX_RETRIES: int = 3  # in-pass retries per record
    SYNC_FETCH_MAX_BACKOFF: int = 60  # seconds
    INITIAL_SYNC_START_ID: int = 5000
    INITIAL_SYNC_DEFAULT_LIMIT: int = 25000
    UPDATE_SYNC_INTERVAL_MINUTES: int = 60

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"


settings = Settings()
