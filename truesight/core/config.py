from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # core
    ENV: str = "dev"
    API_PREFIX: str = "/api"

    # database & redis
    # Plain strings so sqlite:// and redis:// URLs are always accepted
    DATABASE_URL: str
    REDIS_URL: str = "redis://localhost:6379/0"

    # auth / security
    API_AUTH_KEY: str | None = None
    FRONTEND_ORIGIN: str | None = None
    CORS_ALLOW_ALL_ORIGINS: bool = False

    # llm
    OPENAI_API_KEY: str | None = None
    LLM_MODEL: str = "gpt-5-mini"
    # Hard cap on concurrent LLM calls per process
    LLM_MAX_CONCURRENCY: int = 4
    LLM_TIMEOUT_SECONDS: float = 600.0

    # run leases
    RUN_LEASE_TTL_SECONDS: int = 60
    RUN_HEARTBEAT_INTERVAL_SECONDS: float = 15.0
    # Cooldown before an unowned PROCESSING run may be recovered
    RUN_RECOVERY_GRACE_SECONDS: int = 60

    # retries (1 initial attempt + 3 retries)
    INVESTIGATION_MAX_ATTEMPTS: int = 4
    RETRY_BACKOFF_BASE_SECONDS: int = 5
    RETRY_BACKOFF_MAX_SECONDS: int = 300

    # admission
    SELECTOR_BUDGET: int = 25
    SELECTOR_INTERVAL_SECONDS: float = 300.0
    STALE_RUN_SWEEP_INTERVAL_SECONDS: float = 60.0
    STALE_RUN_SWEEP_BATCH_SIZE: int = 100
    WORD_COUNT_LIMIT: int = 10000

    # popularity: credits per post per IP range (/24, IPv6 /48) per day
    IP_RANGE_CREDIT_CAP: int = 10

    # user-supplied OpenAI keys (encrypted at rest)
    KEY_SOURCE_ENCRYPTION_KEY: str | None = None
    KEY_SOURCE_KEY_ID: str = "default"
    KEY_SOURCE_TTL_SECONDS: int = 30 * 60

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
