from pydantic_settings import BaseSettings, SettingsConfigDict


class FeedConfigError(RuntimeError):
    """Feed URL or credentials missing. Aborts a run before anything is written."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Runtime ---
    ENV: str = "dev"  # dev|prod
    BUILDINGSYNC_DB_URL: str = "sqlite+aiosqlite:///./buildingsync.db"

    # --- Admin auth ---
    # Send: X-API-Key: <key>
    API_KEY: str | None = None
    # Cron route expects: Authorization: Bearer <secret>
    CRON_SECRET: str | None = None

    # --- Upstream listing feed (RESO Web API / OData) ---
    PROPTX_RESO_API_URL: str | None = None
    PROPTX_VOW_TOKEN: str | None = None
    PROPTX_DLA_TOKEN: str | None = None
    PROPTX_BEARER_TOKEN: str | None = None

    FEED_PAGE_SIZE: int = 5000
    FEED_NAME_LOOKUP_TOP: int = 500

    # --- HTTP resilience ---
    HTTP_TIMEOUT_S: float = 60.0
    HTTP_MAX_RETRIES: int = 3
    HTTP_BACKOFF_BASE_S: float = 5.0
    HTTP_RETRY_AFTER_CAP_S: float = 120.0

    # --- Batching ---
    NAME_LOOKUP_BATCH_SIZE: int = 10
    ASSIGN_BATCH_SIZE: int = 10
    MUNICIPALITY_CONCURRENCY: int = 2
    ENHANCED_BATCH_SIZE: int = 25
    UPSERT_BATCH_SIZE: int = 100

    # --- Scheduler ---
    SCHED_NIGHTLY_HOUR: int = 3
    SCHED_NIGHTLY_MINUTE: int = 0

    @property
    def feed_token(self) -> str | None:
        return self.PROPTX_VOW_TOKEN or self.PROPTX_DLA_TOKEN or self.PROPTX_BEARER_TOKEN


def validate_feed_config(cfg: Settings | None = None) -> None:
    cfg = cfg or settings
    if not cfg.PROPTX_RESO_API_URL:
        raise FeedConfigError("PROPTX_RESO_API_URL not set")
    if not cfg.feed_token:
        raise FeedConfigError(
            "No feed token found (checked PROPTX_VOW_TOKEN, PROPTX_DLA_TOKEN, PROPTX_BEARER_TOKEN)"
        )


settings = Settings()
