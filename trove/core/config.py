from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "trove-pipeline-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10

    max_attempts: int = 3
    extraction_batch_size: int = 10
    normalization_batch_size: int = 10
    media_batch_size: int = 5
    scheduler_batch_size: int = 50
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    scheduler_interval_seconds: float = 60.0
    stale_claim_seconds: int = 900
    reaper_interval_seconds: float = 60.0

    upstream_timeout_seconds: float = 15.0
    media_timeout_seconds: float = 30.0
    token_refresh_margin_seconds: int = 300

    strava_poll_interval_minutes: int = 60
    bluesky_poll_interval_minutes: int = 30
    instagram_poll_interval_minutes: int = 360

    strava_client_id: str | None = None
    strava_client_secret: str | None = None
    strava_webhook_secret: str | None = None
    strava_verify_token: str | None = None
    bluesky_webhook_secret: str | None = None
    bluesky_pds_url: str = "https://bsky.social"
    instagram_webhook_secret: str | None = None

    credential_key: str | None = None

    storage_backend: str = "local"
    storage_root: str = "archive"
    supabase_url: str | None = None
    supabase_service_key: str | None = None
    supabase_bucket: str = "media"

    admin_api_key_hash: str | None = None

    log_level: str = "INFO"
    otel_enabled: bool = True
    otel_service_name: str = "trove-pipeline"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="TROVE_", extra="ignore")

    def poll_interval_minutes(self, platform: str) -> int:
        intervals = {
            "strava": self.strava_poll_interval_minutes,
            "bluesky": self.bluesky_poll_interval_minutes,
            "instagram": self.instagram_poll_interval_minutes,
        }
        return intervals.get(platform, self.strava_poll_interval_minutes)

    def webhook_secret(self, platform: str) -> str | None:
        secrets = {
            "strava": self.strava_webhook_secret,
            "bluesky": self.bluesky_webhook_secret,
            "instagram": self.instagram_webhook_secret,
        }
        return secrets.get(platform)


@lru_cache
def get_settings() -> Settings:
    return Settings()
