from functools import lru_cache
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    supabase_url: str | None = None
    supabase_service_role_key: str | None = None

    openai_api_key: str | None = None
    google_api_key: str | None = None
    llm_provider: str = "gemini"
    llm_model: str = "gemini-2.5-flash"
    llm_fallback_provider: str | None = None
    llm_fallback_model: str | None = None
    llm_timeout_seconds: float = 30

    assistant_max_rounds: int = 8
    assistant_timezone: str = "America/New_York"
    duration_options_minutes: str = "15,30,45,60,90,120"
    entity_pick_limit: int = 10
    headless_default_event_minutes: int = 60

    chronos_inbox_key: str | None = None
    chronos_sa_client_email: str | None = None
    chronos_sa_private_key: str | None = None
    chronos_calendar_id: str | None = None
    fingerprint_lookback_days: int = 60
    fingerprint_lookahead_days: int = 365

    idempotency_storage: str = "auto"
    idempotency_table: str = "idempotency_records"
    idempotency_ttl_seconds: int = 604800
    idempotency_processing_stale_seconds: int = 300

    siri_queue_storage: str = "auto"
    siri_queue_table: str = "siri_messages"
    siri_queue_ttl_seconds: int = 600

    tool_specs_validate_on_startup: bool = True

    server_host: str = "0.0.0.0"
    server_port: int = 8000

    frontend_url: str = "http://localhost:3000"
    allowed_origins: str = "http://localhost:3000"

    @property
    def duration_options(self) -> list[int]:
        options = []
        for item in self.duration_options_minutes.split(","):
            item = item.strip()
            if item.isdigit() and int(item) > 0:
                options.append(int(item))
        return options or [15, 30, 45, 60, 90, 120]

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache
def get_settings() -> Settings:
    return Settings()
