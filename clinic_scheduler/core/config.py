from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve .env from the project root so it loads regardless of cwd
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=(str(_ENV_FILE), ".env", "../.env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str
    database_ssl: bool = False

    # CORS
    cors_origins: str = "http://localhost:3000"

    # Scheduling rules
    default_slot_duration_minutes: int = 30
    max_reason_length: int = 255
    max_notes_length: int = 1000
    max_location_length: int = 50
    max_created_by_length: int = 100

    # No-show sweep: appointments still unattended grace minutes after start
    no_show_grace_minutes: int = 15
    no_show_sweep_enabled: bool = True
    no_show_sweep_interval_seconds: int = 300

    # Retries around the atomic booking unit (transient DB failures only)
    booking_retry_attempts: int = 3
    booking_retry_backoff_seconds: float = 0.05

    # Status-change events waiting for delivery before new ones are dropped
    event_queue_size: int = 1000

    # Env
    env: str = "development"

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.env.lower() == "production"


settings = Settings()
