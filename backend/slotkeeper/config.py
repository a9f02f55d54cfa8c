# backend/slotkeeper/config.py

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]  # repository root


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/slotkeeper.db"
    redis_url: str | None = None

    # Holds (checkout locks)
    hold_ttl_seconds: int = 300
    max_hold_ttl_seconds: int = 900

    # Waitlist offers
    waitlist_claim_window_seconds: int = 900

    # Bookings
    cancellation_window_hours: int = 24
    recurrence_max_occurrences: int = 52

    # Store round trips / per-slot mutex wait
    operation_timeout_seconds: float = 5.0

    # Background sweep and SSE
    sweep_interval_seconds: int = 15
    sse_heartbeat_seconds: int = 15

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        extra="ignore",
    )

    @property
    def resolved_database_url(self) -> str:
        url = self.database_url
        if url.startswith("sqlite:///./"):
            # Relative SQLite path -> absolute path under the repository root
            relative_path = url.replace("sqlite:///./", "")
            absolute_path = BASE_DIR / relative_path
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            return f"sqlite:///{absolute_path}"
        return url


settings = Settings()
