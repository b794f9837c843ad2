from __future__ import annotations

from functools import lru_cache
import os
from pathlib import Path

from pydantic import BaseModel, Field

LOCAL_API_URL = "http://localhost:9090/opexhub/api"
PRODUCTION_API_URL = "https://dgapps.godeepak.com/opexhub/api"
PILOT_API_URL = "https://dgpilotapps.godeepak.com/opexhub/api"

_ORIGINS = {
    "localhost": LOCAL_API_URL,
    "127.0.0.1": LOCAL_API_URL,
    "dgapps.godeepak.com": PRODUCTION_API_URL,
    "dgpilotapps.godeepak.com": PILOT_API_URL,
}


def resolve_base_url(hostname: str | None) -> str:
    """Pick the backend origin for the deployment host; unknown hosts go local."""
    host = (hostname or "").strip().lower()
    if ":" in host:
        host = host.split(":", 1)[0]
    return _ORIGINS.get(host, LOCAL_API_URL)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes", "on")


def _resolve_home() -> Path:
    override = os.getenv("OPEXHUB_HOME", "").strip()
    if override:
        return Path(override).expanduser().resolve()
    return Path.home() / ".opexhub"


def _resolve_api_url() -> str:
    explicit = os.getenv("OPEXHUB_API_URL", "").strip()
    if explicit:
        return explicit.rstrip("/")
    return resolve_base_url(os.getenv("OPEXHUB_HOST", "localhost"))


class Settings(BaseModel):
    api_url: str = Field(default_factory=_resolve_api_url)
    home_dir: Path = Field(default_factory=_resolve_home)
    demo_mode: bool = Field(default_factory=lambda: _env_flag("OPEXHUB_DEMO"))
    request_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("OPEXHUB_TIMEOUT", "30"))
    )

    # Seconds a cached query family stays fresh.
    transactions_ttl: float = 120.0
    monitoring_ttl: float = 120.0
    timeline_ttl: float = 120.0
    initiatives_ttl: float = 300.0
    users_ttl: float = 600.0

    max_upload_bytes: int = 5 * 1024 * 1024

    @property
    def session_file(self) -> Path:
        return self.home_dir / "session.json"

    def ensure_directories(self) -> None:
        self.home_dir.mkdir(parents=True, exist_ok=True)

    def ttl_for(self, family: str) -> float:
        if family in ("users", "initiative-leads"):
            return self.users_ttl
        if family == "initiatives":
            return self.initiatives_ttl
        if family in ("monthly-monitoring", "monitoring-validation"):
            return self.monitoring_ttl
        if family in ("timeline-tracker", "timeline-validation", "progress-monitoring"):
            return self.timeline_ttl
        return self.transactions_ttl


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
