from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    database_url: str = "sqlite:///./examshare_offline.db"

    upstream_url: str = "http://localhost:5000"
    public_origin: str = "http://localhost:8080"
    submission_path: str = "/api/submissions"
    health_path: str = "/api/user"

    cache_name: str = "examshare-cache"
    cache_version: str = "v1"
    shell_assets: List[str] = ["/", "/index.html", "/manifest.json", "/auth"]
    shell_fallback: str = "/index.html"

    store_open_retries: int = 3
    store_open_backoff_seconds: float = 0.5

    request_timeout_seconds: float = 30.0
    connectivity_monitor: bool = True
    connectivity_interval_seconds: float = 15.0

    log_level: str = "INFO"
    log_file: str | None = None

    model_config = SettingsConfigDict(env_prefix="EXAMSHARE_", env_file=".env", extra="ignore")

    @property
    def submission_url(self) -> str:
        return self.upstream_url.rstrip("/") + self.submission_path

    @property
    def health_url(self) -> str:
        return self.upstream_url.rstrip("/") + self.health_path

settings = Settings()
