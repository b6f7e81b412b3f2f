from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    keepalive: bool = True
    upstream_host: str = "generativelanguage.googleapis.com"
    heartbeat_interval_seconds: float = 2.0
    upstream_connect_timeout_seconds: float = 5.0
    upstream_read_timeout_seconds: float = 600.0
    upstream_write_timeout_seconds: float = 30.0
    upstream_pool_timeout_seconds: float = 5.0
    cancel_upstream_on_disconnect: bool = False

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def heartbeat_interval(self) -> float:
        return max(0.01, float(self.heartbeat_interval_seconds))


@lru_cache
def get_settings() -> Settings:
    return Settings()
