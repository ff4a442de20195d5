'''
Runtime configuration for Ledgerline.

Values come from LEDGERLINE_* environment variables, then an optional
.env file, then the defaults below. get_settings() returns a
process-wide instance that tests replace with set_settings() or drop
with reset_settings().
'''

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = ['Settings', 'get_settings', 'reset_settings', 'set_settings']


class Settings(BaseSettings):

    '''Ledgerline configuration loaded from the environment.'''

    model_config = SettingsConfigDict(
        env_prefix='LEDGERLINE_',
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore',
    )

    log_level: str = 'INFO'

    # Cache layer
    stale_time_s: float = Field(default=300.0, ge=0)
    gc_time_s: float = Field(default=600.0, ge=0)
    invalidation_debounce_s: float = Field(default=0.1, ge=0)
    dedup_window_s: float = Field(default=1.0, ge=0)

    # Retry with backoff
    retry_base_delay_s: float = Field(default=1.0, ge=0)
    retry_max_delay_s: float = Field(default=30.0, ge=0)
    retry_max_attempts: int = Field(default=3, ge=1)
    query_retry_attempts: int = Field(default=3, ge=1)

    # Offline queue and background sync
    queue_path: str = 'ledgerline-queue.db'
    background_refresh_s: float = Field(default=300.0, gt=0)

    # Position Store transport
    store_base_url: str = 'http://localhost:8000'
    store_timeout_s: float = Field(default=30.0, gt=0)
    health_url: str | None = None
    probe_interval_s: float = Field(default=30.0, gt=0)

    def resolved_health_url(self) -> str:

        '''Return health_url, defaulting to <store_base_url>/health.'''

        return self.health_url or f"{self.store_base_url.rstrip('/')}/health"


_settings: Settings | None = None


def get_settings() -> Settings:

    '''Return the current settings instance, loading it on first use.'''

    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:

    global _settings
    _settings = settings


def reset_settings() -> None:

    '''Drop the cached instance so the next get_settings() reloads the environment.'''

    global _settings
    _settings = None
