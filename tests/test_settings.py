'''
Tests for ledgerline.infrastructure.settings.
'''

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pydantic
import pytest

from ledgerline.core.query_cache import QueryCache
from ledgerline.infrastructure.settings import Settings, get_settings, reset_settings, set_settings


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[None]:

    monkeypatch.chdir(tmp_path)
    reset_settings()
    yield
    reset_settings()


def test_defaults() -> None:

    settings = Settings()

    assert settings.stale_time_s == 300.0
    assert settings.gc_time_s == 600.0
    assert settings.retry_base_delay_s == 1.0
    assert settings.retry_max_delay_s == 30.0
    assert settings.retry_max_attempts == 3
    assert settings.background_refresh_s == 300.0
    assert settings.resolved_health_url() == 'http://localhost:8000/health'


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:

    monkeypatch.setenv('LEDGERLINE_STALE_TIME_S', '5')
    monkeypatch.setenv('LEDGERLINE_STORE_BASE_URL', 'https://store.example/api/')
    monkeypatch.setenv('LEDGERLINE_RETRY_MAX_ATTEMPTS', '7')

    settings = Settings()

    assert settings.stale_time_s == 5.0
    assert settings.retry_max_attempts == 7
    assert settings.resolved_health_url() == 'https://store.example/api/health'


def test_env_file(tmp_path: Path) -> None:

    (tmp_path / '.env').write_text('LEDGERLINE_QUEUE_PATH=/var/lib/ledgerline/q.db\nOTHER=1\n')

    assert Settings().queue_path == '/var/lib/ledgerline/q.db'


def test_explicit_health_url() -> None:

    assert Settings(health_url='http://probe.test/ok').resolved_health_url() == 'http://probe.test/ok'


@pytest.mark.parametrize(
    'overrides',
    [{'stale_time_s': -1}, {'retry_max_attempts': 0}, {'background_refresh_s': 0}],
)
def test_invalid_values(overrides: dict[str, float]) -> None:

    with pytest.raises(pydantic.ValidationError):
        Settings(**overrides)


def test_process_wide_instance(monkeypatch: pytest.MonkeyPatch) -> None:

    first = get_settings()
    assert get_settings() is first

    replacement = Settings(log_level='DEBUG')
    set_settings(replacement)
    assert get_settings() is replacement

    monkeypatch.setenv('LEDGERLINE_LOG_LEVEL', 'ERROR')
    reset_settings()
    assert get_settings().log_level == 'ERROR'


def test_cache_built_from_settings() -> None:

    cache = QueryCache.from_settings(Settings(stale_time_s=2, query_retry_attempts=1))

    assert cache._stale_time == 2
    assert cache._retry_policy.max_attempts == 1
