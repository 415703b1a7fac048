from dataclasses import replace

import pytest

from factories import FakeSupabase
from playscanner.config import Settings
from playscanner.db import CacheStore


@pytest.fixture
def settings() -> Settings:
    """待機時間をすべて 0 にしたテスト用設定."""
    return Settings(
        supabase_url="https://example.supabase.co",
        supabase_key="service-key",
        days_ahead=1,
        item_timeout=5.0,
        batch_delay=0,
        success_delay_min=0,
        success_delay_max=0,
        failure_delay=0,
        cache_write_retry_wait=0,
    )


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


@pytest.fixture
def store(fake_db, settings) -> CacheStore:
    return CacheStore(fake_db, settings)


@pytest.fixture
def make_settings(settings):
    def _make(**overrides) -> Settings:
        return replace(settings, **overrides)
    return _make
