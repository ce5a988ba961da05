"""Tests for application wiring and shutdown."""

from __future__ import annotations

import pytest

from birthday_sync import app as app_module
from birthday_sync.app import build_application
from birthday_sync.config import parse_config

pytestmark = pytest.mark.unit


class _FakePool:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def pool(monkeypatch):
    fake = _FakePool()

    async def fake_create_pool(dsn, *, min_size, max_size):
        return fake

    monkeypatch.setattr(app_module, "create_pool", fake_create_pool)
    return fake


@pytest.fixture
def config():
    return parse_config(
        {
            "database": {"dsn": "postgresql://localhost/birthdays"},
            "google": {"client_id": "cid", "client_secret": "secret"},
        }
    )


class TestBuildApplication:
    async def test_resources_closed_on_clean_exit(self, config, pool):
        async with build_application(config) as app:
            assert app.dispatcher.pending == 0
        assert pool.closed

    async def test_failing_body_cancels_dispatched_chunks_before_closing(self, config, pool):
        with pytest.raises(RuntimeError, match="boom"):
            async with build_application(config) as app:
                await app.dispatcher.enqueue({"recordIds": ["rec-1"]}, delay_seconds=60)
                dispatcher = app.dispatcher
                raise RuntimeError("boom")

        assert dispatcher.pending == 0
        assert pool.closed
