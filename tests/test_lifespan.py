"""Lifespan and scheduler tests.

Covers:
* Startup order: DB wait, schema init, seeding; shutdown closes the client.
* Fail-fast on a missing/invalid upstream URL or an unreachable DB.
* The scheduled sync loop ticks, survives failing ticks, and stops cleanly.
"""

import asyncio
import time
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

import catalog.main as app_main
from catalog.cache import MemoryCache
from catalog.clients import UpstreamClient
from catalog.crud import SqlCharacterStore
from catalog.service import QueryService
from catalog.settings import Settings
from catalog.sync import SyncReconciler, SyncReport


def _fake_components():
    client = AsyncMock()
    reconciler = AsyncMock()
    reconciler.seed_if_empty.return_value = 2
    reconciler.sync_all.return_value = SyncReport()
    return app_main.Components(
        client, AsyncMock(), MemoryCache(), reconciler, AsyncMock()
    )


@pytest.fixture
def patched_startup(monkeypatch):
    calls = {"wait": 0, "init": 0}

    async def fake_wait():
        calls["wait"] += 1

    async def fake_init():
        calls["init"] += 1

    components = _fake_components()
    monkeypatch.setattr(app_main, "wait_for_db", fake_wait)
    monkeypatch.setattr(app_main, "init_db", fake_init)
    monkeypatch.setattr(app_main, "build_components", lambda _settings: components)
    return calls, components


def test_lifespan_inits_db_seeds_and_closes_client(monkeypatch, patched_startup):
    calls, components = patched_startup
    monkeypatch.setenv("SEED_ON_STARTUP", "true")
    monkeypatch.setenv("SYNC_ENABLED", "false")

    with TestClient(app_main.app):
        assert app_main.app.state.components is components

    assert calls == {"wait": 1, "init": 1}
    components.reconciler.seed_if_empty.assert_awaited_once()
    components.reconciler.sync_all.assert_not_awaited()
    components.client.aclose.assert_awaited_once()


def test_lifespan_skips_seed_when_disabled(monkeypatch, patched_startup):
    _, components = patched_startup
    monkeypatch.setenv("SEED_ON_STARTUP", "false")
    monkeypatch.setenv("SYNC_ENABLED", "false")

    with TestClient(app_main.app):
        pass

    components.reconciler.seed_if_empty.assert_not_awaited()


def test_lifespan_runs_scheduled_sync(monkeypatch, patched_startup):
    _, components = patched_startup
    monkeypatch.setenv("SEED_ON_STARTUP", "false")
    monkeypatch.setenv("SYNC_ENABLED", "true")
    monkeypatch.setenv("SYNC_INTERVAL_SECONDS", "0.02")

    with TestClient(app_main.app):
        time.sleep(0.2)

    assert components.reconciler.sync_all.await_count >= 1


def test_startup_fails_when_wait_for_db_raises(monkeypatch, patched_startup):
    async def boom():
        raise RuntimeError("db down hard")

    monkeypatch.setattr(app_main, "wait_for_db", boom)

    with pytest.raises(RuntimeError):
        with TestClient(app_main.app):
            pass


def test_startup_fails_fast_on_blank_upstream_url(monkeypatch):
    monkeypatch.setenv("UPSTREAM_URL", "   ")
    with pytest.raises(ValueError):
        with TestClient(app_main.app):
            pass


def test_build_components_validates_upstream_url():
    with pytest.raises(ValueError):
        app_main.build_components(Settings(UPSTREAM_URL="rickandmortyapi.com"))


@pytest.mark.asyncio
async def test_build_components_wires_explicit_collaborators():
    c = app_main.build_components(
        Settings(FULL_SYNC_LIMIT=5, CACHE_TTL_SECONDS=60, SEARCH_MAX_PAGES=2)
    )
    try:
        assert isinstance(c.client, UpstreamClient)
        assert isinstance(c.store, SqlCharacterStore)
        assert isinstance(c.cache, MemoryCache)
        assert isinstance(c.reconciler, SyncReconciler)
        assert isinstance(c.query_service, QueryService)
    finally:
        await c.client.aclose()


@pytest.mark.asyncio
async def test_scheduler_survives_failing_tick_and_stops():
    calls = {"n": 0}

    async def flaky_sync():
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("store down")
        return SyncReport(fetched=1, unchanged=1)

    reconciler = AsyncMock()
    reconciler.sync_all.side_effect = flaky_sync
    stop = asyncio.Event()

    task = asyncio.create_task(app_main.run_scheduled_sync(reconciler, 0.01, stop))
    await asyncio.sleep(0.1)
    stop.set()
    await asyncio.wait_for(task, timeout=1.0)

    assert calls["n"] >= 2
    assert task.done() and task.exception() is None


@pytest.mark.asyncio
async def test_scheduler_waits_one_interval_before_first_tick():
    reconciler = AsyncMock()
    stop = asyncio.Event()
    task = asyncio.create_task(app_main.run_scheduled_sync(reconciler, 60, stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1.0)
    reconciler.sync_all.assert_not_awaited()
