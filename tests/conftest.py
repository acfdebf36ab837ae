# --- keep this shim at the very top ---
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
# --------------------------------------

from typing import Any, Dict, List

import httpx
import pytest
import pytest_asyncio
import respx
from httpx import Response

# In-memory SQLite for every test; no background scheduler during tests.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SYNC_ENABLED", "false")
os.environ.pop("DB_POOL_SIZE", None)
os.environ.pop("DB_MAX_OVERFLOW", None)

from catalog import db  # noqa: E402

db.configure_engine(os.environ["DATABASE_URL"])

import catalog.main as app_main  # noqa: E402
from catalog.cache import CacheError  # noqa: E402
from catalog.clients import UpstreamClient  # noqa: E402
from catalog.crud import SqlCharacterStore  # noqa: E402
from catalog.service import QueryService  # noqa: E402
from catalog.sync import SyncReconciler  # noqa: E402
from factories import CHARACTER_URL_RE, UPSTREAM_URL  # noqa: E402


class FakeCache:
    """Dict-backed cache that records calls and can be told to fail."""

    def __init__(self) -> None:
        self.data: Dict[str, Any] = {}
        self.get_calls: List[str] = []
        self.set_calls: List[tuple] = []
        self.fail_get = False
        self.fail_set = False

    async def get(self, key):
        self.get_calls.append(key)
        if self.fail_get:
            raise CacheError("cache offline")
        return self.data.get(key)

    async def set(self, key, value, ttl_seconds):
        self.set_calls.append((key, value, ttl_seconds))
        if self.fail_set:
            raise CacheError("cache offline")
        self.data[key] = value


@pytest.fixture
def respx_mocked():
    """respx router for mocking httpx requests."""
    with respx.mock(assert_all_called=False) as router:
        yield router


@pytest.fixture
def mock_upstream(respx_mocked):
    """Install a page-aware mock for the character endpoint.

    Usage:
        calls = mock_upstream({1: page_payload([...], pages=2), 2: ...})

    Pages missing from the mapping answer 404 (upstream's "nothing here").
    A value that is an ``int`` is used as the response status instead.
    Returns the list of query-param dicts seen, in order.
    """

    def _install(pages: Dict[int, Any]):
        seen: List[Dict[str, str]] = []

        def _page_router(request):
            params = dict(request.url.params)
            seen.append(params)
            page = int(params.get("page") or 1)
            body = pages.get(page)
            if body is None:
                return Response(404, json={"error": "There is nothing here"})
            if isinstance(body, int):
                return Response(body, json={"error": "upstream broke"})
            return Response(200, json=body)

        respx_mocked.get(url__regex=CHARACTER_URL_RE).mock(side_effect=_page_router)
        return seen

    return _install


@pytest_asyncio.fixture
async def store():
    """Fresh in-memory database with the schema created."""
    db.configure_engine("sqlite+aiosqlite:///:memory:")
    await db.init_db()
    yield SqlCharacterStore(db.SessionLocal)
    await db.engine.dispose()


@pytest_asyncio.fixture
async def upstream():
    client = UpstreamClient(UPSTREAM_URL, timeout=1.0)
    yield client
    await client.aclose()


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest_asyncio.fixture
async def components(store, upstream, fake_cache):
    reconciler = SyncReconciler(store, upstream)
    service = QueryService(store, fake_cache, reconciler)
    return app_main.Components(upstream, store, fake_cache, reconciler, service)


@pytest_asyncio.fixture
async def test_client(components):
    """ASGI client with collaborators injected directly (lifespan not run)."""
    app_main.app.state.components = components
    transport = httpx.ASGITransport(app=app_main.app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://testserver"
    ) as c:
        yield c
    del app_main.app.state.components
