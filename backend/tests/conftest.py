import os

import httpx
import pytest
import pytest_asyncio

from app.core.config import get_settings

BASE_URL = os.getenv("BASE_URL", "http://127.0.0.1:8000")


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance (e.g. with a different provider) across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_rate_limiter():
    from app.utils.rate_limit import parse_rate_limiter

    parse_rate_limiter.reset()
    yield
    parse_rate_limiter.reset()


@pytest.fixture
def broadcaster():
    from app.services.statement.progress import ProgressBroadcaster

    return ProgressBroadcaster()


@pytest.fixture
def app_broadcaster():
    """A fresh broadcaster installed on the application for the duration of a test."""
    from app.main import app
    from app.services.statement.progress import ProgressBroadcaster

    previous = app.state.progress_broadcaster
    app.state.progress_broadcaster = ProgressBroadcaster()
    yield app.state.progress_broadcaster
    app.state.progress_broadcaster = previous


@pytest_asyncio.fixture
async def client():
    # Default: in-process ASGI tests (no uvicorn needed).
    # Set USE_LIVE_SERVER=true to run against a running server at BASE_URL (useful for manual smoke tests).
    use_live_server = os.getenv("USE_LIVE_SERVER", "").strip().lower() in {"1", "true", "yes"}
    if use_live_server:
        async with httpx.AsyncClient(base_url=BASE_URL) as c:
            yield c
        return

    from app.main import app

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
