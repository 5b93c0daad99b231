"""
Shared fixtures for the Mission Control test suite.

Unit tests get a fresh in-memory database per test. HTTP tests run the real
FastAPI app (lifespan included) against a temporary database file through
httpx's ASGI transport, with the in-process delivery daemon disabled so tests
drive delivery cycles themselves.
"""
import httpx
import pytest
import pytest_asyncio

from mission_control.db import crud
from mission_control.db import database


@pytest_asyncio.fixture
async def db():
    conn = await database.connect(":memory:")
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def agents(db):
    """Three registered agents keyed by lowercase name."""
    out = {}
    for name, emoji in (("Alice", "🦊"), ("Bob", "🐻"), ("Carol", "🦉")):
        out[name.lower()] = await crud.agent_register(db, name, role="dev", avatar_emoji=emoji)
    return out


@pytest_asyncio.fixture
async def app_client(tmp_path, monkeypatch):
    from mission_control import main

    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "mission_control_test.db"))
    monkeypatch.setattr(database, "_db", None)
    monkeypatch.setattr(main, "DELIVERY_IN_PROCESS", False)
    monkeypatch.setattr(main, "ACTIVITY_PERSIST", True)

    async with main.app.router.lifespan_context(main.app):
        transport = httpx.ASGITransport(app=main.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            yield client
