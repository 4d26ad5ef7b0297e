"""Tests for the SQLite session registry."""

import pytest
import pytest_asyncio

from cadence.sessions import SessionRegistry


@pytest_asyncio.fixture
async def registry(tmp_path):
    """Create a fresh registry for each test."""
    reg = SessionRegistry(str(tmp_path / "sessions.db"), project="/repo:feature")
    await reg.initialize()
    yield reg
    await reg.close()


class TestSessionRegistry:
    async def test_empty_load(self, registry: SessionRegistry):
        assert await registry.load() == {}

    async def test_save_and_load(self, registry: SessionRegistry):
        await registry.save("planner", "sess-1")
        await registry.save("coder", "sess-2")
        assert await registry.load() == {"coder": "sess-2", "planner": "sess-1"}
        assert await registry.get("planner") == "sess-1"
        assert await registry.get("nobody") is None

    async def test_save_replaces_token(self, registry: SessionRegistry):
        await registry.save("planner", "sess-1")
        await registry.save("planner", "sess-9")
        assert await registry.load() == {"planner": "sess-9"}

    async def test_clear(self, registry: SessionRegistry):
        await registry.save("planner", "sess-1")
        await registry.clear()
        assert await registry.load() == {}

    async def test_projects_are_isolated(self, registry: SessionRegistry, tmp_path):
        other = SessionRegistry(registry.db_path, project="/other:feature")
        await other.initialize()
        try:
            await registry.save("planner", "mine")
            await other.save("planner", "theirs")
            await other.clear()
            assert await registry.load() == {"planner": "mine"}
            assert await other.load() == {}
        finally:
            await other.close()

    async def test_persists_across_connections(self, tmp_path):
        db_path = str(tmp_path / "persist.db")
        first = SessionRegistry(db_path)
        await first.initialize()
        await first.save("coder", "tok")
        await first.close()

        second = SessionRegistry(db_path)
        await second.initialize()
        try:
            assert await second.load() == {"coder": "tok"}
        finally:
            await second.close()

    async def test_requires_initialize(self, tmp_path):
        reg = SessionRegistry(str(tmp_path / "x.db"))
        with pytest.raises(RuntimeError, match="not initialized"):
            await reg.load()
