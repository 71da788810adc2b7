"""Tests for the OAuth key-value store backends."""

import asyncio

import pytest
from pydantic import BaseModel

from conftest import FakeClock
from neon_mcp.auth.kv_store import FileStore, MemoryStore, OAuthStores


class Record(BaseModel):
    value: str


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path, clock):
    if request.param == "memory":
        return MemoryStore("records", Record, clock)
    return FileStore("records", Record, tmp_path, clock)


class TestKeyValueStore:
    """Behaviour shared by every backend."""

    async def test_get_set_delete(self, store):
        assert await store.get("a") is None

        await store.set("a", Record(value="one"))
        assert await store.get("a") == Record(value="one")

        assert await store.delete("a") is True
        assert await store.get("a") is None
        assert await store.delete("a") is False

    async def test_expired_entry_is_never_returned(self, store, clock):
        await store.set("a", Record(value="one"), ttl=60)
        clock.advance(59)
        assert await store.get("a") is not None
        clock.advance(1)
        assert await store.get("a") is None
        assert await store.pop("a") is None

    async def test_pop_returns_value_once(self, store):
        await store.set("code", Record(value="x"))
        assert await store.pop("code") == Record(value="x")
        assert await store.pop("code") is None
        assert await store.get("code") is None

    async def test_concurrent_pop_has_single_winner(self, store):
        await store.set("code", Record(value="x"))
        results = await asyncio.gather(*(store.pop("code") for _ in range(10)))
        assert sum(r is not None for r in results) == 1

    async def test_sweep_removes_only_expired_entries(self, store, clock):
        await store.set("short", Record(value="s"), ttl=10)
        await store.set("long", Record(value="l"), ttl=1000)
        await store.set("forever", Record(value="f"))

        clock.advance(11)
        assert await store.sweep() == 1
        assert await store.get("long") is not None
        assert await store.get("forever") is not None

    async def test_values_are_copies(self, store):
        record = Record(value="original")
        await store.set("a", record)
        record.value = "mutated"
        assert (await store.get("a")).value == "original"


class TestFileStore:
    async def test_keys_with_separators_are_sanitized(self, tmp_path, clock):
        store = FileStore("codes", Record, tmp_path, clock)
        await store.set("../grant:nonce/x", Record(value="v"))
        assert await store.get("../grant:nonce/x") == Record(value="v")
        assert [p.name for p in (tmp_path / "codes").iterdir()] == ["__grant_nonce_x.json"]

    async def test_sweep_skips_unreadable_files(self, tmp_path, clock):
        store = FileStore("codes", Record, tmp_path, clock)
        broken = tmp_path / "codes" / "broken.json"
        broken.write_text("{not json")

        clock.advance(10_000)
        assert await store.sweep() == 0
        assert broken.exists()

    async def test_survives_new_instance(self, tmp_path):
        clock = FakeClock()
        await FileStore("clients", Record, tmp_path, clock).set("c", Record(value="v"))
        assert await FileStore("clients", Record, tmp_path, clock).get("c") == Record(value="v")


class TestOAuthStores:
    async def test_sweep_reports_counts_per_collection(self, clock):
        stores = OAuthStores.in_memory(clock)
        counts = await stores.sweep()
        assert set(counts) == {
            "clients",
            "access_tokens",
            "refresh_tokens",
            "authorization_codes",
            "api_keys",
        }
        assert all(count == 0 for count in counts.values())

    def test_from_settings_selects_backend(self, tmp_path):
        class FileSettings:
            oauth_storage_backend = "file"
            oauth_storage_dir = str(tmp_path)

        stores = OAuthStores.from_settings(FileSettings())
        assert isinstance(stores.clients, FileStore)
        assert (tmp_path / "authorization_codes").is_dir()
