"""Tests for session storage backends.

Tests cover:
- MemoryStorage isolation, delete, list, and checkpoint filtering
- FileStorage round trip, missing/corrupt files, id validation, checkpoints
- RedisStorage key layout, TTL, index, checkpoints, and error wrapping
- PassthroughStorage delegation and optional checkpoint support
"""

from __future__ import annotations

import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.context_engine.errors import SessionStorageError
from src.context_engine.sessions.schemas import (
    SerializedBudget,
    SerializedSession,
    SessionCheckpoint,
)
from src.context_engine.sessions.storage import (
    FileStorage,
    MemoryStorage,
    PassthroughStorage,
    RedisStorage,
)


def _make_session(session_id: str = "s1", **fields) -> SerializedSession:
    return SerializedSession(
        session_id=session_id,
        created_at=1.0,
        updated_at=2.0,
        budget=SerializedBudget(max_tokens=1_000),
        **fields,
    )


def _make_checkpoint(checkpoint_id: str, timestamp: float, session_id: str = "s1"):
    return SessionCheckpoint(
        checkpoint_id=checkpoint_id, session_id=session_id, timestamp=timestamp
    )


class FakeRedis:
    """In-process stand-in for the redis.asyncio commands the backend uses."""

    def __init__(self, fail: bool = False) -> None:
        self.values: dict[str, str] = {}
        self.expiry: dict[str, int | None] = {}
        self.sets: dict[str, set[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.fail = fail

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("connection refused")

    async def set(self, key, value, ex=None):
        self._check()
        self.values[key] = value
        self.expiry[key] = ex
        return True

    async def get(self, key):
        self._check()
        return self.values.get(key)

    async def sadd(self, key, *members):
        self._check()
        self.sets.setdefault(key, set()).update(members)

    async def srem(self, key, *members):
        self._check()
        self.sets.get(key, set()).difference_update(members)

    async def smembers(self, key):
        self._check()
        return set(self.sets.get(key, set()))

    async def exists(self, *keys):
        self._check()
        return sum(1 for key in keys if key in self.values or key in self.zsets)

    async def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
            if self.zsets.pop(key, None) is not None:
                removed += 1
        return removed

    async def zadd(self, key, mapping):
        self._check()
        self.zsets.setdefault(key, {}).update(mapping)

    async def zrangebyscore(self, key, low, high):
        self._check()
        if low == "-inf":
            above = lambda score: True  # noqa: E731
        elif low.startswith("("):
            above = lambda score: score > float(low[1:])  # noqa: E731
        else:
            above = lambda score: score >= float(low)  # noqa: E731
        members = sorted(self.zsets.get(key, {}).items(), key=lambda item: item[1])
        return [member for member, score in members if above(score)]


# ── MemoryStorage Tests ─────────────────────────────────────────────────────


class TestMemoryStorage:
    """Tests for MemoryStorage."""

    @pytest.mark.asyncio
    async def test_round_trip_is_isolated(self):
        """Stored sessions are copies, not shared references."""
        storage = MemoryStorage()
        session = _make_session()
        await storage.save(session)
        session.metadata["changed"] = True

        loaded = await storage.load("s1")
        assert loaded.metadata == {}
        loaded.metadata["changed"] = True
        assert (await storage.load("s1")).metadata == {}

    @pytest.mark.asyncio
    async def test_list_exists_delete(self):
        """Index operations reflect stored sessions."""
        storage = MemoryStorage()
        await storage.save(_make_session("b"))
        await storage.save(_make_session("a"))
        assert await storage.list() == ["a", "b"]
        assert await storage.exists("a") is True
        assert await storage.delete("a") is True
        assert await storage.delete("a") is False
        assert await storage.load("a") is None

    @pytest.mark.asyncio
    async def test_checkpoints_filtered_and_ordered(self):
        """Checkpoints newer than ``since`` come back oldest first."""
        storage = MemoryStorage()
        for checkpoint_id, timestamp in (("c3", 30.0), ("c1", 10.0), ("c2", 20.0)):
            await storage.save_checkpoint(_make_checkpoint(checkpoint_id, timestamp))
        assert storage.supports_checkpoints is True
        assert [c.checkpoint_id for c in await storage.load_checkpoints("s1")] == [
            "c1",
            "c2",
            "c3",
        ]
        assert [c.checkpoint_id for c in await storage.load_checkpoints("s1", 10.0)] == [
            "c2",
            "c3",
        ]


# ── FileStorage Tests ───────────────────────────────────────────────────────


class TestFileStorage:
    """Tests for FileStorage."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tmp_path):
        """Sessions are written as one JSON file each."""
        storage = FileStorage(tmp_path)
        await storage.save(_make_session(metadata={"user": "u1"}))

        assert (tmp_path / "s1.json").exists()
        loaded = await storage.load("s1")
        assert loaded.session_id == "s1"
        assert loaded.metadata == {"user": "u1"}
        assert await storage.exists("s1") is True

    @pytest.mark.asyncio
    async def test_missing_session(self, tmp_path):
        """Unknown ids load as None."""
        storage = FileStorage(tmp_path / "not-created")
        assert await storage.load("missing") is None
        assert await storage.list() == []

    @pytest.mark.asyncio
    async def test_list_and_delete(self, tmp_path):
        """list returns sorted ids; delete removes checkpoints too."""
        storage = FileStorage(tmp_path)
        await storage.save(_make_session("b"))
        await storage.save(_make_session("a"))
        await storage.save_checkpoint(_make_checkpoint("c1", 5.0, session_id="a"))

        assert await storage.list() == ["a", "b"]
        assert await storage.delete("a") is True
        assert await storage.delete("a") is False
        assert not (tmp_path / "checkpoints" / "a").exists()
        assert await storage.list() == ["b"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad_id", ["", ".", "..", "../escape", "a\\b"])
    async def test_invalid_ids_rejected(self, tmp_path, bad_id):
        """Ids that could escape the base directory are refused."""
        storage = FileStorage(tmp_path)
        with pytest.raises(ValueError):
            await storage.load(bad_id)

    @pytest.mark.asyncio
    async def test_corrupt_file(self, tmp_path):
        """Unparseable files raise a storage error."""
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(SessionStorageError):
            await FileStorage(tmp_path).load("broken")

    @pytest.mark.asyncio
    async def test_checkpoints(self, tmp_path):
        """Checkpoints persist per session and filter by timestamp."""
        storage = FileStorage(tmp_path)
        await storage.save_checkpoint(_make_checkpoint("c2", 20.0))
        await storage.save_checkpoint(_make_checkpoint("c1", 10.0))
        (tmp_path / "checkpoints" / "s1" / "junk.json").write_text("[]", encoding="utf-8")

        loaded = await storage.load_checkpoints("s1")
        assert [c.checkpoint_id for c in loaded] == ["c1", "c2"]
        assert [c.checkpoint_id for c in await storage.load_checkpoints("s1", 15.0)] == ["c2"]
        assert await storage.load_checkpoints("other") == []


# ── RedisStorage Tests ──────────────────────────────────────────────────────


class TestRedisStorage:
    """Tests for RedisStorage against an in-process fake client."""

    @pytest.mark.asyncio
    async def test_save_and_load(self):
        """Sessions are stored under the prefix with the configured TTL."""
        client = FakeRedis()
        storage = RedisStorage(client, key_prefix="test", ttl_seconds=60)
        await storage.save(_make_session())

        assert "test:s1" in client.values
        assert client.expiry["test:s1"] == 60
        assert client.sets["test:index"] == {"s1"}
        assert (await storage.load("s1")).session_id == "s1"
        assert await storage.load("missing") is None
        assert await storage.exists("s1") is True

    @pytest.mark.asyncio
    async def test_list_and_delete(self):
        """Delete removes the record, its checkpoints, and the index entry."""
        client = FakeRedis()
        storage = RedisStorage(client)
        await storage.save(_make_session("b"))
        await storage.save(_make_session("a"))
        await storage.save_checkpoint(_make_checkpoint("c1", 1.0, session_id="a"))

        assert await storage.list() == ["a", "b"]
        assert await storage.delete("a") is True
        assert "context:session:a:checkpoints" not in client.zsets
        assert await storage.list() == ["b"]
        assert await storage.delete("a") is False

    @pytest.mark.asyncio
    async def test_checkpoints_exclusive_since(self):
        """load_checkpoints returns only checkpoints strictly after ``since``."""
        storage = RedisStorage(FakeRedis())
        for checkpoint_id, timestamp in (("c1", 10.0), ("c2", 20.0)):
            await storage.save_checkpoint(_make_checkpoint(checkpoint_id, timestamp))

        assert [c.checkpoint_id for c in await storage.load_checkpoints("s1")] == ["c1", "c2"]
        assert [c.checkpoint_id for c in await storage.load_checkpoints("s1", 10.0)] == ["c2"]

    @pytest.mark.asyncio
    async def test_redis_errors_wrapped(self):
        """Client failures surface as SessionStorageError."""
        storage = RedisStorage(FakeRedis(fail=True))
        with pytest.raises(SessionStorageError):
            await storage.save(_make_session())
        with pytest.raises(SessionStorageError):
            await storage.load("s1")
        with pytest.raises(SessionStorageError):
            await storage.list()

    @pytest.mark.asyncio
    async def test_corrupt_record(self):
        """Unparseable records raise a storage error."""
        client = FakeRedis()
        client.values["context:session:s1"] = "garbage"
        with pytest.raises(SessionStorageError):
            await RedisStorage(client).load("s1")


# ── PassthroughStorage Tests ────────────────────────────────────────────────


class TestPassthroughStorage:
    """Tests for PassthroughStorage."""

    @staticmethod
    def _make_storage(with_checkpoints: bool = True):
        records: dict[str, str] = {}
        checkpoints: dict[str, list[str]] = {}

        async def save(session_id, payload):
            records[session_id] = payload

        async def load(session_id):
            return records.get(session_id)

        async def delete(session_id):
            return records.pop(session_id, None) is not None

        async def list_ids():
            return sorted(records)

        async def save_checkpoint(session_id, payload):
            checkpoints.setdefault(session_id, []).append(payload)

        async def load_checkpoints(session_id):
            return list(checkpoints.get(session_id, []))

        if with_checkpoints:
            storage = PassthroughStorage(
                save, load, delete, list_ids, save_checkpoint, load_checkpoints
            )
        else:
            storage = PassthroughStorage(save, load, delete, list_ids)
        return storage, records

    @pytest.mark.asyncio
    async def test_delegates_json(self):
        """Callables receive and return JSON text."""
        storage, records = self._make_storage()
        await storage.save(_make_session())

        assert json.loads(records["s1"])["session_id"] == "s1"
        assert (await storage.load("s1")).session_id == "s1"
        assert await storage.list() == ["s1"]
        assert await storage.exists("s1") is True
        assert await storage.delete("s1") is True
        assert await storage.load("s1") is None

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """Unparseable payloads raise a storage error."""
        storage, records = self._make_storage()
        records["s1"] = "not json"
        with pytest.raises(SessionStorageError):
            await storage.load("s1")

    @pytest.mark.asyncio
    async def test_checkpoints_supported(self):
        """Checkpoint callables make checkpoints available."""
        storage, _ = self._make_storage()
        assert storage.supports_checkpoints is True
        await storage.save_checkpoint(_make_checkpoint("c2", 20.0))
        await storage.save_checkpoint(_make_checkpoint("c1", 10.0))
        assert [c.checkpoint_id for c in await storage.load_checkpoints("s1")] == ["c1", "c2"]
        assert [c.checkpoint_id for c in await storage.load_checkpoints("s1", 10.0)] == ["c2"]

    @pytest.mark.asyncio
    async def test_checkpoints_unsupported(self):
        """Without checkpoint callables, saving raises and loading is empty."""
        storage, _ = self._make_storage(with_checkpoints=False)
        assert storage.supports_checkpoints is False
        with pytest.raises(NotImplementedError):
            await storage.save_checkpoint(_make_checkpoint("c1", 1.0))
        assert await storage.load_checkpoints("s1") == []
