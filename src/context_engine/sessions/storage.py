"""Interchangeable session storage backends.

Every backend implements save/load/delete/list/exists; checkpoint
support is optional and advertised by ``supports_checkpoints``. Loads go
through ``coerce_session`` so older records are migrated on the way in.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from pathlib import Path

import redis.asyncio as aioredis
import structlog
from pydantic import ValidationError
from redis.exceptions import RedisError

from src.context_engine.errors import SessionStorageError
from src.context_engine.sessions.schemas import (
    SerializedSession,
    SessionCheckpoint,
    coerce_session,
)

logger = structlog.get_logger(__name__)


def _check_id(value: str) -> str:
    if not value or "/" in value or "\\" in value or value in (".", ".."):
        raise ValueError(f"Invalid session or checkpoint id: {value!r}")
    return value


class SessionStorage(ABC):
    """Abstract storage capability used by SessionSerializer."""

    supports_checkpoints: bool = False

    @abstractmethod
    async def save(self, session: SerializedSession) -> None:
        """Persist a session, replacing any previous version."""
        ...

    @abstractmethod
    async def load(self, session_id: str) -> SerializedSession | None:
        """Return the session, or None if it does not exist."""
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Remove a session and its checkpoints. Returns True if it existed."""
        ...

    @abstractmethod
    async def list(self) -> list[str]:
        """Return all stored session ids."""
        ...

    async def exists(self, session_id: str) -> bool:
        return await self.load(session_id) is not None

    async def save_checkpoint(self, checkpoint: SessionCheckpoint) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not store checkpoints")

    async def load_checkpoints(
        self, session_id: str, since: float | None = None
    ) -> list[SessionCheckpoint]:
        """Checkpoints newer than ``since``, oldest first. Empty if unsupported."""
        return []


# ── In-memory ────────────────────────────────────────────────────────────────


class MemoryStorage(SessionStorage):
    """Process-local storage; values are deep-copied in and out."""

    supports_checkpoints = True

    def __init__(self) -> None:
        self._sessions: dict[str, SerializedSession] = {}
        self._checkpoints: dict[str, list[SessionCheckpoint]] = {}

    async def save(self, session: SerializedSession) -> None:
        self._sessions[session.session_id] = session.model_copy(deep=True)

    async def load(self, session_id: str) -> SerializedSession | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def delete(self, session_id: str) -> bool:
        self._checkpoints.pop(session_id, None)
        return self._sessions.pop(session_id, None) is not None

    async def list(self) -> list[str]:
        return sorted(self._sessions)

    async def exists(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def save_checkpoint(self, checkpoint: SessionCheckpoint) -> None:
        self._checkpoints.setdefault(checkpoint.session_id, []).append(
            checkpoint.model_copy(deep=True)
        )

    async def load_checkpoints(
        self, session_id: str, since: float | None = None
    ) -> list[SessionCheckpoint]:
        checkpoints = [
            c.model_copy(deep=True)
            for c in self._checkpoints.get(session_id, [])
            if since is None or c.timestamp > since
        ]
        return sorted(checkpoints, key=lambda c: c.timestamp)


# ── File-per-session ─────────────────────────────────────────────────────────


class FileStorage(SessionStorage):
    """Durable storage: ``<base>/<id>.json`` plus ``<base>/checkpoints/<id>/``.

    Writes go to a temporary file and are renamed into place. Blocking
    I/O runs in a worker thread.
    """

    supports_checkpoints = True

    def __init__(self, base_dir: str | Path) -> None:
        self._base = Path(base_dir)

    def _session_path(self, session_id: str) -> Path:
        return self._base / f"{_check_id(session_id)}.json"

    def _checkpoint_dir(self, session_id: str) -> Path:
        return self._base / "checkpoints" / _check_id(session_id)

    @staticmethod
    def _write_atomic(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    async def save(self, session: SerializedSession) -> None:
        path = self._session_path(session.session_id)
        try:
            await asyncio.to_thread(self._write_atomic, path, session.model_dump_json())
        except OSError as exc:
            raise SessionStorageError(f"Failed to write session {session.session_id}") from exc
        logger.debug("session_storage.saved", backend="file", session_id=session.session_id)

    async def load(self, session_id: str) -> SerializedSession | None:
        path = self._session_path(session_id)
        try:
            payload = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise SessionStorageError(f"Failed to read session {session_id}") from exc
        try:
            return coerce_session(json.loads(payload))
        except (ValueError, ValidationError) as exc:
            raise SessionStorageError(f"Corrupt session file for {session_id}") from exc

    async def delete(self, session_id: str) -> bool:
        path = self._session_path(session_id)
        checkpoint_dir = self._checkpoint_dir(session_id)

        def _remove() -> bool:
            existed = path.exists()
            path.unlink(missing_ok=True)
            if checkpoint_dir.exists():
                for item in checkpoint_dir.glob("*.json"):
                    item.unlink()
                checkpoint_dir.rmdir()
            return existed

        try:
            return await asyncio.to_thread(_remove)
        except OSError as exc:
            raise SessionStorageError(f"Failed to delete session {session_id}") from exc

    async def list(self) -> list[str]:
        def _scan() -> list[str]:
            if not self._base.exists():
                return []
            return sorted(p.stem for p in self._base.glob("*.json"))

        return await asyncio.to_thread(_scan)

    async def exists(self, session_id: str) -> bool:
        return await asyncio.to_thread(self._session_path(session_id).exists)

    async def save_checkpoint(self, checkpoint: SessionCheckpoint) -> None:
        path = self._checkpoint_dir(checkpoint.session_id) / (
            f"{_check_id(checkpoint.checkpoint_id)}.json"
        )
        try:
            await asyncio.to_thread(self._write_atomic, path, checkpoint.model_dump_json())
        except OSError as exc:
            raise SessionStorageError(
                f"Failed to write checkpoint {checkpoint.checkpoint_id}"
            ) from exc

    async def load_checkpoints(
        self, session_id: str, since: float | None = None
    ) -> list[SessionCheckpoint]:
        checkpoint_dir = self._checkpoint_dir(session_id)

        def _read_all() -> list[str]:
            if not checkpoint_dir.exists():
                return []
            return [p.read_text(encoding="utf-8") for p in checkpoint_dir.glob("*.json")]

        checkpoints = []
        for payload in await asyncio.to_thread(_read_all):
            try:
                checkpoint = SessionCheckpoint.model_validate_json(payload)
            except ValidationError:
                logger.warning("session_storage.corrupt_checkpoint_skipped", session_id=session_id)
                continue
            if since is None or checkpoint.timestamp > since:
                checkpoints.append(checkpoint)
        return sorted(checkpoints, key=lambda c: c.timestamp)


# ── Redis ────────────────────────────────────────────────────────────────────


class RedisStorage(SessionStorage):
    """Redis-backed storage.

    Sessions live at ``{prefix}:{id}``; checkpoints in a sorted set
    ``{prefix}:{id}:checkpoints`` scored by timestamp; the id index is the
    set ``{prefix}:index``.
    """

    supports_checkpoints = True

    def __init__(
        self,
        redis_client: aioredis.Redis,
        key_prefix: str = "context:session",
        ttl_seconds: int | None = None,
    ) -> None:
        self._redis = redis_client
        self._prefix = key_prefix
        self._ttl = ttl_seconds

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "RedisStorage":
        return cls(aioredis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, session_id: str) -> str:
        return f"{self._prefix}:{session_id}"

    def _checkpoint_key(self, session_id: str) -> str:
        return f"{self._prefix}:{session_id}:checkpoints"

    @property
    def _index_key(self) -> str:
        return f"{self._prefix}:index"

    async def save(self, session: SerializedSession) -> None:
        try:
            await self._redis.set(
                self._key(session.session_id), session.model_dump_json(), ex=self._ttl
            )
            await self._redis.sadd(self._index_key, session.session_id)
        except RedisError as exc:
            raise SessionStorageError(f"Failed to write session {session.session_id}") from exc

    async def load(self, session_id: str) -> SerializedSession | None:
        try:
            payload = await self._redis.get(self._key(session_id))
        except RedisError as exc:
            raise SessionStorageError(f"Failed to read session {session_id}") from exc
        if payload is None:
            return None
        try:
            return coerce_session(json.loads(payload))
        except (ValueError, ValidationError) as exc:
            raise SessionStorageError(f"Corrupt session record for {session_id}") from exc

    async def delete(self, session_id: str) -> bool:
        try:
            removed = await self._redis.delete(
                self._key(session_id), self._checkpoint_key(session_id)
            )
            await self._redis.srem(self._index_key, session_id)
        except RedisError as exc:
            raise SessionStorageError(f"Failed to delete session {session_id}") from exc
        return bool(removed)

    async def list(self) -> list[str]:
        try:
            members = await self._redis.smembers(self._index_key)
        except RedisError as exc:
            raise SessionStorageError("Failed to list sessions") from exc
        return sorted(members)

    async def exists(self, session_id: str) -> bool:
        try:
            return bool(await self._redis.exists(self._key(session_id)))
        except RedisError as exc:
            raise SessionStorageError(f"Failed to check session {session_id}") from exc

    async def save_checkpoint(self, checkpoint: SessionCheckpoint) -> None:
        try:
            await self._redis.zadd(
                self._checkpoint_key(checkpoint.session_id),
                {checkpoint.model_dump_json(): checkpoint.timestamp},
            )
        except RedisError as exc:
            raise SessionStorageError(
                f"Failed to write checkpoint {checkpoint.checkpoint_id}"
            ) from exc

    async def load_checkpoints(
        self, session_id: str, since: float | None = None
    ) -> list[SessionCheckpoint]:
        low = f"({since}" if since is not None else "-inf"
        try:
            payloads = await self._redis.zrangebyscore(
                self._checkpoint_key(session_id), low, "+inf"
            )
        except RedisError as exc:
            raise SessionStorageError(f"Failed to read checkpoints for {session_id}") from exc

        checkpoints = []
        for payload in payloads:
            try:
                checkpoints.append(SessionCheckpoint.model_validate_json(payload))
            except ValidationError:
                logger.warning("session_storage.corrupt_checkpoint_skipped", session_id=session_id)
        return checkpoints


# ── Pass-through ─────────────────────────────────────────────────────────────


class PassthroughStorage(SessionStorage):
    """Adapter over caller-supplied async callables.

    Lets an application plug in its own persistence (a database row, an
    object store) without subclassing.
    """

    def __init__(
        self,
        save: Callable[[str, str], Awaitable[None]],
        load: Callable[[str], Awaitable[str | None]],
        delete: Callable[[str], Awaitable[bool]],
        list_ids: Callable[[], Awaitable[list[str]]],
        save_checkpoint: Callable[[str, str], Awaitable[None]] | None = None,
        load_checkpoints: Callable[[str], Awaitable[list[str]]] | None = None,
    ) -> None:
        self._save = save
        self._load = load
        self._delete = delete
        self._list = list_ids
        self._save_checkpoint = save_checkpoint
        self._load_checkpoints = load_checkpoints
        self.supports_checkpoints = save_checkpoint is not None and load_checkpoints is not None

    async def save(self, session: SerializedSession) -> None:
        await self._save(session.session_id, session.model_dump_json())

    async def load(self, session_id: str) -> SerializedSession | None:
        payload = await self._load(session_id)
        if payload is None:
            return None
        try:
            return coerce_session(json.loads(payload))
        except (ValueError, ValidationError) as exc:
            raise SessionStorageError(f"Corrupt session record for {session_id}") from exc

    async def delete(self, session_id: str) -> bool:
        return await self._delete(session_id)

    async def list(self) -> list[str]:
        return list(await self._list())

    async def save_checkpoint(self, checkpoint: SessionCheckpoint) -> None:
        if self._save_checkpoint is None:
            await super().save_checkpoint(checkpoint)
            return
        await self._save_checkpoint(checkpoint.session_id, checkpoint.model_dump_json())

    async def load_checkpoints(
        self, session_id: str, since: float | None = None
    ) -> list[SessionCheckpoint]:
        if self._load_checkpoints is None:
            return []
        checkpoints = [
            SessionCheckpoint.model_validate_json(p) for p in await self._load_checkpoints(session_id)
        ]
        return sorted(
            (c for c in checkpoints if since is None or c.timestamp > since),
            key=lambda c: c.timestamp,
        )
