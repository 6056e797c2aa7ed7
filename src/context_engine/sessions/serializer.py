"""Session persistence for context managers.

Serializes a ContextManager to a versioned JSON-compatible record,
restores it with compaction suppressed, and supports incremental
checkpoints that carry only what changed since a timestamp.
"""

from __future__ import annotations

import copy
import json
import time
import uuid
from typing import Any

import structlog
from pydantic import ValidationError

from src.context_engine.errors import UnsupportedSessionVersionError
from src.context_engine.sessions.schemas import (
    BUDGET_CATEGORIES,
    SERIALIZATION_VERSION,
    BudgetDelta,
    CheckpointMessage,
    RestoreOptions,
    SerializedBudget,
    SerializedConfig,
    SerializedMessage,
    SerializedSession,
    SerializeOptions,
    SessionCheckpoint,
    coerce_session,
)
from src.context_engine.sessions.storage import SessionStorage
from src.context_engine.window.compressor import ContextCompressor
from src.context_engine.window.allocator import ContextAllocator
from src.context_engine.window.manager import ContextManager, ContextManagerConfig
from src.context_engine.window.schemas import (
    CompressionRecord,
    ContextMessage,
    MemoryTier,
)
from src.context_engine.window.tokens import TokenEstimator

logger = structlog.get_logger(__name__)

RESTORE_ORDER: tuple[MemoryTier, ...] = (
    MemoryTier.SYSTEM,
    MemoryTier.TOOLS,
    MemoryTier.RESOURCES,
    MemoryTier.ARCHIVED,
    MemoryTier.RECENT,
    MemoryTier.EPHEMERAL,
)


def generate_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _message_record(message: ContextMessage) -> dict[str, Any]:
    return SerializedMessage(
        id=message.id,
        role=message.role,
        content=copy.deepcopy(message.content),
        timestamp=message.timestamp,
        tokens=message.tokens or 0,
        priority=message.priority if message.priority is not None else 50,
        compressible=message.compressible,
        metadata=copy.deepcopy(message.metadata),
        summarized_from=list(message.summarized_from),
    ).model_dump(mode="json")


class SessionSerializer:
    """Converts context managers to and from serialized sessions.

    Usage:
        serializer = SessionSerializer(FileStorage("./sessions"))
        await serializer.save(manager, session_id)
        restored = await serializer.restore(session_id)
    """

    def __init__(
        self,
        storage: SessionStorage | None = None,
        *,
        estimator: TokenEstimator | None = None,
        compressor: ContextCompressor | None = None,
        allocator: ContextAllocator | None = None,
    ) -> None:
        self._storage = storage
        self._estimator = estimator
        self._compressor = compressor
        self._allocator = allocator

    # ── Serialize ─────────────────────────────────────────────────────────

    def serialize(
        self,
        manager: ContextManager,
        session_id: str,
        options: SerializeOptions | None = None,
    ) -> SerializedSession:
        options = options or SerializeOptions()
        memory = manager.memory

        tiers = {
            tier: [_message_record(m) for m in memory.get_messages(tier)]
            for tier in MemoryTier
        }
        allocations: dict[str, int] = {}
        for tier, category in BUDGET_CATEGORIES.items():
            allocations[category] = allocations.get(category, 0) + memory.get_tier_tokens(tier)

        config = manager.config
        return SerializedSession(
            session_id=session_id,
            created_at=manager.created_at,
            updated_at=time.time(),
            config=SerializedConfig.model_validate(config.model_dump()),
            tiers=tiers,
            budget=SerializedBudget(max_tokens=config.max_tokens, allocations=allocations),
            compressions=(
                manager.get_compression_history() if options.include_compression_history else []
            ),
            stats=manager.get_stats().model_dump(mode="json") if options.include_stats else {},
            metadata=dict(options.metadata),
        )

    # ── Deserialize ───────────────────────────────────────────────────────

    def deserialize(
        self,
        session: SerializedSession | dict[str, Any],
        options: RestoreOptions | None = None,
    ) -> ContextManager:
        """Rebuild a manager from a serialized session.

        Raises:
            UnsupportedSessionVersionError: If the record is newer than
                this engine supports.
        """
        options = options or RestoreOptions()
        if isinstance(session, SerializedSession):
            if session.version > SERIALIZATION_VERSION:
                raise UnsupportedSessionVersionError(session.version, SERIALIZATION_VERSION)
            session = coerce_session(session.model_dump(mode="json"))
        else:
            session = coerce_session(session)

        config_values = session.config.model_dump()
        config_values.update(options.config_overrides)
        manager = ContextManager(
            ContextManagerConfig(**config_values),
            estimator=self._estimator,
            compressor=self._compressor,
            allocator=self._allocator,
        )
        manager.created_at = session.created_at

        restored = skipped = 0
        seen: set[str] = set()
        for tier in RESTORE_ORDER:
            for raw in session.tiers.get(tier, []):
                message = self._restore_message(raw, options, seen)
                if message is None:
                    skipped += 1
                    continue
                manager.insert_message(message, tier)
                seen.add(message.id)
                restored += 1

        if session.compressions:
            manager.load_compression_history(session.compressions)
        manager.mark_persisted()

        logger.info(
            "session.deserialized",
            session_id=session.session_id,
            restored=restored,
            skipped=skipped,
        )
        return manager

    def _restore_message(
        self,
        raw: Any,
        options: RestoreOptions,
        seen: set[str],
    ) -> ContextMessage | None:
        try:
            if options.validate_messages:
                record = SerializedMessage.model_validate(raw)
                message = ContextMessage(**record.model_dump())
            else:
                message = ContextMessage.model_validate(raw)
        except (ValidationError, TypeError) as exc:
            logger.warning(
                "session.invalid_message_skipped",
                message_id=raw.get("id") if isinstance(raw, dict) else None,
                error=str(exc),
            )
            return None

        if message.id in seen:
            logger.warning("session.duplicate_message_skipped", message_id=message.id)
            return None
        if (
            options.skip_messages_before is not None
            and message.timestamp < options.skip_messages_before
        ):
            logger.debug("session.stale_message_skipped", message_id=message.id)
            return None
        if options.recalculate_tokens or message.tokens is None:
            message.tokens = None
        return message

    # ── Checkpoints ───────────────────────────────────────────────────────

    def create_checkpoint(
        self,
        manager: ContextManager,
        session_id: str,
        since: float = 0.0,
        metadata: dict[str, Any] | None = None,
    ) -> SessionCheckpoint:
        """Capture messages admitted and removed after ``since``."""
        delta: dict[str, int] = {}
        new_messages = []
        for tier, message in manager.inserted_since(since):
            new_messages.append(CheckpointMessage(**_message_record(message), tier=tier))
            category = BUDGET_CATEGORIES[tier]
            delta[category] = delta.get(category, 0) + (message.tokens or 0)

        removals = manager.removed_since(since)
        for removal in removals:
            category = BUDGET_CATEGORIES[removal.tier]
            delta[category] = delta.get(category, 0) - removal.tokens

        return SessionCheckpoint(
            checkpoint_id=f"cp_{uuid.uuid4().hex[:12]}",
            session_id=session_id,
            timestamp=time.time(),
            new_messages=new_messages,
            evicted_ids=[r.message_id for r in removals],
            budget_delta=BudgetDelta(allocations=delta),
            metadata=dict(metadata or {}),
        )

    def apply_checkpoints(
        self,
        session: SerializedSession,
        checkpoints: list[SessionCheckpoint],
    ) -> SerializedSession:
        """Replay checkpoints in timestamp order onto a copy of ``session``."""
        result = session.model_copy(deep=True)
        for checkpoint in sorted(checkpoints, key=lambda c: c.timestamp):
            if checkpoint.session_id != session.session_id:
                logger.warning(
                    "session.foreign_checkpoint_skipped",
                    session_id=session.session_id,
                    checkpoint_session_id=checkpoint.session_id,
                )
                continue

            drop = set(checkpoint.evicted_ids)
            removing = drop | {m.id for m in checkpoint.new_messages}
            for tier, messages in result.tiers.items():
                result.tiers[tier] = [
                    m for m in messages
                    if not isinstance(m, dict) or m.get("id") not in removing
                ]
            for message in checkpoint.new_messages:
                if message.id in drop:
                    continue
                record = message.model_dump(mode="json", exclude={"tier"})
                result.tiers.setdefault(message.tier, []).append(record)

            for category, amount in checkpoint.budget_delta.allocations.items():
                current = result.budget.allocations.get(category, 0)
                result.budget.allocations[category] = max(0, current + amount)
            result.updated_at = max(result.updated_at, checkpoint.timestamp)
        return result

    # ── Storage-backed operations ─────────────────────────────────────────

    def _require_storage(self) -> SessionStorage:
        if self._storage is None:
            raise ValueError("SessionSerializer was created without a storage backend")
        return self._storage

    async def save(
        self,
        manager: ContextManager,
        session_id: str,
        options: SerializeOptions | None = None,
    ) -> SerializedSession:
        """Persist a full snapshot; later checkpoints start from here."""
        session = self.serialize(manager, session_id, options)
        await self._require_storage().save(session)
        manager.mark_persisted()
        return session

    async def save_checkpoint(
        self, manager: ContextManager, session_id: str, since: float = 0.0
    ) -> SessionCheckpoint:
        """Persist changes since the last save or checkpoint."""
        checkpoint = self.create_checkpoint(manager, session_id, since)
        await self._require_storage().save_checkpoint(checkpoint)
        manager.mark_persisted()
        return checkpoint

    async def load(self, session_id: str) -> SerializedSession | None:
        return await self._require_storage().load(session_id)

    async def restore(
        self,
        session_id: str,
        options: RestoreOptions | None = None,
        *,
        apply_checkpoints: bool = True,
    ) -> ContextManager | None:
        """Load a session, replay newer checkpoints, and rebuild the manager."""
        storage = self._require_storage()
        session = await storage.load(session_id)
        if session is None:
            return None
        if apply_checkpoints:
            checkpoints = await storage.load_checkpoints(session_id, session.updated_at)
            if checkpoints:
                session = self.apply_checkpoints(session, checkpoints)
        return self.deserialize(session, options)


# ── Session utilities ────────────────────────────────────────────────────────


def export_session_json(session: SerializedSession, indent: int | None = 2) -> str:
    return session.model_dump_json(indent=indent)


def import_session_json(payload: str) -> SerializedSession:
    """Parse and version-check a JSON session export."""
    return coerce_session(json.loads(payload))


def clone_session(session: SerializedSession, new_session_id: str | None = None) -> SerializedSession:
    now = time.time()
    return session.model_copy(
        update={
            "session_id": new_session_id or generate_session_id(),
            "created_at": now,
            "updated_at": now,
            "metadata": {**session.metadata, "cloned_from": session.session_id},
        },
        deep=True,
    )


def merge_sessions(
    primary: SerializedSession,
    secondary: SerializedSession,
    new_session_id: str | None = None,
) -> SerializedSession:
    """Union of both sessions' messages per tier; primary wins on id clashes."""
    merged = clone_session(primary, new_session_id)
    merged.metadata["merged_from"] = [primary.session_id, secondary.session_id]
    known = {
        m.get("id")
        for messages in merged.tiers.values()
        for m in messages
        if isinstance(m, dict)
    }
    for tier, messages in secondary.tiers.items():
        extra = [copy.deepcopy(m) for m in messages if isinstance(m, dict) and m.get("id") not in known]
        if extra:
            combined = merged.tiers.get(tier, []) + extra
            merged.tiers[tier] = sorted(combined, key=lambda m: m.get("timestamp", 0))
            known.update(m.get("id") for m in extra)

    allocations: dict[str, int] = {}
    for tier, messages in merged.tiers.items():
        category = BUDGET_CATEGORIES[tier]
        allocations[category] = allocations.get(category, 0) + sum(
            int(m.get("tokens", 0)) for m in messages if isinstance(m, dict)
        )
    merged.budget.allocations = allocations
    merged.compressions = sorted(
        primary.compressions + secondary.compressions, key=lambda r: r.timestamp
    )
    merged.stats = {}
    return merged
