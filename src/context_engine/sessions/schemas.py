"""Serialized session and checkpoint formats.

The ``version`` field gates forward compatibility: a reader refuses any
session newer than SERIALIZATION_VERSION and migrates older ones.
"""

from __future__ import annotations

import copy
import time
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from src.context_engine.errors import UnsupportedSessionVersionError
from src.context_engine.window.schemas import (
    CompressionRecord,
    MemoryTier,
    MessageContent,
    MessageRole,
    PriorityRules,
    TieredMemoryConfig,
)

logger = structlog.get_logger(__name__)

SERIALIZATION_VERSION = 1

BUDGET_CATEGORIES: dict[MemoryTier, str] = {
    MemoryTier.SYSTEM: "system",
    MemoryTier.TOOLS: "tools",
    MemoryTier.RESOURCES: "resources",
    MemoryTier.RECENT: "history",
    MemoryTier.ARCHIVED: "history",
    MemoryTier.EPHEMERAL: "ephemeral",
}


class SerializedMessage(BaseModel):
    id: str
    role: MessageRole
    content: MessageContent
    timestamp: float
    tokens: int = Field(ge=0)
    priority: int
    compressible: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)
    summarized_from: list[str] = Field(default_factory=list)


class CheckpointMessage(SerializedMessage):
    tier: MemoryTier


class SerializedConfig(BaseModel):
    max_tokens: int = 200_000
    response_reserve: int = 4_000
    tool_reserve: int = 2_000
    enable_caching: bool = True
    compression_threshold: float = 0.7
    eviction_threshold: float = 0.9
    budget_warning_ratio: float = 0.7
    budget_critical_ratio: float = 0.9
    recent_turns_count: int = 10
    preserve_recent_messages: int = 4
    allocation_profile: str = "default"
    memory: TieredMemoryConfig = Field(default_factory=TieredMemoryConfig)
    priority_rules: PriorityRules = Field(default_factory=PriorityRules)


class SerializedBudget(BaseModel):
    max_tokens: int
    allocations: dict[str, int] = Field(default_factory=dict)


class SerializedSession(BaseModel):
    version: int = SERIALIZATION_VERSION
    session_id: str
    created_at: float
    updated_at: float
    config: SerializedConfig = Field(default_factory=SerializedConfig)
    tiers: dict[MemoryTier, list[dict[str, Any]]] = Field(default_factory=dict)
    budget: SerializedBudget
    compressions: list[CompressionRecord] = Field(default_factory=list)
    stats: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    def message_count(self) -> int:
        return sum(len(messages) for messages in self.tiers.values())


def migrate_session(raw: dict[str, Any]) -> dict[str, Any]:
    """Upgrade an older session record to the current version."""
    data = copy.deepcopy(raw)
    version = int(data.get("version", 0))
    if version < 1:
        # v0 stored camelCase ids and no compression history or stats.
        if "sessionId" in data and "session_id" not in data:
            data["session_id"] = data.pop("sessionId")
        now = time.time()
        data.setdefault("created_at", data.pop("createdAt", now))
        data.setdefault("updated_at", data.pop("updatedAt", data["created_at"]))
        data.setdefault("compressions", [])
        data.setdefault("stats", {})
        for messages in (data.get("tiers") or {}).values():
            if not isinstance(messages, list):
                continue
            for message in messages:
                if isinstance(message, dict):
                    message.setdefault("compressible", True)
                    message.setdefault("priority", 50)
                    if "summarizedFrom" in message:
                        message["summarized_from"] = message.pop("summarizedFrom")
        logger.info("session.migrated", from_version=version, to_version=SERIALIZATION_VERSION)
    data["version"] = SERIALIZATION_VERSION
    return data


def coerce_session(raw: dict[str, Any]) -> SerializedSession:
    """Validate a raw record leniently, migrating older versions first.

    Unknown or malformed tiers, non-object message entries, an invalid
    config and invalid compression records are dropped with a warning.
    Individual message fields are validated later, at restore time.

    Raises:
        UnsupportedSessionVersionError: If the record is newer than
            SERIALIZATION_VERSION.
        ValidationError: If what remains is still not a session.
    """
    if not isinstance(raw, dict):
        raise ValueError("Session record must be a JSON object")
    version = int(raw.get("version", 0))
    if version > SERIALIZATION_VERSION:
        raise UnsupportedSessionVersionError(version, SERIALIZATION_VERSION)
    data = migrate_session(raw) if version < SERIALIZATION_VERSION else copy.deepcopy(raw)

    tiers: dict[MemoryTier, list[dict[str, Any]]] = {}
    for key, messages in (data.get("tiers") or {}).items():
        try:
            tier = MemoryTier(key)
        except ValueError:
            logger.warning("session.unknown_tier_skipped", tier=key)
            continue
        if not isinstance(messages, list):
            logger.warning("session.malformed_tier_skipped", tier=key)
            continue
        entries = [m for m in messages if isinstance(m, dict)]
        if len(entries) < len(messages):
            logger.warning(
                "session.malformed_messages_skipped",
                tier=key,
                count=len(messages) - len(entries),
            )
        tiers[tier] = entries
    data["tiers"] = tiers

    try:
        data["config"] = SerializedConfig.model_validate(data.get("config") or {})
    except ValidationError:
        logger.warning("session.invalid_config_defaulted", session_id=data.get("session_id"))
        data["config"] = SerializedConfig()

    compressions = []
    for entry in data.get("compressions") or []:
        try:
            compressions.append(CompressionRecord.model_validate(entry))
        except ValidationError:
            logger.warning("session.invalid_compression_skipped")
    data["compressions"] = compressions
    data.setdefault("budget", {"max_tokens": data["config"].max_tokens})
    return SerializedSession.model_validate(data)


class BudgetDelta(BaseModel):
    allocations: dict[str, int] = Field(default_factory=dict)


class SessionCheckpoint(BaseModel):
    checkpoint_id: str
    session_id: str
    timestamp: float = Field(default_factory=time.time)
    new_messages: list[CheckpointMessage] = Field(default_factory=list)
    evicted_ids: list[str] = Field(default_factory=list)
    budget_delta: BudgetDelta = Field(default_factory=BudgetDelta)
    metadata: dict[str, Any] = Field(default_factory=dict)


class SerializeOptions(BaseModel):
    include_compression_history: bool = True
    include_stats: bool = True
    metadata: dict[str, Any] = Field(default_factory=dict)


class RestoreOptions(BaseModel):
    validate_messages: bool = True
    recalculate_tokens: bool = False
    config_overrides: dict[str, Any] = Field(default_factory=dict)
    skip_messages_before: float | None = None
