"""Core data model for the context window.

Messages, tiers, priorities, reservations, and compression records.
Closed sets are str enums so they serialize as plain strings; priority
is an IntEnum because priorities are compared and summed.
"""

from __future__ import annotations

import time
import uuid
from enum import Enum, IntEnum
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class MemoryTier(str, Enum):
    """Retention classes, declared in retention-priority order."""

    SYSTEM = "system"
    TOOLS = "tools"
    RESOURCES = "resources"
    RECENT = "recent"
    ARCHIVED = "archived"
    EPHEMERAL = "ephemeral"


# Tie-break precedence when two messages share a timestamp.
TIER_ORDER: tuple[MemoryTier, ...] = (
    MemoryTier.SYSTEM,
    MemoryTier.TOOLS,
    MemoryTier.RESOURCES,
    MemoryTier.ARCHIVED,
    MemoryTier.RECENT,
    MemoryTier.EPHEMERAL,
)


class MessagePriority(IntEnum):
    EPHEMERAL = 0
    LOW = 25
    NORMAL = 50
    HIGH = 75
    CRITICAL = 100
    SYSTEM = 200


class CompressionStrategy(str, Enum):
    NONE = "none"
    TRUNCATE = "truncate"
    MINIFY = "minify"
    EXTRACT = "extract"
    SUMMARIZE = "summarize"
    HIERARCHICAL = "hierarchical"
    TOOL_AWARE = "tool_aware"


Lossiness = Literal["none", "minimal", "moderate", "high"]

MessageContent = str | list[dict[str, Any]]


def new_message_id(prefix: str = "msg") -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class ContextMessage(BaseModel):
    """A single conversation message owned by exactly one memory tier.

    ``tokens`` is filled lazily by the estimator and is authoritative
    once set. ``priority`` is filled by TieredMemory when absent.
    """

    id: str = Field(default_factory=new_message_id)
    role: MessageRole
    content: MessageContent
    timestamp: float = Field(default_factory=time.time)
    tokens: int | None = None
    priority: int | None = None
    compressible: bool = True
    summarized_from: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("tokens")
    @classmethod
    def _non_negative_tokens(cls, value: int | None) -> int | None:
        if value is not None and value < 0:
            raise ValueError("tokens must be non-negative")
        return value

    def text(self) -> str:
        """Flatten content to plain text (text blocks and tool results only)."""
        if isinstance(self.content, str):
            return self.content
        parts: list[str] = []
        for block in self.content:
            block_type = block.get("type")
            if block_type == "text":
                parts.append(str(block.get("text", "")))
            elif block_type == "tool_result":
                inner = block.get("content", "")
                parts.append(inner if isinstance(inner, str) else str(inner))
        return "\n".join(parts)


def create_message(
    role: MessageRole | str,
    content: MessageContent,
    *,
    tokens: int | None = None,
    priority: int | None = None,
    compressible: bool = True,
    metadata: dict[str, Any] | None = None,
    timestamp: float | None = None,
) -> ContextMessage:
    """Build a ContextMessage with a fresh id."""
    data: dict[str, Any] = {
        "role": MessageRole(role),
        "content": content,
        "tokens": tokens,
        "priority": priority,
        "compressible": compressible,
        "metadata": dict(metadata or {}),
    }
    if timestamp is not None:
        data["timestamp"] = timestamp
    return ContextMessage(**data)


class ToolResult(BaseModel):
    """Provider-neutral tool result record."""

    tool_use_id: str
    name: str
    content: str | list[dict[str, Any]]
    is_error: bool = False


class ImageContent(BaseModel):
    """Image reference: either inline base64 data or a URL."""

    source_type: Literal["base64", "url"] = "base64"
    media_type: str = "image/png"
    data: str = ""


class TokenReservation(BaseModel):
    id: str = Field(default_factory=lambda: new_message_id("res"))
    label: str
    tokens: int
    created_at: float = Field(default_factory=time.time)


class CompressionResult(BaseModel):
    original: list[ContextMessage]
    compressed: list[ContextMessage]
    original_tokens: int
    compressed_tokens: int
    ratio: float
    strategy: CompressionStrategy
    lossiness: Lossiness


class CompressionRecord(BaseModel):
    """History entry for one compaction pass applied to a tier."""

    timestamp: float = Field(default_factory=time.time)
    tier: MemoryTier
    strategy: CompressionStrategy
    lossiness: Lossiness
    original_tokens: int
    compressed_tokens: int
    ratio: float
    removed_ids: list[str] = Field(default_factory=list)
    produced_ids: list[str] = Field(default_factory=list)


class TierConfig(BaseModel):
    max_tokens: int
    min_tokens: int = 0
    compressible: bool = False
    compression_target: float = 1.0

    @model_validator(mode="after")
    def _check_bounds(self) -> "TierConfig":
        if self.min_tokens < 0 or self.max_tokens < 0:
            raise ValueError("tier token bounds must be non-negative")
        if self.min_tokens > self.max_tokens:
            raise ValueError("min_tokens cannot exceed max_tokens")
        return self


DEFAULT_TIER_CONFIGS: dict[MemoryTier, TierConfig] = {
    MemoryTier.SYSTEM: TierConfig(max_tokens=10_000, min_tokens=1_000),
    MemoryTier.TOOLS: TierConfig(max_tokens=8_000, min_tokens=2_000),
    MemoryTier.RESOURCES: TierConfig(
        max_tokens=15_000, min_tokens=1_000, compressible=True, compression_target=0.5
    ),
    MemoryTier.RECENT: TierConfig(max_tokens=50_000, min_tokens=10_000),
    MemoryTier.ARCHIVED: TierConfig(
        max_tokens=30_000, min_tokens=5_000, compressible=True, compression_target=0.3
    ),
    MemoryTier.EPHEMERAL: TierConfig(
        max_tokens=5_000, min_tokens=0, compressible=True, compression_target=0.1
    ),
}


class KeywordBoost(BaseModel):
    pattern: str
    boost: int


class PriorityRules(BaseModel):
    """Rules used by TieredMemory.calculate_priority."""

    role_defaults: dict[MessageRole, int] = Field(
        default_factory=lambda: {
            MessageRole.SYSTEM: MessagePriority.SYSTEM,
            MessageRole.USER: MessagePriority.NORMAL,
            MessageRole.ASSISTANT: MessagePriority.NORMAL,
            MessageRole.TOOL: MessagePriority.HIGH,
        }
    )
    keyword_boosts: list[KeywordBoost] = Field(
        default_factory=lambda: [
            KeywordBoost(pattern=r"\b(error|exception|failed)\b", boost=25),
            KeywordBoost(pattern=r"\b(important|critical|must)\b", boost=20),
            KeywordBoost(pattern=r"\b(remember|note|key)\b", boost=15),
            KeywordBoost(pattern=r"\b(decision|choice|selected)\b", boost=10),
        ]
    )
    tool_priorities: dict[str, int] = Field(
        default_factory=lambda: {
            "read": MessagePriority.HIGH,
            "write": MessagePriority.CRITICAL,
            "edit": MessagePriority.CRITICAL,
            "bash": MessagePriority.HIGH,
            "grep": MessagePriority.NORMAL,
            "glob": MessagePriority.LOW,
        }
    )
    recency_weight: float = 0.1


class TieredMemoryConfig(BaseModel):
    """Per-tier limits plus thresholds; partial tier maps merge over defaults."""

    tiers: dict[MemoryTier, TierConfig] = Field(
        default_factory=lambda: dict(DEFAULT_TIER_CONFIGS)
    )
    recent_turns_count: int = 10
    compression_threshold: float = 0.7
    eviction_threshold: float = 0.9

    @field_validator("tiers", mode="after")
    @classmethod
    def _merge_defaults(
        cls, value: dict[MemoryTier, TierConfig]
    ) -> dict[MemoryTier, TierConfig]:
        merged = dict(DEFAULT_TIER_CONFIGS)
        merged.update(value)
        return merged
