"""Context window core.

Provides:
- TokenEstimator / TiktokenEstimator: token cost heuristics and exact BPE counts
- TokenBudgetTracker: ceiling, per-category allocations, and reservations
- TieredMemory: six-tier message store with priority and eviction rules
- ContextCompressor: strategy-table compression with summarizer fallback
- ContextAllocator: per-tier budget shares and retain/compress/evict plans
- ContextManager: per-session facade composing all of the above
"""

from src.context_engine.window.allocator import AllocationRequest, AllocationResult, ContextAllocator
from src.context_engine.window.budget import TokenBudgetTracker
from src.context_engine.window.compressor import CompressionOptions, ContextCompressor
from src.context_engine.window.events import ContextEvent, ContextEventType
from src.context_engine.window.manager import (
    ContextManager,
    ContextManagerConfig,
    PreparedRequest,
    PrepareOptions,
)
from src.context_engine.window.memory import TieredMemory
from src.context_engine.window.schemas import (
    CompressionResult,
    CompressionStrategy,
    ContextMessage,
    MemoryTier,
    MessagePriority,
    MessageRole,
    ToolResult,
    create_message,
)
from src.context_engine.window.tokens import TiktokenEstimator, TokenEstimator

__all__ = [
    "AllocationRequest",
    "AllocationResult",
    "ContextAllocator",
    "TokenBudgetTracker",
    "CompressionOptions",
    "ContextCompressor",
    "ContextEvent",
    "ContextEventType",
    "ContextManager",
    "ContextManagerConfig",
    "PreparedRequest",
    "PrepareOptions",
    "TieredMemory",
    "CompressionResult",
    "CompressionStrategy",
    "ContextMessage",
    "MemoryTier",
    "MessagePriority",
    "MessageRole",
    "ToolResult",
    "create_message",
    "TiktokenEstimator",
    "TokenEstimator",
]
