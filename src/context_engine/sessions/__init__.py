"""Session persistence.

Provides:
- SessionSerializer: serialize/deserialize managers, checkpoints, save/restore
- MemoryStorage / FileStorage / RedisStorage / PassthroughStorage: storage backends
- SerializedSession / SessionCheckpoint: versioned wire records
"""

from src.context_engine.sessions.schemas import (
    SERIALIZATION_VERSION,
    RestoreOptions,
    SerializedSession,
    SerializeOptions,
    SessionCheckpoint,
)
from src.context_engine.sessions.serializer import (
    SessionSerializer,
    clone_session,
    export_session_json,
    generate_session_id,
    import_session_json,
    merge_sessions,
)
from src.context_engine.sessions.storage import (
    FileStorage,
    MemoryStorage,
    PassthroughStorage,
    RedisStorage,
    SessionStorage,
)

__all__ = [
    "SERIALIZATION_VERSION",
    "RestoreOptions",
    "SerializedSession",
    "SerializeOptions",
    "SessionCheckpoint",
    "SessionSerializer",
    "clone_session",
    "export_session_json",
    "generate_session_id",
    "import_session_json",
    "merge_sessions",
    "FileStorage",
    "MemoryStorage",
    "PassthroughStorage",
    "RedisStorage",
    "SessionStorage",
]
