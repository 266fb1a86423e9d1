"""Persistence: store backends, checkpoints and session records."""

from bookflow.storage.backend import (
    CHECKPOINTS_TABLE,
    SESSIONS_TABLE,
    UNIT_RESULTS_TABLE,
    FileStore,
    InMemoryStore,
    StoreBackend,
)
from bookflow.storage.checkpoint_store import (
    CheckpointStore,
    analyze_state_compression,
    compress_state,
    decompress_state,
)
from bookflow.storage.session_store import SessionStore

__all__ = [
    "CHECKPOINTS_TABLE",
    "SESSIONS_TABLE",
    "UNIT_RESULTS_TABLE",
    "CheckpointStore",
    "FileStore",
    "InMemoryStore",
    "SessionStore",
    "StoreBackend",
    "analyze_state_compression",
    "compress_state",
    "decompress_state",
]
