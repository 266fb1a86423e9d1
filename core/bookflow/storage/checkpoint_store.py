"""
Checkpoint Store - Best-effort state snapshots and recovery.

A checkpoint is appended after every node boundary. Saving never fails the
workflow: a write that still fails after the ``storage`` retry policy is
logged as a ``PersistenceError`` and dropped. Recovery returns the latest
snapshot for a session and is safe to call any number of times.

Snapshots are compressed before they are written:
- ``source_document`` (raw upload bytes) is removed
- unit content at or above ``max_inline_content_chars`` is dropped; the full
  text lives in the ``unit_results`` table
"""

import json
import logging
from typing import Any

from bookflow.errors import PersistenceError, StorageError
from bookflow.errors.context import execute_with_store_context
from bookflow.errors.retry import DEFAULT_RETRY_POLICIES, RetryPolicy, with_retry
from bookflow.graph.checkpoint_config import DEFAULT_CHECKPOINT_CONFIG, CheckpointConfig
from bookflow.schemas.checkpoint import Checkpoint, CheckpointSummary, CompressionReport
from bookflow.schemas.workflow_state import WorkflowState
from bookflow.storage.backend import CHECKPOINTS_TABLE, StoreBackend

logger = logging.getLogger(__name__)

DEFAULT_MAX_INLINE_CONTENT_CHARS = DEFAULT_CHECKPOINT_CONFIG.max_inline_content_chars


def compress_state(
    state: WorkflowState, max_inline_content_chars: int = DEFAULT_MAX_INLINE_CONTENT_CHARS
) -> dict[str, Any]:
    """JSON-ready snapshot of ``state`` without binary payloads or oversized content."""
    snapshot = state.model_dump(mode="json", exclude={"source_document"})
    for unit in snapshot.get("units", []):
        content = unit.get("content")
        if content and len(content) >= max_inline_content_chars:
            unit["content"] = None
    return snapshot


def decompress_state(snapshot: dict[str, Any]) -> WorkflowState:
    """Rebuild a state from a snapshot. Timestamps come from the snapshot."""
    return WorkflowState.model_validate(snapshot)


def analyze_state_compression(
    state: WorkflowState, max_inline_content_chars: int = DEFAULT_MAX_INLINE_CONTENT_CHARS
) -> CompressionReport:
    """Report how much a snapshot of ``state`` saves and what it drops."""
    full = state.model_dump(mode="json")
    compressed = compress_state(state, max_inline_content_chars)

    removed: list[str] = []
    if state.source_document is not None:
        removed.append("source_document")
    for unit in state.units:
        if unit.content and len(unit.content) >= max_inline_content_chars:
            removed.append(f"units[{unit.unit_number}].content")

    original_size = len(json.dumps(full))
    compressed_size = len(json.dumps(compressed))
    return CompressionReport(
        original_size=original_size,
        compressed_size=compressed_size,
        compression_ratio=round(1 - compressed_size / original_size, 4) if original_size else 0.0,
        removed_fields=removed,
    )


class CheckpointStore:
    """
    Append-only checkpoint history on top of a ``StoreBackend``.

    Rows live in the ``workflow_checkpoints`` table with the shape
    ``{checkpoint_id, session_id, node_name, timestamp, state_snapshot}``.
    """

    def __init__(
        self,
        backend: StoreBackend,
        config: CheckpointConfig | None = None,
        retry_policy: RetryPolicy | None = None,
    ):
        self.backend = backend
        self.config = config or DEFAULT_CHECKPOINT_CONFIG
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICIES["storage"]

    async def save_checkpoint(
        self, session_id: str, node_name: str, state: WorkflowState
    ) -> Checkpoint | None:
        """
        Append a checkpoint for ``state``.

        Returns:
            The written checkpoint, or None if checkpointing is disabled or
            the write failed (the failure is logged, never raised)
        """
        if not self.config.enabled:
            return None

        checkpoint = Checkpoint.create(
            session_id=session_id,
            node_name=node_name,
            state_snapshot=compress_state(state, self.config.max_inline_content_chars),
        )

        async def _insert() -> dict[str, Any]:
            return await execute_with_store_context(
                "save_checkpoint",
                CHECKPOINTS_TABLE,
                lambda: self.backend.insert(CHECKPOINTS_TABLE, checkpoint.to_record()),
                session_id=session_id,
            )

        try:
            await with_retry(_insert, self.retry_policy, operation_name="save_checkpoint")
        except Exception as e:
            error = PersistenceError(
                "save_checkpoint",
                f"Failed to save checkpoint for node {node_name}: {e}",
                table=CHECKPOINTS_TABLE,
                context={"session_id": session_id, "node_name": node_name},
                cause=e,
            )
            logger.error(
                f"⚠ {error.message}",
                extra={"event": "checkpoint_failed", "session_id": session_id, "node": node_name},
            )
            return None

        logger.debug(
            f"Saved checkpoint {checkpoint.checkpoint_id}",
            extra={"event": "checkpoint_saved", "session_id": session_id, "node": node_name},
        )
        return checkpoint

    async def load_latest_checkpoint(self, session_id: str) -> Checkpoint | None:
        rows = await execute_with_store_context(
            "load_checkpoint",
            CHECKPOINTS_TABLE,
            lambda: self.backend.select(
                CHECKPOINTS_TABLE,
                {"session_id": session_id},
                order_by="timestamp",
                descending=True,
                limit=1,
            ),
            session_id=session_id,
        )
        if not rows:
            return None
        return Checkpoint.model_validate(rows[0])

    async def recover_workflow(self, session_id: str) -> WorkflowState | None:
        """
        State from the most recent checkpoint of ``session_id``, or None.

        Raises:
            StorageError: the snapshot exists but cannot be decoded
        """
        checkpoint = await self.load_latest_checkpoint(session_id)
        if checkpoint is None:
            logger.info(f"No checkpoint found for session {session_id}")
            return None

        try:
            state = decompress_state(checkpoint.state_snapshot)
        except ValueError as e:
            raise StorageError.for_query(
                CHECKPOINTS_TABLE,
                "recover_workflow",
                f"Checkpoint {checkpoint.checkpoint_id} is corrupted: {e}",
                cause=e,
            ) from e

        logger.info(
            f"📥 Recovered session {session_id} at stage {state.current_stage} "
            f"from checkpoint {checkpoint.checkpoint_id}",
            extra={"event": "workflow_recovered", "session_id": session_id},
        )
        return state

    async def list_checkpoints(self, session_id: str) -> list[CheckpointSummary]:
        """Checkpoints of ``session_id``, oldest first."""
        rows = await self.backend.select(
            CHECKPOINTS_TABLE, {"session_id": session_id}, order_by="timestamp"
        )
        return [CheckpointSummary.from_checkpoint(Checkpoint.model_validate(row)) for row in rows]

    async def clear_checkpoints(self, session_id: str) -> int:
        """Delete every checkpoint of ``session_id``. Returns the number deleted."""
        deleted = await self.backend.delete(CHECKPOINTS_TABLE, {"session_id": session_id})
        if deleted:
            logger.info(f"Cleared {deleted} checkpoints for session {session_id}")
        return deleted
