"""
Checkpoint Schema - Workflow state snapshots for recovery.

A checkpoint is written after every node completes (successfully or with a
recoverable failure). Checkpoints are append-only: a later checkpoint
supersedes an earlier one, nothing is ever updated in place.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field


class Checkpoint(BaseModel):
    """
    Single checkpoint in a session's timeline.

    Persisted shape: ``{session_id, node_name, timestamp, state_snapshot}``
    plus a generated ``checkpoint_id``.
    """

    checkpoint_id: str
    session_id: str
    node_name: str
    timestamp: str  # ISO 8601
    state_snapshot: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @classmethod
    def create(cls, session_id: str, node_name: str, state_snapshot: dict[str, Any]) -> "Checkpoint":
        """Create a checkpoint stamped with the current time."""
        return cls(
            checkpoint_id=f"cp_{node_name}_{uuid.uuid4().hex[:12]}",
            session_id=session_id,
            node_name=node_name,
            timestamp=datetime.now(UTC).isoformat(),
            state_snapshot=state_snapshot,
        )

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class CheckpointSummary(BaseModel):
    """Checkpoint metadata without the snapshot, for listings."""

    checkpoint_id: str
    node_name: str
    timestamp: str
    stage: str | None = None
    overall_progress: float | None = None

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        snapshot = checkpoint.state_snapshot
        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            node_name=checkpoint.node_name,
            timestamp=checkpoint.timestamp,
            stage=snapshot.get("current_stage"),
            overall_progress=(snapshot.get("progress") or {}).get("overall_progress"),
        )


class CompressionReport(BaseModel):
    """What ``compress_state`` would strip from a state."""

    original_size: int
    compressed_size: int
    compression_ratio: float
    removed_fields: list[str] = Field(default_factory=list)
