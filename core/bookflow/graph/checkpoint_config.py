"""
Checkpoint Configuration - Controls checkpoint behavior during a workflow run.
"""

from dataclasses import dataclass


@dataclass
class CheckpointConfig:
    """
    Configuration for checkpoint behavior.

    Controls when checkpoints are written and how much unit content is kept
    inline in a snapshot.
    """

    # Enable/disable checkpointing
    enabled: bool = True

    # When to checkpoint
    checkpoint_on_node_complete: bool = True
    checkpoint_on_failure: bool = True  # recoverable failures only

    # Unit content at or above this many characters is dropped from snapshots;
    # it is persisted separately as a unit result
    max_inline_content_chars: int = 10_000

    def should_checkpoint_node_complete(self) -> bool:
        """Check if should checkpoint after a node succeeds."""
        return self.enabled and self.checkpoint_on_node_complete

    def should_checkpoint_failure(self) -> bool:
        """Check if should checkpoint after a node fails recoverably."""
        return self.enabled and self.checkpoint_on_failure


DEFAULT_CHECKPOINT_CONFIG = CheckpointConfig()

# No checkpoints at all, e.g. for dry runs
DISABLED_CHECKPOINT_CONFIG = CheckpointConfig(enabled=False)
