"""Shared bookflow configuration utilities.

Centralises reading of ~/.bookflow/configuration.json plus the environment
overrides, so the CLI, the state machine and the stage nodes share one
implementation.

Example configuration.json::

    {
      "max_concurrency": 5,
      "max_retries": 2,
      "storage_path": "~/.bookflow/store",
      "checkpoints": {"enabled": true, "max_inline_content_chars": 10000},
      "retry_policies": {"api": {"max_retries": 5, "timeout": 900}}
    }
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

from bookflow.errors import ValidationError
from bookflow.errors.retry import DEFAULT_RETRY_POLICIES, RetryPolicy
from bookflow.graph.checkpoint_config import CheckpointConfig
from bookflow.graph.node import DEFAULT_MAX_RETRIES
from bookflow.graph.parallel import DEFAULT_MAX_CONCURRENCY

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

BOOKFLOW_HOME = Path.home() / ".bookflow"
BOOKFLOW_CONFIG_FILE = BOOKFLOW_HOME / "configuration.json"
DEFAULT_STORAGE_PATH = BOOKFLOW_HOME / "store"


def get_bookflow_config(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from ~/.bookflow/configuration.json (or ``path``)."""
    config_file = path or BOOKFLOW_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable configuration {config_file}: {e}")
        return {}


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer, got {raw!r}") from None


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_max_concurrency(config: dict[str, Any] | None = None) -> int:
    """Units generated at once inside a layer."""
    value = _env_int("BOOKFLOW_MAX_CONCURRENCY")
    if value is None:
        value = (config if config is not None else get_bookflow_config()).get(
            "max_concurrency", DEFAULT_MAX_CONCURRENCY
        )
    if value < 1:
        raise ValidationError(f"max_concurrency must be >= 1, got {value}")
    return value


def get_max_retries(config: dict[str, Any] | None = None) -> int:
    """Recovery attempts per node."""
    value = _env_int("BOOKFLOW_MAX_RETRIES")
    if value is None:
        value = (config if config is not None else get_bookflow_config()).get(
            "max_retries", DEFAULT_MAX_RETRIES
        )
    if value < 0:
        raise ValidationError(f"max_retries must be >= 0, got {value}")
    return value


def get_storage_path(config: dict[str, Any] | None = None) -> Path:
    raw = os.environ.get("BOOKFLOW_STORAGE_PATH") or (
        config if config is not None else get_bookflow_config()
    ).get("storage_path")
    return Path(raw).expanduser() if raw else DEFAULT_STORAGE_PATH


def get_checkpoint_config(config: dict[str, Any] | None = None) -> CheckpointConfig:
    raw = (config if config is not None else get_bookflow_config()).get("checkpoints", {})
    known = {f.name for f in fields(CheckpointConfig)}
    return CheckpointConfig(**{k: v for k, v in raw.items() if k in known})


def get_retry_policies(config: dict[str, Any] | None = None) -> dict[str, RetryPolicy]:
    """Default presets with per-preset overrides from the configuration file."""
    overrides = (config if config is not None else get_bookflow_config()).get(
        "retry_policies", {}
    )
    policies = dict(DEFAULT_RETRY_POLICIES)
    for name, values in overrides.items():
        base = policies.get(name, RetryPolicy())
        policies[name] = replace(base, **values)
    return policies


def get_log_level() -> str:
    return os.environ.get("LOG_LEVEL", "INFO").upper()


# ---------------------------------------------------------------------------
# RuntimeConfig
# ---------------------------------------------------------------------------


@dataclass
class RuntimeConfig:
    """Workflow runtime configuration loaded from ~/.bookflow/configuration.json."""

    max_concurrency: int = field(default_factory=get_max_concurrency)
    max_retries: int = field(default_factory=get_max_retries)
    storage_path: Path = field(default_factory=get_storage_path)
    checkpoint: CheckpointConfig = field(default_factory=get_checkpoint_config)
    retry_policies: dict[str, RetryPolicy] = field(default_factory=get_retry_policies)
    log_level: str = field(default_factory=get_log_level)

    @classmethod
    def load(cls, path: Path | None = None) -> "RuntimeConfig":
        """Read the configuration file once and derive every field from it."""
        config = get_bookflow_config(path)
        return cls(
            max_concurrency=get_max_concurrency(config),
            max_retries=get_max_retries(config),
            storage_path=get_storage_path(config),
            checkpoint=get_checkpoint_config(config),
            retry_policies=get_retry_policies(config),
            log_level=get_log_level(),
        )

    def retry_policy(self, name: str) -> RetryPolicy:
        try:
            return self.retry_policies[name]
        except KeyError:
            raise ValidationError(
                f"Unknown retry policy '{name}'",
                context={"available": sorted(self.retry_policies)},
            ) from None
