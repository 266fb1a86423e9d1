"""
Session Store - session and unit-result records.

    sessions        {session_id, user_id, user_prompt, status, current_stage,
                     error, created_at, updated_at}
    unit_results    {session_id, unit_number, title, content, word_count,
                     status, error, generated_at, dependencies}

Unit results hold the full unit text, including content too large to keep
inline in a checkpoint snapshot.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from bookflow.errors.context import execute_with_store_context
from bookflow.errors.retry import DEFAULT_RETRY_POLICIES, RetryPolicy, with_retry
from bookflow.schemas.workflow_state import UnitResult, WorkflowState, WorkflowStatus
from bookflow.storage.backend import SESSIONS_TABLE, UNIT_RESULTS_TABLE, StoreBackend

logger = logging.getLogger(__name__)


class SessionStore:
    """Session bookkeeping on top of a ``StoreBackend``."""

    def __init__(self, backend: StoreBackend, retry_policy: RetryPolicy | None = None):
        self.backend = backend
        self.retry_policy = retry_policy or DEFAULT_RETRY_POLICIES["storage"]

    async def _call(self, operation: str, table: str, call, session_id: str):
        return await with_retry(
            lambda: execute_with_store_context(operation, table, call, session_id=session_id),
            self.retry_policy,
            operation_name=operation,
        )

    async def create_session(self, state: WorkflowState) -> dict[str, Any]:
        record = {
            "session_id": state.session_id,
            "user_id": state.user_id,
            "user_prompt": state.user_prompt,
            "status": str(state.status),
            "current_stage": str(state.current_stage),
            "error": state.error,
            "created_at": state.created_at,
            "updated_at": state.updated_at,
        }
        row = await self._call(
            "create_session",
            SESSIONS_TABLE,
            lambda: self.backend.upsert(SESSIONS_TABLE, {"session_id": state.session_id}, record),
            state.session_id,
        )
        logger.info(f"Created session {state.session_id}", extra={"session_id": state.session_id})
        return row

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        rows = await self._call(
            "get_session",
            SESSIONS_TABLE,
            lambda: self.backend.select(SESSIONS_TABLE, {"session_id": session_id}, limit=1),
            session_id,
        )
        return rows[0] if rows else None

    async def update_session_status(
        self,
        session_id: str,
        status: WorkflowStatus,
        *,
        current_stage: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Update the session row. Returns False if the session does not exist."""
        values: dict[str, Any] = {
            "status": str(status),
            "error": error,
            "updated_at": datetime.now(UTC).isoformat(),
        }
        if current_stage is not None:
            values["current_stage"] = current_stage
        updated = await self._call(
            "update_session_status",
            SESSIONS_TABLE,
            lambda: self.backend.update(SESSIONS_TABLE, {"session_id": session_id}, values),
            session_id,
        )
        return updated > 0

    async def save_unit_result(self, session_id: str, unit: UnitResult) -> dict[str, Any]:
        """Insert or replace the result of one unit."""
        key = {"session_id": session_id, "unit_number": unit.unit_number}
        record = unit.model_dump(mode="json")
        return await self._call(
            "save_unit_result",
            UNIT_RESULTS_TABLE,
            lambda: self.backend.upsert(UNIT_RESULTS_TABLE, key, record),
            session_id,
        )

    async def list_unit_results(self, session_id: str) -> list[UnitResult]:
        rows = await self._call(
            "list_unit_results",
            UNIT_RESULTS_TABLE,
            lambda: self.backend.select(
                UNIT_RESULTS_TABLE, {"session_id": session_id}, order_by="unit_number"
            ),
            session_id,
        )
        return [UnitResult.model_validate(row) for row in rows]
