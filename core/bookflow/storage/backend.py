"""
Persistent store backends.

The orchestration core needs three logical tables, keyed by ``session_id``:

    sessions               one row per session
    unit_results           one row per (session_id, unit_number)
    workflow_checkpoints   append-only, one row per checkpoint

``StoreBackend`` is the narrow contract; ``InMemoryStore`` (tests, dry runs)
and ``FileStore`` (one JSON file per table) ship with the package. Every
inserted row gets an auto-increment ``id`` so ordering is stable when two
rows share a timestamp.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from bookflow.errors import StorageError
from bookflow.utils.io import atomic_write

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "sessions"
UNIT_RESULTS_TABLE = "unit_results"
CHECKPOINTS_TABLE = "workflow_checkpoints"

KNOWN_TABLES = frozenset({SESSIONS_TABLE, UNIT_RESULTS_TABLE, CHECKPOINTS_TABLE})

Row = dict[str, Any]


def _matches(row: Row, filters: dict[str, Any] | None) -> bool:
    return all(row.get(key) == value for key, value in (filters or {}).items())


def _order(rows: list[Row], order_by: str | None, descending: bool) -> list[Row]:
    if order_by is None:
        key = lambda row: row.get("id", 0)  # noqa: E731
    else:
        key = lambda row: (row.get(order_by) is not None, row.get(order_by), row.get("id", 0))  # noqa: E731
    return sorted(rows, key=key, reverse=descending)


class StoreBackend(ABC):
    """Async table store. Filters are equality matches on top-level columns."""

    @abstractmethod
    async def insert(self, table: str, record: Row) -> Row:
        """Insert ``record`` and return it with its generated ``id``."""

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        """Rows matching ``filters``; callers get copies they may mutate."""

    @abstractmethod
    async def update(self, table: str, filters: dict[str, Any], values: Row) -> int:
        """Merge ``values`` into matching rows. Returns the number updated."""

    @abstractmethod
    async def delete(self, table: str, filters: dict[str, Any]) -> int:
        """Delete matching rows. Returns the number deleted."""

    async def upsert(self, table: str, filters: dict[str, Any], record: Row) -> Row:
        """Update the row matching ``filters`` or insert ``record``."""
        if await self.update(table, filters, record):
            rows = await self.select(table, filters, limit=1)
            return rows[0]
        return await self.insert(table, {**record, **filters})

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in KNOWN_TABLES:
            raise StorageError(
                "validate",
                f"Unknown table '{table}'",
                code="STORE_UNKNOWN_TABLE",
                table=table,
                recoverable=False,
            )


class InMemoryStore(StoreBackend):
    """Process-local store. Rows are deep-copied in and out."""

    def __init__(self) -> None:
        self._tables: dict[str, list[Row]] = {table: [] for table in KNOWN_TABLES}
        self._next_id = 1

    async def insert(self, table: str, record: Row) -> Row:
        self._check_table(table)
        row = copy.deepcopy(record)
        row.setdefault("id", self._next_id)
        self._next_id += 1
        self._tables[table].append(row)
        return copy.deepcopy(row)

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        self._check_table(table)
        rows = _order([r for r in self._tables[table] if _matches(r, filters)], order_by, descending)
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def update(self, table: str, filters: dict[str, Any], values: Row) -> int:
        self._check_table(table)
        count = 0
        for row in self._tables[table]:
            if _matches(row, filters):
                row.update(copy.deepcopy(values))
                count += 1
        return count

    async def delete(self, table: str, filters: dict[str, Any]) -> int:
        self._check_table(table)
        keep = [r for r in self._tables[table] if not _matches(r, filters)]
        count = len(self._tables[table]) - len(keep)
        self._tables[table] = keep
        return count


class FileStore(StoreBackend):
    """
    JSON-file store for single-process use.

    Directory structure:
        {base_path}/
            sessions.json
            unit_results.json
            workflow_checkpoints.json

    Every write rewrites the table file atomically (temp file + rename).
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)
        self._lock = asyncio.Lock()

    def _table_path(self, table: str) -> Path:
        return self.base_path / f"{table}.json"

    def _read(self, table: str) -> list[Row]:
        path = self._table_path(table)
        if not path.exists():
            return []
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StorageError.for_query(table, "read", f"Corrupted table file {path}: {e}", cause=e) from e

    def _write(self, table: str, rows: list[Row]) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)
        with atomic_write(self._table_path(table)) as f:
            json.dump(rows, f, indent=2)

    async def insert(self, table: str, record: Row) -> Row:
        self._check_table(table)

        def _insert() -> Row:
            rows = self._read(table)
            row = dict(record)
            row.setdefault("id", max((r.get("id", 0) for r in rows), default=0) + 1)
            rows.append(row)
            self._write(table, rows)
            return row

        async with self._lock:
            return await asyncio.to_thread(_insert)

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        order_by: str | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Row]:
        self._check_table(table)
        async with self._lock:
            rows = await asyncio.to_thread(self._read, table)
        rows = _order([r for r in rows if _matches(r, filters)], order_by, descending)
        return rows[:limit] if limit is not None else rows

    async def update(self, table: str, filters: dict[str, Any], values: Row) -> int:
        self._check_table(table)

        def _update() -> int:
            rows = self._read(table)
            count = 0
            for row in rows:
                if _matches(row, filters):
                    row.update(values)
                    count += 1
            if count:
                self._write(table, rows)
            return count

        async with self._lock:
            return await asyncio.to_thread(_update)

    async def delete(self, table: str, filters: dict[str, Any]) -> int:
        self._check_table(table)

        def _delete() -> int:
            rows = self._read(table)
            keep = [r for r in rows if not _matches(r, filters)]
            if len(keep) != len(rows):
                self._write(table, keep)
            return len(rows) - len(keep)

        async with self._lock:
            return await asyncio.to_thread(_delete)
