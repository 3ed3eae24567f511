"""
Storage collaborator for instance rows, watchlist symbols, tracked orders and
latest quotes.

The fleet only relies on the small CRUD contract in `Storage`. Two
implementations ship with the package:

- MemoryStorage: dict-of-tables guarded by an asyncio.Lock. Used by tests
  and as the base for file persistence.
- JsonFileStorage: MemoryStorage that snapshots every table to a JSON file
  after each mutation (write tmp, then atomic replace, in an executor).

Every individual call is atomic with respect to other calls; there are no
multi-statement transactions.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence

from algofleet.utils import utc_iso

log = logging.getLogger("algofleet")

# Deleting a parent row removes child rows in every table carrying this column
CASCADE_COLUMNS: Dict[str, str] = {
    "instances": "instance_id",
    "watchlists": "watchlist_id",
}


class Storage(Protocol):
    async def get(self, entity: str, row_id: int) -> Optional[Dict[str, Any]]: ...

    async def list(self, entity: str, filters: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]: ...

    async def insert(self, entity: str, fields: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def update(self, entity: str, row_id: int, fields: Mapping[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def upsert(self, entity: str, key_fields: Sequence[str], fields: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def delete(self, entity: str, row_id: int) -> bool: ...


def _matches(row: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    for key, expected in filters.items():
        actual = row.get(key)
        if isinstance(expected, (set, frozenset, tuple, list)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


class MemoryStorage:
    """In-process table store. Rows are plain dicts keyed by integer id."""

    def __init__(self, tables: Optional[Mapping[str, Iterable[Mapping[str, Any]]]] = None) -> None:
        self._tables: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._next_id: Dict[str, int] = {}
        self._lock = asyncio.Lock()
        if tables:
            self._load_tables(tables)

    def _load_tables(self, tables: Mapping[str, Iterable[Mapping[str, Any]]]) -> None:
        self._tables = {}
        self._next_id = {}
        for entity, rows in tables.items():
            table = self._tables.setdefault(entity, {})
            for row in rows:
                row_id = int(row["id"])
                table[row_id] = dict(row)
            self._next_id[entity] = max(table.keys(), default=0) + 1

    def _table(self, entity: str) -> Dict[int, Dict[str, Any]]:
        return self._tables.setdefault(entity, {})

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            entity: [copy.deepcopy(row) for _, row in sorted(rows.items())]
            for entity, rows in self._tables.items()
        }

    async def get(self, entity: str, row_id: int) -> Optional[Dict[str, Any]]:
        async with self._lock:
            row = self._table(entity).get(int(row_id))
            return copy.deepcopy(row) if row is not None else None

    async def list(self, entity: str, filters: Optional[Mapping[str, Any]] = None) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = [row for _, row in sorted(self._table(entity).items())]
            if filters:
                rows = [row for row in rows if _matches(row, filters)]
            return [copy.deepcopy(row) for row in rows]

    async def insert(self, entity: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        async with self._lock:
            row_id = self._next_id.get(entity, 1)
            self._next_id[entity] = row_id + 1
            now = utc_iso()
            row = {"created_at": now, "last_updated": now, **dict(fields), "id": row_id}
            self._table(entity)[row_id] = row
            result = copy.deepcopy(row)
        await self._after_write()
        return result

    async def update(self, entity: str, row_id: int, fields: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            row = self._table(entity).get(int(row_id))
            if row is None:
                return None
            row.update({k: v for k, v in fields.items() if k != "id"})
            row["last_updated"] = utc_iso()
            result = copy.deepcopy(row)
        await self._after_write()
        return result

    async def upsert(self, entity: str, key_fields: Sequence[str], fields: Mapping[str, Any]) -> Dict[str, Any]:
        key = {k: fields[k] for k in key_fields}
        async with self._lock:
            table = self._table(entity)
            existing = next((row for row in table.values() if _matches(row, key)), None)
            if existing is not None:
                existing.update({k: v for k, v in fields.items() if k != "id"})
                existing["last_updated"] = utc_iso()
                result = copy.deepcopy(existing)
            else:
                row_id = self._next_id.get(entity, 1)
                self._next_id[entity] = row_id + 1
                now = utc_iso()
                row = {"created_at": now, "last_updated": now, **dict(fields), "id": row_id}
                table[row_id] = row
                result = copy.deepcopy(row)
        await self._after_write()
        return result

    async def delete(self, entity: str, row_id: int) -> bool:
        async with self._lock:
            removed = self._table(entity).pop(int(row_id), None)
            if removed is None:
                return False
            column = CASCADE_COLUMNS.get(entity)
            if column:
                for other, rows in self._tables.items():
                    if other == entity:
                        continue
                    for child_id in [cid for cid, row in rows.items() if row.get(column) == int(row_id)]:
                        del rows[child_id]
        await self._after_write()
        return True

    async def _after_write(self) -> None:
        """Hook for persistent subclasses."""
        return None


class JsonFileStorage(MemoryStorage):
    """
    MemoryStorage persisted to a single JSON file.

    Writes go to `<path>.tmp` and are moved into place with Path.replace so a
    crash never leaves a half-written store behind.
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self.path = Path(path)
        self.tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        self._write_lock = asyncio.Lock()

    async def open(self) -> "JsonFileStorage":
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(None, self._read)
        async with self._lock:
            self._load_tables(data)
        log.info(json.dumps({
            "event": "storage_opened",
            "path": str(self.path),
            "tables": {k: len(v) for k, v in data.items()},
        }))
        return self

    def _read(self) -> Dict[str, List[Dict[str, Any]]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as exc:
            log.error(json.dumps({"event": "storage_load_error", "path": str(self.path), "err": str(exc)}))
            raise
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} does not contain a table mapping")
        return data

    def _write(self, data: Dict[str, List[Dict[str, Any]]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.tmp.write_text(json.dumps(data, indent=2, default=str))
        self.tmp.replace(self.path)

    async def _after_write(self) -> None:
        async with self._write_lock:
            async with self._lock:
                data = self.snapshot()
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._write, data)
