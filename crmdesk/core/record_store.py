import json
import logging
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

COLUMN_MISSING_PATTERN = re.compile(r'column .* does not exist', re.IGNORECASE)


class RecordStoreError(Exception):
    """Base error raised by record store backends."""


class ColumnNotFoundError(RecordStoreError):
    """A filter or selected column is not part of the table schema."""

    def __init__(self, table: str, column: str):
        self.table = table
        self.column = column
        super().__init__(f'column {table}.{column} does not exist')


def is_column_error(error: Exception) -> bool:
    if isinstance(error, ColumnNotFoundError):
        return True
    return bool(COLUMN_MISSING_PATTERN.search(str(error)))


def _sort_key(value: Any) -> Tuple[int, Any]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


class RecordStore(ABC):
    """
    Abstract contract for the hosted relational store.
    Filters are equality matches; ``order`` is ``(column, descending)``.
    """

    @abstractmethod
    def query(self, table: str, filters: Optional[Dict[str, Any]] = None,
              order: Optional[Tuple[str, bool]] = None, limit: Optional[int] = None,
              columns: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def update(self, table: str, filters: Dict[str, Any], patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def delete(self, table: str, filters: Dict[str, Any]) -> None:
        pass


class InMemoryRecordStore(RecordStore):
    """
    Dict-backed store used for local runs and tests.
    A table's schema is the union of the keys of its rows, so probing an
    unknown column fails the same way the hosted service does.
    """

    def __init__(self, data: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self._next_id = 1
        self._lock = threading.Lock()
        for table, rows in (data or {}).items():
            self._tables[table] = [dict(row) for row in rows]
            for row in rows:
                if isinstance(row.get('id'), int) and row['id'] >= self._next_id:
                    self._next_id = row['id'] + 1

    @classmethod
    def from_json_file(cls, path: Path) -> 'InMemoryRecordStore':
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        logger.info(f"Record store seeded from {path} ({len(data)} tables)")
        return cls(data)

    def _columns(self, table: str) -> set:
        columns = set()
        for row in self._tables.get(table, []):
            columns.update(row.keys())
        return columns

    def _check_columns(self, table: str, names: Iterable[str]) -> None:
        known = self._columns(table)
        if not known:
            return
        for name in names:
            if name not in known:
                raise ColumnNotFoundError(table, name)

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Dict[str, Any]) -> bool:
        for key, expected in filters.items():
            value = row.get(key)
            if value != expected and str(value) != str(expected):
                return False
        return True

    def query(self, table, filters=None, order=None, limit=None, columns=None):
        filters = filters or {}
        with self._lock:
            self._check_columns(table, list(filters) + list(columns or []))
            if order:
                self._check_columns(table, [order[0]])
            rows = [dict(row) for row in self._tables.get(table, []) if self._matches(row, filters)]

        if order:
            column, descending = order
            # Missing values sort last regardless of direction
            present = [r for r in rows if r.get(column) is not None]
            missing = [r for r in rows if r.get(column) is None]
            present.sort(key=lambda r: _sort_key(r[column]), reverse=descending)
            rows = present + missing
        if limit is not None:
            rows = rows[:limit]
        if columns:
            rows = [{c: row.get(c) for c in columns} for row in rows]
        logger.debug(f"Query {table} filters={filters} -> {len(rows)} rows")
        return rows

    def insert(self, table, row):
        with self._lock:
            record = dict(row)
            if 'id' not in record:
                record['id'] = self._next_id
                self._next_id += 1
            record.setdefault('created_at', datetime.now(timezone.utc).isoformat())
            self._tables.setdefault(table, []).append(record)
        logger.debug(f"Inserted into {table}: id={record['id']}")
        return dict(record)

    def update(self, table, filters, patch):
        updated = []
        with self._lock:
            self._check_columns(table, filters)
            for row in self._tables.get(table, []):
                if self._matches(row, filters):
                    row.update(patch)
                    updated.append(dict(row))
        logger.debug(f"Updated {len(updated)} rows in {table}")
        return updated

    def delete(self, table, filters):
        with self._lock:
            self._check_columns(table, filters)
            rows = self._tables.get(table, [])
            self._tables[table] = [row for row in rows if not self._matches(row, filters)]


def query_with_fallback(store: RecordStore, table: str, filter_fields: Sequence[str], value: Any,
                        column_sets: Sequence[Optional[Sequence[str]]] = (None,),
                        order: Optional[Tuple[str, bool]] = None,
                        limit: Optional[int] = None, skip_empty: bool = False) -> List[Dict[str, Any]]:
    """
    Query a table whose schema may have drifted.

    Every candidate column set is tried against every candidate filter field.
    Only "column does not exist" errors move on to the next candidate; any
    other error is raised immediately. With ``skip_empty`` an empty result
    also moves on. If all candidates fail, the last column error is raised.
    """
    last_error: Optional[Exception] = None
    found_empty = False
    for columns in column_sets:
        for field in filter_fields:
            try:
                rows = store.query(table, filters={field: value}, order=order, limit=limit, columns=columns)
            except Exception as e:
                if not is_column_error(e):
                    raise
                logger.debug(f"Schema probe on {table}: {e}")
                last_error = e
                continue
            if rows or not skip_empty:
                return rows
            found_empty = True
    if found_empty:
        return []
    if last_error:
        raise last_error
    return []
