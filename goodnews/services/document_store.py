"""
Document store on SQLite (aiosqlite).

Each collection is a table of ``(id TEXT PRIMARY KEY, data TEXT)`` holding
JSON documents. On top of that the store offers what the pipeline needs:

- get / get_many / set (optionally merging) / update / delete
- atomic write batches: every operation in a batch commits in a single
  ``BEGIN IMMEDIATE`` transaction or none of them do
- field transforms (``Increment``, ``ArrayUnion``, ``ArrayRemove``) resolved
  inside the write transaction, so counters never go through a
  caller-side read-modify-write
- ordered, filtered, limited queries with ``start_after`` cursors

All statements go through one connection guarded by an ``asyncio.Lock``
so that interleaved coroutines cannot share a transaction.
"""

import asyncio
import copy
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

from goodnews.utils.errors import ResourceNotFound, StoreError, ValidationError


NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z0-9_]+)*$")
QUERY_OPERATORS = ("==", "!=", "<", "<=", ">", ">=", "in")
SQL_OPERATORS = {"==": "=", "!=": "!=", "<": "<", "<=": "<=", ">": ">", ">=": ">="}


class FieldTransform:
    """A server-side field mutation resolved at commit time."""

    def apply(self, current: Any) -> Any:
        raise NotImplementedError


class Increment(FieldTransform):
    def __init__(self, amount: float = 1):
        self.amount = amount

    def apply(self, current: Any) -> Any:
        if not isinstance(current, (int, float)) or isinstance(current, bool):
            current = 0
        return current + self.amount

    def __repr__(self) -> str:
        return f"Increment({self.amount})"


class ArrayUnion(FieldTransform):
    def __init__(self, *values: Any):
        self.values = list(values)

    def apply(self, current: Any) -> Any:
        result = list(current) if isinstance(current, list) else []
        for value in self.values:
            if value not in result:
                result.append(value)
        return result


class ArrayRemove(FieldTransform):
    def __init__(self, *values: Any):
        self.values = list(values)

    def apply(self, current: Any) -> Any:
        if not isinstance(current, list):
            return []
        return [item for item in current if item not in self.values]


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _validate_collection(name: str) -> str:
    if not isinstance(name, str) or not NAME_PATTERN.match(name):
        raise ValidationError(f"Invalid collection name: {name!r}", field="collection")
    return name


def _validate_field(name: str) -> str:
    if not isinstance(name, str) or not FIELD_PATTERN.match(name):
        raise ValidationError(f"Invalid field name: {name!r}", field="field")
    return name


def _json_path(field_name: str) -> str:
    return "$." + _validate_field(field_name)


def _deep_merge(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in patch.items():
        if isinstance(value, FieldTransform):
            target[key] = value.apply(target.get(key))
        elif isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_merge(target[key], value)
        elif isinstance(value, dict):
            target[key] = _deep_merge({}, value)
        else:
            target[key] = copy.deepcopy(value)
    return target


def _apply_updates(target: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """Apply dotted-path updates (``"sharesByPlatform.twitter": Increment(1)``)."""
    for path, value in updates.items():
        parts = _validate_field(path).split(".")
        node = target
        for part in parts[:-1]:
            if not isinstance(node.get(part), dict):
                node[part] = {}
            node = node[part]
        leaf = parts[-1]
        if isinstance(value, FieldTransform):
            node[leaf] = value.apply(node.get(leaf))
        elif isinstance(value, dict):
            node[leaf] = _deep_merge({}, value)
        else:
            node[leaf] = copy.deepcopy(value)
    return target


class WriteBatch:
    """Collects writes and commits them atomically."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._ops: List[Tuple[str, str, str, Optional[Dict[str, Any]], bool]] = []
        self.committed = False

    def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> "WriteBatch":
        self._ops.append(("set", _validate_collection(collection), doc_id, data, merge))
        return self

    def update(self, collection: str, doc_id: str, data: Dict[str, Any]) -> "WriteBatch":
        self._ops.append(("update", _validate_collection(collection), doc_id, data, False))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._ops.append(("delete", _validate_collection(collection), doc_id, None, False))
        return self

    def __len__(self) -> int:
        return len(self._ops)

    async def commit(self) -> int:
        if self.committed:
            raise StoreError("batch.commit", "Write batch already committed")
        count = await self._store._commit(self._ops)
        self.committed = True
        return count


class Query:
    """Immutable-ish query builder, executed with ``fetch()``."""

    def __init__(self, store: "DocumentStore", collection: str):
        self._store = store
        self.collection = _validate_collection(collection)
        self._filters: List[Tuple[str, str, Any]] = []
        self._order: Optional[Tuple[str, bool]] = None
        self._limit: Optional[int] = None
        self._start_after: Optional[str] = None

    def where(self, field_name: str, op: str, value: Any) -> "Query":
        if op not in QUERY_OPERATORS:
            raise ValidationError(f"Unsupported query operator: {op}", field="op")
        self._filters.append((_validate_field(field_name), op, value))
        return self

    def order_by(self, field_name: str, descending: bool = False) -> "Query":
        self._order = (_validate_field(field_name), descending)
        return self

    def limit(self, count: int) -> "Query":
        self._limit = max(0, int(count))
        return self

    def start_after(self, doc_id: Optional[str]) -> "Query":
        self._start_after = doc_id
        return self

    async def fetch(self) -> List[Tuple[str, Dict[str, Any]]]:
        return await self._store._run_query(self)


class DocumentStore:
    """JSON document store backed by a single SQLite file."""

    def __init__(self, db_path: str = "data/goodnews.db"):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._tables: set = set()

    async def initialize(self) -> None:
        if self._db is not None:
            return
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: transactions are opened explicitly per write
        self._db = await aiosqlite.connect(self.db_path, isolation_level=None)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA busy_timeout=5000")
        self.logger.info(f"Document store opened at {self.db_path}")

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None
            self._tables.clear()

    async def __aenter__(self) -> "DocumentStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("connect", "Document store is not initialized")
        return self._db

    async def _ensure_table(self, collection: str) -> None:
        if collection in self._tables:
            return
        await self._conn().execute(
            f'CREATE TABLE IF NOT EXISTS "{collection}" (id TEXT PRIMARY KEY, data TEXT NOT NULL)'
        )
        self._tables.add(collection)

    async def _read(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        await self._ensure_table(collection)
        async with self._conn().execute(
            f'SELECT data FROM "{collection}" WHERE id = ?', (doc_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def _write(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self._ensure_table(collection)
        await self._conn().execute(
            f'INSERT OR REPLACE INTO "{collection}" (id, data) VALUES (?, ?)',
            (doc_id, json.dumps(data, default=_json_default)),
        )

    # Reads

    async def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        _validate_collection(collection)
        async with self._lock:
            return await self._read(collection, doc_id)

    async def get_many(self, collection: str, doc_ids: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        _validate_collection(collection)
        ids = [doc_id for doc_id in dict.fromkeys(doc_ids) if doc_id]
        if not ids:
            return {}
        placeholders = ",".join("?" for _ in ids)
        async with self._lock:
            await self._ensure_table(collection)
            async with self._conn().execute(
                f'SELECT id, data FROM "{collection}" WHERE id IN ({placeholders})', ids
            ) as cursor:
                rows = await cursor.fetchall()
        return {row[0]: json.loads(row[1]) for row in rows}

    def query(self, collection: str) -> Query:
        return Query(self, collection)

    async def count(self, collection: str) -> int:
        _validate_collection(collection)
        async with self._lock:
            await self._ensure_table(collection)
            async with self._conn().execute(f'SELECT COUNT(*) FROM "{collection}"') as cursor:
                row = await cursor.fetchone()
        return row[0] if row else 0

    async def ping(self) -> bool:
        async with self._lock:
            async with self._conn().execute("SELECT 1") as cursor:
                row = await cursor.fetchone()
        return bool(row and row[0] == 1)

    # Writes

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any], merge: bool = False) -> None:
        await self.batch().set(collection, doc_id, data, merge=merge).commit()

    async def update(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self.batch().update(collection, doc_id, data).commit()

    async def delete(self, collection: str, doc_id: str) -> None:
        await self.batch().delete(collection, doc_id).commit()

    async def delete_collection(self, collection: str) -> int:
        _validate_collection(collection)
        async with self._lock:
            await self._ensure_table(collection)
            cursor = await self._conn().execute(f'DELETE FROM "{collection}"')
            return cursor.rowcount

    async def _commit(self, ops: List[Tuple[str, str, str, Optional[Dict[str, Any]], bool]]) -> int:
        if not ops:
            return 0
        async with self._lock:
            db = self._conn()
            for collection in {op[1] for op in ops}:
                await self._ensure_table(collection)
            await db.execute("BEGIN IMMEDIATE")
            try:
                for kind, collection, doc_id, data, merge in ops:
                    if kind == "delete":
                        await db.execute(f'DELETE FROM "{collection}" WHERE id = ?', (doc_id,))
                        continue
                    existing = await self._read(collection, doc_id)
                    if kind == "update":
                        if existing is None:
                            raise ResourceNotFound(collection, doc_id)
                        document = _apply_updates(existing, data)
                    elif merge and existing is not None:
                        document = _deep_merge(existing, data)
                    else:
                        document = _deep_merge({}, data)
                    await self._write(collection, doc_id, document)
                await db.execute("COMMIT")
            except BaseException:
                await db.execute("ROLLBACK")
                raise
        return len(ops)

    async def _run_query(self, query: Query) -> List[Tuple[str, Dict[str, Any]]]:
        clauses: List[str] = []
        params: List[Any] = []
        for field_name, op, value in query._filters:
            column = f"json_extract(data, '{_json_path(field_name)}')"
            if op == "in":
                values = list(value or [])
                if not values:
                    return []
                clauses.append(f"{column} IN ({','.join('?' for _ in values)})")
                params.extend(values)
            elif value is None and op in ("==", "!="):
                clauses.append(f"{column} IS {'NOT ' if op == '!=' else ''}NULL")
            else:
                clauses.append(f"{column} {SQL_OPERATORS[op]} ?")
                params.append(value)

        async with self._lock:
            await self._ensure_table(query.collection)

            if query._start_after:
                cursor_doc = await self._read(query.collection, query._start_after)
                if cursor_doc is None:
                    raise ValidationError("Cursor document not found", field="cursor")
                clause, clause_params = self._cursor_clause(query, cursor_doc)
                clauses.append(clause)
                params.extend(clause_params)

            sql = f'SELECT id, data FROM "{query.collection}"'
            if clauses:
                sql += " WHERE " + " AND ".join(clauses)
            if query._order:
                field_name, descending = query._order
                direction = "DESC" if descending else "ASC"
                sql += f" ORDER BY json_extract(data, '{_json_path(field_name)}') {direction}, id {direction}"
            else:
                sql += " ORDER BY id ASC"
            if query._limit is not None:
                sql += " LIMIT ?"
                params.append(query._limit)

            try:
                async with self._conn().execute(sql, params) as cursor:
                    rows = await cursor.fetchall()
            except aiosqlite.Error as e:
                raise StoreError("query", f"Query on {query.collection} failed: {e}") from e
        return [(row[0], json.loads(row[1])) for row in rows]

    @staticmethod
    def _cursor_clause(query: Query, cursor_doc: Dict[str, Any]) -> Tuple[str, List[Any]]:
        """Rows strictly after the cursor document in the query's ordering."""
        cursor_id = query._start_after
        if not query._order:
            return "id > ?", [cursor_id]

        field_name, descending = query._order
        column = f"json_extract(data, '{_json_path(field_name)}')"
        value = cursor_doc
        for part in field_name.split("."):
            value = value.get(part) if isinstance(value, dict) else None

        # SQLite sorts NULL lowest
        if value is None:
            if descending:
                return f"({column} IS NULL AND id < ?)", [cursor_id]
            return f"({column} IS NOT NULL OR ({column} IS NULL AND id > ?))", [cursor_id]
        if descending:
            return f"({column} < ? OR {column} IS NULL OR ({column} = ? AND id < ?))", [value, value, cursor_id]
        return f"({column} > ? OR ({column} = ? AND id > ?))", [value, value, cursor_id]
