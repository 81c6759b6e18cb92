"""SQLite memory store: one table per record kind, staged writes, explicit commit."""

import asyncio
import json
import sqlite3
import types
import typing
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import fields
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite

from memex.core.logging import get_logger
from memex.memory.base import (
    RECORD_TYPES,
    Before,
    Contains,
    Entity,
    MemoryKind,
    MemoryStore,
    OneOf,
    Predicate,
    PredicateTooComplexError,
    Since,
)
from memex.memory.embeddings import decode_embedding, encode_embedding

logger = get_logger("memory.store")


# Python 3.12+ fix: Register datetime adapters explicitly
def _adapt_datetime(dt: datetime) -> str:
    """Convert datetime to ISO format string for SQLite storage."""
    return dt.isoformat()


def _convert_datetime(val: bytes) -> datetime:
    """Convert ISO format string from SQLite to datetime."""
    return datetime.fromisoformat(val.decode())


sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("DATETIME", _convert_datetime)

SCHEMA = """
-- Short-term memory: fragments awaiting consolidation
CREATE TABLE IF NOT EXISTS stm (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    memory_type TEXT NOT NULL,
    importance REAL DEFAULT 0.5,
    timestamp DATETIME NOT NULL,
    access_count INTEGER DEFAULT 0,
    last_accessed DATETIME NOT NULL,
    related_entity_ids TEXT,  -- JSON array
    context_tags TEXT,  -- JSON array
    emotional_weight REAL DEFAULT 0.0,
    embedding BLOB,
    embedding_generated_at DATETIME
);

-- Long-term memory: promoted or directly ingested durable memories
CREATE TABLE IF NOT EXISTS ltm (
    id TEXT PRIMARY KEY,
    content TEXT NOT NULL,
    summary TEXT,
    category TEXT NOT NULL,
    importance REAL DEFAULT 0.5,
    source_stm_ids TEXT,  -- JSON array
    related_entity_ids TEXT,  -- JSON array
    related_concepts TEXT,  -- JSON array
    retrieval_cues TEXT,  -- JSON array
    last_accessed DATETIME NOT NULL,
    strength_score REAL DEFAULT 1.0,
    created_at DATETIME NOT NULL,
    embedding BLOB,
    embedding_generated_at DATETIME
);

-- Episodic memory: events and interactions
CREATE TABLE IF NOT EXISTS episodic (
    id TEXT PRIMARY KEY,
    event_description TEXT NOT NULL,
    location TEXT,
    participants TEXT,  -- JSON array
    emotional_tone TEXT NOT NULL,
    importance REAL DEFAULT 0.5,
    contextual_cues TEXT,  -- JSON array
    timestamp DATETIME NOT NULL
);

-- Knowledge graph
CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    type TEXT NOT NULL,
    description TEXT,
    aliases TEXT,  -- JSON array
    tags TEXT,  -- JSON array
    last_mentioned DATETIME NOT NULL,
    embedding BLOB,
    embedding_generated_at DATETIME
);

CREATE TABLE IF NOT EXISTS relationships (
    id TEXT PRIMARY KEY,
    subject_id TEXT NOT NULL,
    predicate TEXT NOT NULL,
    object_id TEXT NOT NULL,
    created_at DATETIME NOT NULL
);

-- Processed notes
CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    original_text TEXT NOT NULL,
    summary TEXT,
    topics TEXT,  -- JSON array
    keywords TEXT,  -- JSON array
    last_accessed DATETIME NOT NULL,
    embedding BLOB,
    embedding_generated_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_stm_timestamp ON stm(timestamp);
CREATE INDEX IF NOT EXISTS idx_ltm_last_accessed ON ltm(last_accessed);
CREATE INDEX IF NOT EXISTS idx_episodic_timestamp ON episodic(timestamp);
CREATE INDEX IF NOT EXISTS idx_entities_name ON entities(name COLLATE NOCASE);
CREATE INDEX IF NOT EXISTS idx_rel_subject ON relationships(subject_id);
CREATE INDEX IF NOT EXISTS idx_rel_object ON relationships(object_id);
"""

TABLES: dict[MemoryKind, str] = {
    MemoryKind.STM: "stm",
    MemoryKind.LTM: "ltm",
    MemoryKind.EPISODIC: "episodic",
    MemoryKind.ENTITY: "entities",
    MemoryKind.RELATIONSHIP: "relationships",
    MemoryKind.NOTE: "notes",
}

# Kinds whose ids can be the endpoint of a relationship
_NODE_TABLES = ("entities", "stm", "ltm", "episodic", "notes")


def _codec_for(name: str, annotation: Any) -> Any:
    """Pick how a dataclass field is stored: 'vector', 'list', 'tuple', an Enum class or None."""
    if name == "embedding":
        return "vector"
    origin = typing.get_origin(annotation)
    if origin in (types.UnionType, typing.Union):
        annotation = next(a for a in typing.get_args(annotation) if a is not type(None))
        origin = typing.get_origin(annotation)
    if origin is list:
        return "list"
    if origin is tuple:
        return "tuple"
    if isinstance(annotation, type) and issubclass(annotation, Enum):
        return annotation
    return None


_CODECS: dict[MemoryKind, dict[str, Any]] = {
    kind: {f.name: _codec_for(f.name, f.type) for f in fields(cls)}
    for kind, cls in RECORD_TYPES.items()
}


def _encode(codec: Any, value: Any) -> Any:
    if value is None:
        return None
    if codec == "vector":
        return encode_embedding(value)
    if codec in ("list", "tuple"):
        return json.dumps(list(value))
    if isinstance(codec, type) and issubclass(codec, Enum):
        return value.value
    return value


def _decode(codec: Any, value: Any) -> Any:
    if codec == "vector":
        return decode_embedding(value)
    if codec == "list":
        return json.loads(value) if value else []
    if codec == "tuple":
        return tuple(json.loads(value)) if value else ()
    if value is None:
        return None
    if isinstance(codec, type) and issubclass(codec, Enum):
        return codec(value)
    return value


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SQLiteMemoryStore(MemoryStore):
    """SQLite-backed memory store.

    Writes are staged in the connection's open transaction until ``save()``.
    ``transaction()`` serializes writers so one caller's rollback never
    discards another caller's staged rows.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Use detect_types to enable our custom datetime converters
        self._conn = await aiosqlite.connect(
            self.db_path,
            detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES,
        )
        await self._conn.executescript(SCHEMA)
        await self._conn.commit()
        logger.info(f"Connected to memory store: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Memory store not connected. Call connect() first.")
        return self._conn

    # Row mapping

    def _to_row(self, record: Any) -> dict[str, Any]:
        codecs = _CODECS[record.kind]
        return {name: _encode(codec, getattr(record, name)) for name, codec in codecs.items()}

    def _from_row(self, kind: MemoryKind, columns: list[str], row: tuple) -> Any:
        codecs = _CODECS[kind]
        values = {col: _decode(codecs[col], val) for col, val in zip(columns, row)}
        return RECORD_TYPES[kind](**values)

    def _check_field(self, kind: MemoryKind, name: str) -> str:
        if name not in _CODECS[kind]:
            raise ValueError(f"Unknown field {name!r} for {kind.value}")
        return name

    def _build_where(self, kind: MemoryKind, where: Predicate | None) -> tuple[str, list[Any]]:
        if where is None:
            return "", []

        if isinstance(where, Contains):
            if len(where.terms) > self.max_predicate_terms:
                raise PredicateTooComplexError(
                    f"{len(where.terms)} terms exceed store limit of {self.max_predicate_terms}"
                )
            clauses = []
            params: list[Any] = []
            for term in where.terms:
                for name in where.fields:
                    clauses.append(f"lower({self._check_field(kind, name)}) LIKE ? ESCAPE '\\'")
                    params.append(f"%{_escape_like(term.lower())}%")
            if not clauses:
                return " WHERE 0", []
            return " WHERE (" + " OR ".join(clauses) + ")", params

        if isinstance(where, Before):
            return f" WHERE {self._check_field(kind, where.field)} < ?", [where.cutoff]

        if isinstance(where, Since):
            return f" WHERE {self._check_field(kind, where.field)} >= ?", [where.cutoff]

        if isinstance(where, OneOf):
            if not where.values or not where.fields:
                return " WHERE 0", []
            marks = ", ".join("?" for _ in where.values)
            clauses = [f"{self._check_field(kind, name)} IN ({marks})" for name in where.fields]
            params = [v for _ in where.fields for v in where.values]
            return " WHERE (" + " OR ".join(clauses) + ")", params

        raise TypeError(f"Unsupported predicate: {where!r}")

    # Standard memory operations

    async def fetch(
        self,
        kind: MemoryKind,
        where: Predicate | None = None,
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[Any]:
        """Fetch records of one kind matching an optional predicate."""
        clause, params = self._build_where(kind, where)
        sql = f"SELECT * FROM {TABLES[kind]}{clause}"
        if order_by:
            sql += f" ORDER BY {self._check_field(kind, order_by)} {'DESC' if descending else 'ASC'}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        results = []
        async with self.conn.execute(sql, params) as cursor:
            columns = [d[0] for d in cursor.description]
            async for row in cursor:
                results.append(self._from_row(kind, columns, row))
        return results

    async def get(self, kind: MemoryKind, record_id: str) -> Any | None:
        """Get specific record by ID."""
        async with self.conn.execute(
            f"SELECT * FROM {TABLES[kind]} WHERE id = ?", (record_id,)
        ) as cursor:
            row = await cursor.fetchone()
            if row is None:
                return None
            columns = [d[0] for d in cursor.description]
            return self._from_row(kind, columns, row)

    async def insert(self, record: Any) -> str:
        """Stage a new record."""
        row = self._to_row(record)
        cols = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        await self.conn.execute(
            f"INSERT INTO {TABLES[record.kind]} ({cols}) VALUES ({marks})",
            list(row.values()),
        )
        return record.id

    async def update(self, record: Any) -> bool:
        """Stage an update of every column of an existing record."""
        row = self._to_row(record)
        row.pop("id")
        assignments = ", ".join(f"{col} = ?" for col in row)
        cursor = await self.conn.execute(
            f"UPDATE {TABLES[record.kind]} SET {assignments} WHERE id = ?",
            [*row.values(), record.id],
        )
        return cursor.rowcount > 0

    async def delete(self, record: Any) -> bool:
        """Stage deletion; relationships touching the id go with it."""
        cursor = await self.conn.execute(
            f"DELETE FROM {TABLES[record.kind]} WHERE id = ?", (record.id,)
        )
        deleted = cursor.rowcount > 0
        if record.kind != MemoryKind.RELATIONSHIP:
            await self.conn.execute(
                "DELETE FROM relationships WHERE subject_id = ? OR object_id = ?",
                (record.id, record.id),
            )
        if isinstance(record, Entity):
            await self._scrub_entity_references(record.id)
        return deleted

    async def _scrub_entity_references(self, entity_id: str) -> None:
        """Drop a deleted entity id from every related_entity_ids list."""
        for kind in (MemoryKind.STM, MemoryKind.LTM):
            table = TABLES[kind]
            async with self.conn.execute(
                f"SELECT id, related_entity_ids FROM {table} WHERE related_entity_ids LIKE ? ESCAPE '\\'",
                (f"%{_escape_like(entity_id)}%",),
            ) as cursor:
                rows = await cursor.fetchall()
            for row_id, raw in rows:
                ids = [i for i in json.loads(raw or "[]") if i != entity_id]
                await self.conn.execute(
                    f"UPDATE {table} SET related_entity_ids = ? WHERE id = ?",
                    (json.dumps(ids), row_id),
                )

    async def count(self, kind: MemoryKind, where: Predicate | None = None) -> int:
        clause, params = self._build_where(kind, where)
        async with self.conn.execute(
            f"SELECT COUNT(*) FROM {TABLES[kind]}{clause}", params
        ) as cursor:
            row = await cursor.fetchone()
            return row[0] if row else 0

    async def save(self) -> None:
        await self.conn.commit()

    async def rollback(self) -> None:
        await self.conn.rollback()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SQLiteMemoryStore"]:
        """Serialize writers; commit on success, roll back on error."""
        async with self._write_lock:
            try:
                yield self
            except BaseException:
                await self.rollback()
                raise
            await self.save()

    # Graph maintenance

    async def orphan_relationships(self) -> list[Any]:
        """Relationships whose subject or object no longer exists."""
        known = " UNION ".join(f"SELECT id FROM {t}" for t in _NODE_TABLES)
        sql = (
            f"SELECT * FROM relationships WHERE subject_id NOT IN ({known}) "
            f"OR object_id NOT IN ({known})"
        )
        results = []
        async with self.conn.execute(sql) as cursor:
            columns = [d[0] for d in cursor.description]
            async for row in cursor:
                results.append(self._from_row(MemoryKind.RELATIONSHIP, columns, row))
        return results
