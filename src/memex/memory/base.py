"""
Memory records and the store interface.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Protocol, runtime_checkable
from uuid import uuid4


def new_id() -> str:
    return uuid4().hex


class MemoryKind(Enum):
    STM = "stm"
    LTM = "ltm"
    EPISODIC = "episodic"
    ENTITY = "entity"
    RELATIONSHIP = "relationship"
    NOTE = "note"


class MemoryType(Enum):
    EPISODIC = "episodic"
    SEMANTIC = "semantic"
    PROCEDURAL = "procedural"
    WORKING = "working"


class LTMCategory(Enum):
    FACTUAL = "factual"
    CONCEPTUAL = "conceptual"
    EXPERIENTIAL = "experiential"
    RELATIONAL = "relational"
    PROCEDURAL = "procedural"
    PERSONAL = "personal"
    PROFESSIONAL = "professional"
    HEALTH = "health"
    GOALS = "goals"
    PATTERNS = "patterns"


class EmotionalTone(Enum):
    VERY_POSITIVE = "very_positive"
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    VERY_NEGATIVE = "very_negative"


class EntityType(Enum):
    PERSON = "person"
    ORGANIZATION = "organization"
    ACTIVITY = "activity"
    CONCEPT = "concept"
    LOCATION = "location"

    @classmethod
    def parse(cls, value: str | None) -> "EntityType":
        """Map loose LLM labels onto a known type."""
        normalized = (value or "").strip().lower()
        aliases = {"place": "location", "org": "organization", "company": "organization"}
        normalized = aliases.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            return cls.CONCEPT


@runtime_checkable
class MemoryRecord(Protocol):
    """Capability shared by every stored record variant."""

    kind: ClassVar[MemoryKind]
    id: str

    @property
    def searchable_text(self) -> str: ...

    @property
    def reference_time(self) -> datetime | None: ...


@dataclass
class ShortTermMemory:
    """Short-lived fragment awaiting consolidation."""

    kind: ClassVar[MemoryKind] = MemoryKind.STM

    content: str
    memory_type: MemoryType = MemoryType.EPISODIC
    importance: float = 0.5
    timestamp: datetime = field(default_factory=datetime.now)
    access_count: int = 0
    last_accessed: datetime = field(default_factory=datetime.now)
    related_entity_ids: list[str] = field(default_factory=list)
    context_tags: list[str] = field(default_factory=list)
    emotional_weight: float = 0.0
    embedding: list[float] | None = None
    embedding_generated_at: datetime | None = None
    id: str = field(default_factory=new_id)

    @property
    def searchable_text(self) -> str:
        return self.content

    @property
    def reference_time(self) -> datetime | None:
        return self.timestamp

    def access(self, now: datetime | None = None) -> None:
        """Record a retrieval hit; repeated access raises importance."""
        self.access_count += 1
        self.last_accessed = now or datetime.now()
        self.importance = min(self.importance + 0.1, 1.0)


@dataclass
class LongTermMemory:
    """Durable memory, created by promotion or direct high-importance ingestion."""

    kind: ClassVar[MemoryKind] = MemoryKind.LTM

    content: str
    summary: str = ""
    category: LTMCategory = LTMCategory.PERSONAL
    importance: float = 0.5
    source_stm_ids: list[str] = field(default_factory=list)
    related_entity_ids: list[str] = field(default_factory=list)
    related_concepts: list[str] = field(default_factory=list)
    retrieval_cues: list[str] = field(default_factory=list)
    last_accessed: datetime = field(default_factory=datetime.now)
    strength_score: float = 1.0
    created_at: datetime = field(default_factory=datetime.now)
    embedding: list[float] | None = None
    embedding_generated_at: datetime | None = None
    id: str = field(default_factory=new_id)

    @property
    def searchable_text(self) -> str:
        return f"{self.content} {self.summary}".strip()

    @property
    def reference_time(self) -> datetime | None:
        return self.last_accessed


@dataclass(frozen=True)
class EpisodicMemory:
    """A specific event or interaction. Read-only once stored."""

    kind: ClassVar[MemoryKind] = MemoryKind.EPISODIC

    event_description: str
    location: str | None = None
    participants: tuple[str, ...] = ()
    emotional_tone: EmotionalTone = EmotionalTone.NEUTRAL
    importance: float = 0.5
    contextual_cues: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=new_id)

    @property
    def searchable_text(self) -> str:
        return self.event_description

    @property
    def reference_time(self) -> datetime | None:
        return self.timestamp


@dataclass
class Entity:
    """Knowledge graph node referenced (not owned) by memories."""

    kind: ClassVar[MemoryKind] = MemoryKind.ENTITY

    name: str
    type: EntityType = EntityType.CONCEPT
    description: str | None = None
    aliases: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    last_mentioned: datetime = field(default_factory=datetime.now)
    embedding: list[float] | None = None
    embedding_generated_at: datetime | None = None
    id: str = field(default_factory=new_id)

    @property
    def searchable_text(self) -> str:
        parts = [self.name, self.description or "", " ".join(self.aliases), " ".join(self.tags)]
        return " ".join(p for p in parts if p)

    @property
    def reference_time(self) -> datetime | None:
        return self.last_mentioned


@dataclass
class Relationship:
    """Directed edge between two entity (or memory) ids."""

    kind: ClassVar[MemoryKind] = MemoryKind.RELATIONSHIP

    subject_id: str
    predicate: str
    object_id: str
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=new_id)

    @property
    def searchable_text(self) -> str:
        return self.predicate

    @property
    def reference_time(self) -> datetime | None:
        return self.created_at


@dataclass
class Note:
    """Processed user note."""

    kind: ClassVar[MemoryKind] = MemoryKind.NOTE

    original_text: str
    summary: str = ""
    topics: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)
    last_accessed: datetime = field(default_factory=datetime.now)
    embedding: list[float] | None = None
    embedding_generated_at: datetime | None = None
    id: str = field(default_factory=new_id)

    @property
    def searchable_text(self) -> str:
        return f"{self.original_text} {self.summary}".strip()

    @property
    def reference_time(self) -> datetime | None:
        return self.last_accessed


RECORD_TYPES: dict[MemoryKind, type] = {
    MemoryKind.STM: ShortTermMemory,
    MemoryKind.LTM: LongTermMemory,
    MemoryKind.EPISODIC: EpisodicMemory,
    MemoryKind.ENTITY: Entity,
    MemoryKind.RELATIONSHIP: Relationship,
    MemoryKind.NOTE: Note,
}


# Predicates: simple clauses a store can push down to its query layer


@dataclass(frozen=True)
class Contains:
    """Any term appears (case-insensitive substring) in any of the fields."""

    fields: tuple[str, ...]
    terms: tuple[str, ...]


@dataclass(frozen=True)
class Before:
    field: str
    cutoff: datetime


@dataclass(frozen=True)
class Since:
    field: str
    cutoff: datetime


@dataclass(frozen=True)
class OneOf:
    """Any of the fields equals one of the values."""

    fields: tuple[str, ...]
    values: tuple[str, ...]


Predicate = Contains | Before | Since | OneOf


class PredicateTooComplexError(ValueError):
    """Predicate has more OR-ed terms than the store can push down."""


class MemoryStore(ABC):
    """Abstract memory storage interface."""

    # Contains predicates with more terms must be filtered by the caller
    max_predicate_terms: int = 2

    @abstractmethod
    async def fetch(
        self,
        kind: MemoryKind,
        where: Predicate | None = None,
        order_by: str | None = None,
        descending: bool = True,
        limit: int | None = None,
    ) -> list[Any]:
        """Fetch records of one kind."""
        ...

    @abstractmethod
    async def get(self, kind: MemoryKind, record_id: str) -> Any | None:
        """Get a specific record by id."""
        ...

    @abstractmethod
    async def insert(self, record: Any) -> str:
        """Stage a new record, return its id."""
        ...

    @abstractmethod
    async def update(self, record: Any) -> bool:
        """Stage an update of an existing record."""
        ...

    @abstractmethod
    async def delete(self, record: Any) -> bool:
        """Stage deletion of a record."""
        ...

    @abstractmethod
    async def count(self, kind: MemoryKind, where: Predicate | None = None) -> int:
        """Count records of one kind."""
        ...

    @abstractmethod
    async def save(self) -> None:
        """Commit staged changes."""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """Discard staged changes."""
        ...

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["MemoryStore"]:
        """Commit on success, roll back on error."""
        try:
            yield self
        except BaseException:
            await self.rollback()
            raise
        await self.save()

    async def orphan_relationships(self) -> list[Relationship]:
        """Relationships whose subject or object no longer exists."""
        known: set[str] = set()
        for kind in RECORD_TYPES:
            if kind != MemoryKind.RELATIONSHIP:
                known.update(r.id for r in await self.fetch(kind))
        return [
            r
            for r in await self.fetch(MemoryKind.RELATIONSHIP)
            if r.subject_id not in known or r.object_id not in known
        ]
