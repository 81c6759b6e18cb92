"""
Hybrid keyword + semantic retrieval across all memory kinds.

Candidates are fetched per kind (concurrently), scored by term overlap and
recency, optionally blended with embedding similarity, filtered by a
threshold and truncated to per-kind caps.
"""

import asyncio
import string
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from memex.core.errors import RetrievalFailedError
from memex.core.logging import get_logger, preview
from memex.llm.base import EmbeddingProvider
from memex.memory.base import (
    Contains,
    Entity,
    EpisodicMemory,
    LongTermMemory,
    MemoryKind,
    MemoryStore,
    Note,
    OneOf,
    ShortTermMemory,
)
from memex.memory.context import MemoryContext
from memex.memory.embeddings import is_stale, similarity_score

logger = get_logger("memory.retrieval")

PERSONAL_INDICATORS = frozenset(
    {"my", "i", "me", "mine", "myself", "personal", "remember", "recall"}
)

# Recency decay windows, days
RECENCY_WINDOW_DAYS = 30.0
EPISODIC_RECENCY_WINDOW_DAYS = 60.0

# Fields searched per kind, and the column used for newest-first ordering
SEARCH_FIELDS: dict[MemoryKind, tuple[str, ...]] = {
    MemoryKind.STM: ("content",),
    MemoryKind.LTM: ("content", "summary"),
    MemoryKind.EPISODIC: ("event_description", "participants", "contextual_cues", "location"),
    MemoryKind.ENTITY: ("name", "description", "aliases", "tags"),
    MemoryKind.NOTE: ("original_text", "summary", "topics", "keywords"),
}
ORDER_FIELDS: dict[MemoryKind, str] = {
    MemoryKind.STM: "timestamp",
    MemoryKind.LTM: "last_accessed",
    MemoryKind.EPISODIC: "timestamp",
    MemoryKind.ENTITY: "last_mentioned",
    MemoryKind.NOTE: "last_accessed",
}


@dataclass
class RetrievalConfig:
    """Retrieval tuning knobs."""

    max_results: int = 10
    recency_weight: float = 0.3
    relevance_weight: float = 0.7
    relevance_threshold: float = 0.5
    include_stm: bool = True
    include_ltm: bool = True
    include_episodic: bool = True
    include_entities: bool = True
    include_notes: bool = True
    enable_semantic_search: bool = True
    semantic_weight: float = 0.6
    keyword_weight: float = 0.4
    semantic_similarity_threshold: float = 0.3
    embedding_max_age: float = 7 * 24 * 3600
    candidate_pool: int = 200

    @classmethod
    def default(cls) -> "RetrievalConfig":
        return cls()

    @classmethod
    def personal_focus(cls) -> "RetrievalConfig":
        return cls(
            max_results=15,
            recency_weight=0.4,
            relevance_weight=0.6,
            relevance_threshold=0.4,
            include_entities=False,
            semantic_weight=0.7,
            keyword_weight=0.3,
            semantic_similarity_threshold=0.4,
            embedding_max_age=14 * 24 * 3600,
        )

    @classmethod
    def keyword_only(cls) -> "RetrievalConfig":
        return cls(
            enable_semantic_search=False,
            semantic_weight=0.0,
            keyword_weight=1.0,
            semantic_similarity_threshold=0.0,
            embedding_max_age=0,
        )

    @classmethod
    def semantic_only(cls) -> "RetrievalConfig":
        return cls(
            recency_weight=0.2,
            relevance_weight=0.8,
            relevance_threshold=0.4,
            semantic_weight=1.0,
            keyword_weight=0.0,
            semantic_similarity_threshold=0.5,
        )

    @classmethod
    def from_settings(cls, settings: Any) -> "RetrievalConfig":
        return cls(
            max_results=settings.retrieval_max_results,
            recency_weight=settings.retrieval_recency_weight,
            relevance_weight=settings.retrieval_relevance_weight,
            relevance_threshold=settings.retrieval_relevance_threshold,
            include_stm=settings.retrieval_include_stm,
            include_ltm=settings.retrieval_include_ltm,
            include_episodic=settings.retrieval_include_episodic,
            include_entities=settings.retrieval_include_entities,
            include_notes=settings.retrieval_include_notes,
            enable_semantic_search=settings.retrieval_enable_semantic,
            semantic_weight=settings.retrieval_semantic_weight,
            keyword_weight=settings.retrieval_keyword_weight,
            semantic_similarity_threshold=settings.retrieval_semantic_similarity_threshold,
            embedding_max_age=settings.retrieval_embedding_max_age_seconds,
        )

    def caps(self) -> dict[MemoryKind, int]:
        """Per-kind result caps."""
        n = self.max_results
        return {
            MemoryKind.STM: n // 2,
            MemoryKind.LTM: n // 2,
            MemoryKind.EPISODIC: n // 3,
            MemoryKind.ENTITY: n // 3,
            MemoryKind.RELATIONSHIP: n // 4,
            MemoryKind.NOTE: n // 3,
        }


def _words(text: str) -> list[str]:
    return [w.strip(string.punctuation) for w in text.lower().split()]


def extract_query_terms(query: str) -> list[str]:
    """Whitespace tokens, punctuation stripped, longer than 2 chars, lower-cased."""
    return [w for w in _words(query) if len(w) > 2]


def detect_personal_data(query: str) -> bool:
    return any(w in PERSONAL_INDICATORS for w in _words(query))


def text_relevance(content: str, terms: Sequence[str]) -> float:
    """Exact word match scores 2, substring-only match 1, normalized to [0, 1]."""
    if not terms or not content:
        return 0.0
    lowered = content.lower()
    words = set(_words(content))
    hits = 0
    for term in terms:
        if term in words:
            hits += 2
        elif term in lowered:
            hits += 1
    return hits / (2 * len(terms))


def _recency(reference: datetime | None, now: datetime, window_days: float) -> float:
    if reference is None:
        return 0.0
    age_days = (now - reference).total_seconds() / 86400
    return max(0.0, 1.0 - age_days / window_days)


def _matches_any(record: Any, fields: Sequence[str], terms: Sequence[str]) -> bool:
    parts = []
    for name in fields:
        value = getattr(record, name)
        if value is None:
            continue
        parts.append(" ".join(value) if isinstance(value, (list, tuple)) else str(value))
    haystack = " ".join(parts).lower()
    return any(term in haystack for term in terms)


class RetrievalEngine:
    """Gathers a MemoryContext for a query."""

    def __init__(
        self,
        store: MemoryStore,
        embedding_provider: EmbeddingProvider | None = None,
        config: RetrievalConfig | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.embedding_provider = embedding_provider
        self.config = config or RetrievalConfig.default()
        self.clock = clock

    async def retrieve(self, query: str, config: RetrievalConfig | None = None) -> MemoryContext:
        """Retrieve ranked memories relevant to a query."""
        config = config or self.config
        now = self.clock()
        terms = extract_query_terms(query)
        context = MemoryContext(
            user_query=query,
            timestamp=now,
            contains_personal_data=detect_personal_data(query),
            semantic_requested=config.enable_semantic_search,
        )

        query_embedding = await self._embed_query(query, context) if terms else None
        if context.semantic_requested and not terms:
            context.degraded_reason = "no searchable terms"

        if not terms:
            logger.debug(f"No searchable terms in query: {preview(query)}")
            return context

        wanted = [
            kind
            for kind, enabled in (
                (MemoryKind.STM, config.include_stm),
                (MemoryKind.LTM, config.include_ltm),
                (MemoryKind.EPISODIC, config.include_episodic),
                (MemoryKind.ENTITY, config.include_entities),
                (MemoryKind.NOTE, config.include_notes),
            )
            if enabled
        ]

        try:
            fetched = await asyncio.gather(
                *(self._candidates(kind, terms, config) for kind in wanted)
            )
        except Exception as e:
            raise RetrievalFailedError(f"Memory fetch failed: {e}") from e
        candidates = dict(zip(wanted, fetched))

        caps = config.caps()
        scorers = {
            MemoryKind.STM: self._score_stm,
            MemoryKind.LTM: self._score_ltm,
            MemoryKind.EPISODIC: self._score_episodic,
            MemoryKind.ENTITY: self._score_entity,
            MemoryKind.NOTE: self._score_note,
        }
        ranked: dict[MemoryKind, list[Any]] = {}
        for kind, records in candidates.items():
            scored = []
            for record in records:
                keyword = scorers[kind](record, terms, config, now)
                score = self._blend(keyword, record, query_embedding, config, now)
                threshold = (
                    config.semantic_similarity_threshold
                    if query_embedding is not None
                    else config.relevance_threshold
                )
                if score >= threshold:
                    scored.append((score, record))
            # sorted() is stable; equal scores keep newest-first fetch order
            scored = sorted(scored, key=lambda pair: pair[0], reverse=True)
            ranked[kind] = [record for _, record in scored[: caps[kind]]]

        context.stm = ranked.get(MemoryKind.STM, [])
        context.ltm = ranked.get(MemoryKind.LTM, [])
        context.episodic = ranked.get(MemoryKind.EPISODIC, [])
        context.entities = ranked.get(MemoryKind.ENTITY, [])
        context.notes = ranked.get(MemoryKind.NOTE, [])

        if context.entities and caps[MemoryKind.RELATIONSHIP] > 0:
            ids = tuple(e.id for e in context.entities)
            try:
                context.relationships = await self.store.fetch(
                    MemoryKind.RELATIONSHIP,
                    where=OneOf(("subject_id", "object_id"), ids),
                    order_by="created_at",
                    limit=caps[MemoryKind.RELATIONSHIP],
                )
            except Exception as e:
                raise RetrievalFailedError(f"Relationship fetch failed: {e}") from e

        logger.debug(
            f"Retrieved {context.total_items} memories for '{preview(query)}' "
            f"(semantic={context.semantic_applied})"
        )
        return context

    async def _embed_query(self, query: str, context: MemoryContext) -> list[float] | None:
        if not context.semantic_requested:
            return None
        if self.embedding_provider is None:
            context.degraded_reason = "embedding provider unavailable"
            return None
        try:
            embedding = await self.embedding_provider.embed(query)
        except Exception as e:
            logger.warning(f"Query embedding failed, using keyword ranking: {e}")
            context.degraded_reason = f"query embedding failed: {e}"
            return None
        if not embedding:
            context.degraded_reason = "empty query embedding"
            return None
        context.semantic_applied = True
        return embedding

    async def _candidates(
        self, kind: MemoryKind, terms: list[str], config: RetrievalConfig
    ) -> list[Any]:
        fields = SEARCH_FIELDS[kind]
        order = ORDER_FIELDS[kind]
        if len(terms) <= self.store.max_predicate_terms:
            return await self.store.fetch(
                kind,
                where=Contains(fields, tuple(terms)),
                order_by=order,
                limit=config.candidate_pool,
            )
        records = await self.store.fetch(kind, order_by=order, limit=config.candidate_pool)
        return [r for r in records if _matches_any(r, fields, terms)]

    # Scoring

    def _blend(
        self,
        keyword: float,
        record: Any,
        query_embedding: list[float] | None,
        config: RetrievalConfig,
        now: datetime,
    ) -> float:
        if query_embedding is None:
            return keyword
        embedding = getattr(record, "embedding", None)
        if is_stale(getattr(record, "embedding_generated_at", None), config.embedding_max_age, now):
            embedding = None
        semantic = similarity_score(query_embedding, embedding)
        return config.keyword_weight * keyword + config.semantic_weight * semantic

    def _score_stm(
        self, m: ShortTermMemory, terms: list[str], config: RetrievalConfig, now: datetime
    ) -> float:
        score = text_relevance(m.content, terms) * config.relevance_weight
        score += _recency(m.timestamp, now, RECENCY_WINDOW_DAYS) * config.recency_weight
        return min(1.0, score)

    def _score_ltm(
        self, m: LongTermMemory, terms: list[str], config: RetrievalConfig, now: datetime
    ) -> float:
        score = text_relevance(m.searchable_text, terms) * config.relevance_weight
        score += _recency(m.last_accessed, now, RECENCY_WINDOW_DAYS) * config.recency_weight
        return min(1.0, score)

    def _score_episodic(
        self, m: EpisodicMemory, terms: list[str], config: RetrievalConfig, now: datetime
    ) -> float:
        score = text_relevance(m.event_description, terms) * config.relevance_weight
        score += text_relevance(" ".join(m.participants), terms) * 0.3
        score += text_relevance(" ".join(m.contextual_cues), terms) * 0.3
        if m.location:
            score += text_relevance(m.location, terms) * 0.2
        score += _recency(m.timestamp, now, EPISODIC_RECENCY_WINDOW_DAYS) * config.recency_weight
        return min(1.0, score)

    def _score_entity(
        self, e: Entity, terms: list[str], config: RetrievalConfig, now: datetime
    ) -> float:
        score = text_relevance(e.name, terms) * 0.8
        if e.description:
            score += text_relevance(e.description, terms) * 0.4
        score += text_relevance(e.type.value, terms) * 0.3
        score += text_relevance(" ".join(e.aliases), terms) * 0.3
        score += text_relevance(" ".join(e.tags), terms) * 0.2
        return min(1.0, score)

    def _score_note(
        self, n: Note, terms: list[str], config: RetrievalConfig, now: datetime
    ) -> float:
        score = text_relevance(n.original_text, terms) * config.relevance_weight
        score += text_relevance(n.summary, terms) * 0.4
        score += text_relevance(" ".join(n.topics), terms) * 0.3
        score += text_relevance(" ".join(n.keywords), terms) * 0.3
        score += _recency(n.last_accessed, now, RECENCY_WINDOW_DAYS) * config.recency_weight
        return min(1.0, score)

