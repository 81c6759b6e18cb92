"""Memory agent - ingestion, grounded answers, interaction storage and consolidation."""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from itertools import combinations
from typing import Any

from memex.agents.consolidation import ConsolidationEngine, ConsolidationReport
from memex.agents.privacy import PrivacyAnalyzer
from memex.core.errors import (
    GenerationFailedError,
    MemexError,
    NotInitializedError,
    ProviderUnavailableError,
)
from memex.core.logging import get_logger, preview
from memex.core.scheduler import JobPriority, Scheduler
from memex.core.types import SystemState
from memex.llm.base import EmbeddingProvider, GeneratedResponse, ResponseProvider
from memex.llm.prompts import PromptLibrary, parse_json_reply
from memex.memory.base import (
    Contains,
    EmotionalTone,
    Entity,
    EntityType,
    EpisodicMemory,
    LongTermMemory,
    LTMCategory,
    MemoryKind,
    MemoryStore,
    MemoryType,
    Note,
    OneOf,
    Relationship,
    ShortTermMemory,
)
from memex.memory.context import MemoryContext
from memex.memory.retrieval import RetrievalConfig, RetrievalEngine

logger = get_logger("agents.memory")

CONSOLIDATION_JOB = "memory-consolidation"
LONG_TERM_MARKERS = ("long-term", "important")


class IngestKind(Enum):
    TRANSCRIPTION = "transcription"
    NOTE = "note"
    HEALTH_DATA = "health_data"
    USER_INTERACTION = "user_interaction"


@dataclass
class AgentConfig:
    """Memory agent and orchestrator options."""

    enable_rag: bool = True
    enable_consolidation: bool = True
    max_context_size: int = 8192
    consolidation_interval_seconds: float = 24 * 60 * 60
    consolidation_age_hours: float = 24.0
    action_confidence_threshold: float = 0.8
    enable_autonomous_actions: bool = True
    enable_proactive_insights: bool = True
    insight_interval_seconds: float = 60 * 60
    max_proactive_insights: int = 10
    history_size: int = 50
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig.personal_focus)

    @classmethod
    def from_settings(cls, settings: Any) -> "AgentConfig":
        return cls(
            enable_rag=settings.enable_rag,
            enable_consolidation=settings.enable_consolidation,
            max_context_size=settings.max_context_size,
            consolidation_interval_seconds=settings.consolidation_interval_seconds,
            consolidation_age_hours=settings.consolidation_age_hours,
            action_confidence_threshold=settings.action_confidence_threshold,
            enable_autonomous_actions=settings.enable_autonomous_actions,
            enable_proactive_insights=settings.enable_proactive_insights,
            insight_interval_seconds=settings.insight_interval_seconds,
            max_proactive_insights=settings.max_proactive_insights,
            history_size=settings.history_size,
            retrieval=RetrievalConfig.from_settings(settings),
        )


class MemoryAgent:
    """Owns the memory write paths and answers queries from retrieved memories."""

    def __init__(
        self,
        store: MemoryStore,
        retrieval: RetrievalEngine,
        privacy: PrivacyAnalyzer,
        prompts: PromptLibrary,
        config: AgentConfig | None = None,
        response_provider: ResponseProvider | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        scheduler: Scheduler | None = None,
        clock=datetime.now,
    ):
        self.store = store
        self.retrieval = retrieval
        self.privacy = privacy
        self.prompts = prompts
        self.config = config or AgentConfig()
        self.response_provider = response_provider
        self.embedding_provider = embedding_provider
        self.scheduler = scheduler
        self.clock = clock
        self.consolidation = ConsolidationEngine(
            store,
            response_provider,
            prompts,
            age_hours=self.config.consolidation_age_hours,
            clock=clock,
        )
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return
        if self.scheduler and self.config.enable_consolidation:
            interval = timedelta(seconds=self.config.consolidation_interval_seconds)
            self.scheduler.schedule(
                CONSOLIDATION_JOB,
                "Memory consolidation",
                self._scheduled_consolidation,
                interval=interval,
                priority=JobPriority.LOW,
                delay=interval,
            )
        self._initialized = True
        logger.info("Memory agent initialized")

    async def shutdown(self) -> None:
        if self.scheduler:
            self.scheduler.cancel(CONSOLIDATION_JOB)
        self._initialized = False
        logger.info("Memory agent shut down")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("memory agent")

    # Ingestion

    async def ingest(
        self,
        kind: IngestKind,
        content: str,
        confidence: float = 1.0,
        metadata: dict[str, Any] | None = None,
    ) -> list[Any]:
        """Store incoming content. Returns the records created."""
        self._require_initialized()
        if not content or not content.strip():
            raise ValueError("Cannot ingest empty content")
        metadata = metadata or {}
        logger.info(f"Ingesting {kind.value}: {preview(content)}")

        if kind is IngestKind.TRANSCRIPTION:
            return await self._ingest_transcription(content, confidence, metadata)
        if kind is IngestKind.NOTE:
            return await self._ingest_note(content, metadata)
        if kind is IngestKind.HEALTH_DATA:
            return await self._insert_all(
                EpisodicMemory(
                    event_description=f"Health Data Entry: {content}",
                    importance=0.7,
                    contextual_cues=("health", "data"),
                    timestamp=self.clock(),
                )
            )
        return await self._insert_all(
            EpisodicMemory(
                event_description=f"User Interaction: {content}",
                participants=("user",),
                importance=0.5,
                contextual_cues=("interaction",),
                timestamp=self.clock(),
            )
        )

    async def _ingest_transcription(
        self, content: str, confidence: float, metadata: dict[str, Any]
    ) -> list[Any]:
        entities: list[Entity] = []
        try:
            entities = await self.extract_entities(content)
        except Exception as e:
            logger.warning(f"Entity extraction failed during ingestion: {e}")

        embedding, generated_at = await self._embed(content)
        now = self.clock()
        stm = ShortTermMemory(
            content=content,
            memory_type=MemoryType.EPISODIC,
            importance=max(0.0, min(1.0, confidence)),
            timestamp=now,
            last_accessed=now,
            related_entity_ids=[e.id for e in entities],
            context_tags=["transcription", *metadata.get("tags", [])],
            embedding=embedding,
            embedding_generated_at=generated_at,
        )
        return [*await self._insert_all(stm), *entities]

    async def _ingest_note(self, content: str, metadata: dict[str, Any]) -> list[Any]:
        analysis = ""
        if self.response_provider is not None:
            try:
                reply = await self.response_provider.generate(
                    self.prompts.render("note_analysis", content=content)
                )
                analysis = reply.content.strip()
            except Exception as e:
                logger.warning(f"Note analysis failed, storing as short-term: {e}")

        embedding, generated_at = await self._embed(content)
        now = self.clock()
        note = Note(
            original_text=content,
            summary=_strip_markers(analysis),
            topics=list(metadata.get("topics", [])),
            keywords=list(metadata.get("keywords", [])),
            last_accessed=now,
            embedding=embedding,
            embedding_generated_at=generated_at,
        )

        lowered = analysis.lower()
        if any(marker in lowered for marker in LONG_TERM_MARKERS):
            memory: Any = LongTermMemory(
                content=content,
                summary=note.summary or content[:100],
                category=LTMCategory.PERSONAL,
                importance=0.8,
                related_concepts=list(note.topics),
                retrieval_cues=list(note.keywords),
                last_accessed=now,
                created_at=now,
                embedding=embedding,
                embedding_generated_at=generated_at,
            )
        else:
            memory = ShortTermMemory(
                content=content,
                memory_type=MemoryType.SEMANTIC,
                importance=1.0,
                timestamp=now,
                last_accessed=now,
                context_tags=["note", *metadata.get("tags", [])],
                embedding=embedding,
                embedding_generated_at=generated_at,
            )
        return await self._insert_all(note, memory)

    async def _insert_all(self, *records: Any) -> list[Any]:
        async with self.store.transaction():
            for record in records:
                await self.store.insert(record)
        return list(records)

    async def _embed(self, text: str) -> tuple[list[float] | None, datetime | None]:
        if self.embedding_provider is None:
            return None, None
        try:
            return await self.embedding_provider.embed(text), self.clock()
        except Exception as e:
            logger.warning(f"Embedding failed, storing without vector: {e}")
            return None, None

    # Query pipeline

    async def query(self, text: str) -> GeneratedResponse:
        """Answer a query from memory and remember the exchange."""
        self._require_initialized()
        context = await self.retrieve_context(text)
        response = await self.generate_response(text, context)
        await self.store_interaction(text, response, context)
        return response

    async def retrieve_context(self, text: str) -> MemoryContext:
        self._require_initialized()
        if not self.config.enable_rag:
            return MemoryContext(user_query=text, timestamp=self.clock())
        return await self.retrieval.retrieve(text, self.config.retrieval)

    async def generate_response(self, text: str, context: MemoryContext) -> GeneratedResponse:
        self._require_initialized()
        if self.response_provider is None:
            raise ProviderUnavailableError("No response provider configured")
        prompt = self.prompts.render("answer", query=text)
        try:
            return await self.response_provider.generate(prompt, context)
        except MemexError:
            raise
        except Exception as e:
            raise GenerationFailedError(f"Response generation failed: {e}") from e

    async def store_interaction(
        self, text: str, response: GeneratedResponse, context: MemoryContext
    ) -> list[Any]:
        """Persist query, response and their links in one transaction."""
        self._require_initialized()
        embedding, generated_at = await self._embed(response.content)
        now = self.clock()

        query_event = EpisodicMemory(
            event_description=f"User Query: {text}",
            participants=("user",),
            importance=0.7,
            contextual_cues=("query", "user_input"),
            timestamp=now,
        )
        answer = ShortTermMemory(
            content=response.content,
            memory_type=MemoryType.SEMANTIC,
            importance=max(0.0, min(1.0, response.confidence)),
            timestamp=now,
            last_accessed=now,
            related_entity_ids=[e.id for e in context.entities],
            context_tags=["ai_response", "conversation", response.model_used, "query_response_pair"],
            embedding=embedding,
            embedding_generated_at=generated_at,
        )
        conversation = EpisodicMemory(
            event_description=(
                f"Conversation: {preview(text, 100)} -> {preview(response.content, 100)}"
            ),
            participants=("user", "assistant"),
            emotional_tone=EmotionalTone.NEUTRAL,
            importance=0.6,
            contextual_cues=("conversation", "exchange"),
            timestamp=now,
        )
        links = [
            Relationship(query_event.id, "answered_by", answer.id, created_at=now),
            Relationship(conversation.id, "includes", query_event.id, created_at=now),
            Relationship(conversation.id, "includes", answer.id, created_at=now),
        ]

        async with self.store.transaction():
            for record in (query_event, answer, conversation, *links):
                await self.store.insert(record)
            for stm in context.stm:
                stm.access(now)
                await self.store.update(stm)
            for ltm in context.ltm:
                ltm.last_accessed = now
                await self.store.update(ltm)
            for note in context.notes:
                note.last_accessed = now
                await self.store.update(note)

        logger.debug(f"Stored interaction for '{preview(text)}'")
        return [query_event, answer, conversation, *links]

    async def record_learning(self, description: str, importance: float = 0.4) -> EpisodicMemory:
        """Store what a processing cycle learned as an episodic memory."""
        record = EpisodicMemory(
            event_description=description,
            participants=("assistant",),
            importance=importance,
            contextual_cues=("learning",),
            timestamp=self.clock(),
        )
        await self._insert_all(record)
        return record

    # Consolidation

    async def consolidate_now(self) -> ConsolidationReport:
        self._require_initialized()
        return await self.consolidation.run()

    async def _scheduled_consolidation(self) -> None:
        report = await self.consolidation.run()
        if report.failed:
            logger.warning(f"Scheduled consolidation left {len(report.failed)} items for retry")

    # Knowledge graph

    async def extract_entities(self, text: str) -> list[Entity]:
        """Ask the provider for entities and relationships, upsert them."""
        if self.response_provider is None:
            return []

        reply = await self.response_provider.generate(
            self.prompts.render("entity_extraction", content=text)
        )
        try:
            data = parse_json_reply(reply.content)
        except ValueError as e:
            logger.warning(f"Entity extraction returned invalid JSON: {e}")
            return []
        if not isinstance(data, dict):
            return []

        now = self.clock()
        by_name: dict[str, Entity] = {}
        async with self.store.transaction():
            for item in data.get("entities") or []:
                name = str(item.get("name", "")).strip() if isinstance(item, dict) else ""
                if not name or name.lower() in by_name:
                    continue
                entity = await self._find_entity(name)
                if entity is None:
                    entity = Entity(
                        name=name,
                        type=EntityType.parse(item.get("type")),
                        description=item.get("description") or None,
                        last_mentioned=now,
                    )
                    await self.store.insert(entity)
                else:
                    entity.last_mentioned = now
                    if not entity.description and item.get("description"):
                        entity.description = item["description"]
                    await self.store.update(entity)
                by_name[name.lower()] = entity

            for item in data.get("relationships") or []:
                if not isinstance(item, dict):
                    continue
                subject = by_name.get(str(item.get("subject", "")).lower())
                obj = by_name.get(str(item.get("object", "")).lower())
                predicate = str(item.get("predicate", "")).strip()
                if subject and obj and predicate and subject.id != obj.id:
                    await self.store.insert(
                        Relationship(subject.id, predicate, obj.id, created_at=now)
                    )

        logger.info(f"Extracted {len(by_name)} entities from '{preview(text)}'")
        return list(by_name.values())

    async def _find_entity(self, name: str) -> Entity | None:
        matches = await self.store.fetch(MemoryKind.ENTITY, where=Contains(("name",), (name,)))
        for entity in matches:
            if entity.name.lower() == name.lower():
                return entity
        return None

    async def link_entities(self, entities: list[Entity]) -> int:
        """Relate co-occurring entities that have no edge yet. Returns edges created."""
        if len(entities) < 2:
            return 0
        ids = tuple(e.id for e in entities)
        existing = await self.store.fetch(
            MemoryKind.RELATIONSHIP, where=OneOf(("subject_id", "object_id"), ids)
        )
        linked = {frozenset((r.subject_id, r.object_id)) for r in existing}

        created = 0
        now = self.clock()
        async with self.store.transaction():
            for a, b in combinations(entities, 2):
                if a.id == b.id or frozenset((a.id, b.id)) in linked:
                    continue
                await self.store.insert(Relationship(a.id, "co_occurs_with", b.id, created_at=now))
                linked.add(frozenset((a.id, b.id)))
                created += 1
        return created

    async def cleanup(self) -> int:
        """Delete relationships pointing at records that no longer exist."""
        orphans = await self.store.orphan_relationships()
        if not orphans:
            return 0
        async with self.store.transaction():
            for relationship in orphans:
                await self.store.delete(relationship)
        logger.info(f"Cleanup removed {len(orphans)} orphan relationships")
        return len(orphans)

    async def system_state(self) -> SystemState:
        counts = {kind: await self.store.count(kind) for kind in MemoryKind}
        return SystemState(
            stm_count=counts[MemoryKind.STM],
            ltm_count=counts[MemoryKind.LTM],
            episodic_count=counts[MemoryKind.EPISODIC],
            entity_count=counts[MemoryKind.ENTITY],
            relationship_count=counts[MemoryKind.RELATIONSHIP],
            note_count=counts[MemoryKind.NOTE],
            orphan_relationships=len(await self.store.orphan_relationships()),
            timestamp=self.clock(),
        )


def _strip_markers(analysis: str) -> str:
    """Drop a leading classification word from a note analysis reply."""
    text = analysis.strip()
    for marker in (*LONG_TERM_MARKERS, "short-term"):
        if text.lower().startswith(marker):
            return text[len(marker):].lstrip(" :.-\n")
    return text
