"""Tests for hybrid memory retrieval."""

from dataclasses import replace
from datetime import timedelta

import pytest

from memex.core.errors import RetrievalFailedError
from memex.memory.base import (
    Entity,
    EntityType,
    EpisodicMemory,
    LongTermMemory,
    MemoryKind,
    Note,
    Relationship,
    ShortTermMemory,
)
from memex.memory.embeddings import cosine_similarity, decode_embedding, encode_embedding, similarity_score
from memex.memory.retrieval import (
    RetrievalConfig,
    RetrievalEngine,
    detect_personal_data,
    extract_query_terms,
    text_relevance,
)
from tests.conftest import NOW, KeywordEmbedder


async def insert(store, *records):
    async with store.transaction():
        for record in records:
            await store.insert(record)


# --- helpers ---


def test_extract_query_terms():
    """Short words and punctuation are dropped, case folded."""
    assert extract_query_terms("What is the Project, Alpha?!") == ["what", "the", "project", "alpha"]
    assert extract_query_terms("a an is") == []


def test_detect_personal_data():
    """Personal indicators match as whole words, including 'I'."""
    assert detect_personal_data("What did I discuss with John?")
    assert detect_personal_data("remember the meeting")
    assert not detect_personal_data("What is project management?")
    assert not detect_personal_data("mystery novels")


def test_text_relevance_exact_and_partial():
    """Exact word counts double, substring counts once."""
    assert text_relevance("project alpha", ["project"]) == 1.0
    assert text_relevance("projects galore", ["project"]) == 0.5
    assert text_relevance("project news", ["project", "zebra"]) == 0.5
    assert text_relevance("", ["project"]) == 0.0
    assert text_relevance("my health checkup.", ["checkup"]) == 1.0
    assert text_relevance("Project, alpha!", ["project", "alpha"]) == 1.0


def test_cosine_similarity_edge_cases():
    """Mismatched, empty and zero vectors score zero; negatives clamp."""
    assert cosine_similarity([1, 0], [1, 0]) == pytest.approx(1.0)
    assert cosine_similarity([1, 0], [1, 0, 0]) == 0.0
    assert cosine_similarity([], []) == 0.0
    assert cosine_similarity([0, 0], [1, 1]) == 0.0
    assert similarity_score([1, 0], [-1, 0]) == 0.0
    assert similarity_score([1, 0], None) == 0.0


def test_embedding_blob_encoding():
    """Embeddings pack to float32 bytes and back."""
    blob = encode_embedding([1.0, -2.5])
    assert len(blob) == 8
    assert decode_embedding(blob) == [1.0, -2.5]
    assert decode_embedding(None) is None


def test_presets_and_caps():
    """Presets carry their documented knobs; caps divide max_results."""
    personal = RetrievalConfig.personal_focus()
    assert personal.max_results == 15
    assert not personal.include_entities
    assert not RetrievalConfig.keyword_only().enable_semantic_search
    assert RetrievalConfig.semantic_only().keyword_weight == 0.0

    caps = RetrievalConfig(max_results=12).caps()
    assert caps[MemoryKind.STM] == 6
    assert caps[MemoryKind.LTM] == 6
    assert caps[MemoryKind.EPISODIC] == 4
    assert caps[MemoryKind.ENTITY] == 4
    assert caps[MemoryKind.RELATIONSHIP] == 3
    assert caps[MemoryKind.NOTE] == 4


# --- engine ---


@pytest.mark.asyncio
async def test_empty_store_returns_empty_context(store, clock):
    """No memories: empty context, no error."""
    engine = RetrievalEngine(store, config=RetrievalConfig.keyword_only(), clock=clock)
    context = await engine.retrieve("hello there friend")
    assert context.is_empty
    assert not context.is_degraded


@pytest.mark.asyncio
async def test_query_without_terms(store, clock):
    """A query of only short words retrieves nothing."""
    await insert(store, ShortTermMemory(content="it is on", timestamp=NOW))
    engine = RetrievalEngine(store, config=RetrievalConfig.keyword_only(), clock=clock)
    context = await engine.retrieve("it is on")
    assert context.is_empty


@pytest.mark.asyncio
async def test_keyword_ranking_and_threshold(store, clock):
    """Better matches rank first; weak matches fall below the threshold."""
    strong = ShortTermMemory(content="project alpha planning", timestamp=NOW)
    weak = ShortTermMemory(content="projects elsewhere", timestamp=NOW - timedelta(days=29))
    await insert(store, weak, strong)

    engine = RetrievalEngine(store, config=RetrievalConfig.keyword_only(), clock=clock)
    context = await engine.retrieve("project alpha")
    assert [m.id for m in context.stm] == [strong.id]


@pytest.mark.asyncio
async def test_recency_breaks_ties(store, clock):
    """Same text, newer memory ranks higher."""
    old = ShortTermMemory(content="project update", timestamp=NOW - timedelta(days=20))
    new = ShortTermMemory(content="project update", timestamp=NOW - timedelta(days=1))
    await insert(store, old, new)

    config = replace(RetrievalConfig.keyword_only(), relevance_threshold=0.0)
    engine = RetrievalEngine(store, config=config, clock=clock)
    context = await engine.retrieve("project update")
    assert [m.id for m in context.stm] == [new.id, old.id]


@pytest.mark.asyncio
async def test_per_type_caps(store, clock):
    """Each kind is truncated to its share of max_results."""
    await insert(store, *(ShortTermMemory(content=f"meeting {i}", timestamp=NOW) for i in range(10)))
    config = replace(RetrievalConfig.keyword_only(), max_results=6, relevance_threshold=0.0)
    engine = RetrievalEngine(store, config=config, clock=clock)
    context = await engine.retrieve("meeting")
    assert len(context.stm) == 3


@pytest.mark.asyncio
async def test_many_terms_filter_in_memory(store, clock):
    """Queries with more terms than the store can push down still match."""
    hit = ShortTermMemory(content="quarterly budget review", timestamp=NOW)
    miss = ShortTermMemory(content="gardening tips", timestamp=NOW)
    await insert(store, hit, miss)

    config = replace(RetrievalConfig.keyword_only(), relevance_threshold=0.0)
    engine = RetrievalEngine(store, config=config, clock=clock)
    context = await engine.retrieve("quarterly budget review numbers")
    assert [m.id for m in context.stm] == [hit.id]


@pytest.mark.asyncio
async def test_all_kinds_and_relationships(store, clock):
    """Every included kind is searched; relationships follow ranked entities."""
    alice = Entity(name="Alice", type=EntityType.PERSON, description="project lead")
    acme = Entity(name="Acme", type=EntityType.ORGANIZATION, description="project sponsor")
    edge = Relationship(alice.id, "works_for", acme.id)
    await insert(
        store,
        ShortTermMemory(content="project kickoff", timestamp=NOW),
        LongTermMemory(content="project history", last_accessed=NOW),
        EpisodicMemory(event_description="project meeting", timestamp=NOW),
        Note(original_text="project notes", last_accessed=NOW),
        alice,
        acme,
        edge,
    )

    config = replace(RetrievalConfig.keyword_only(), relevance_threshold=0.0, max_results=12)
    engine = RetrievalEngine(store, config=config, clock=clock)
    context = await engine.retrieve("project")
    summary = context.summary()
    assert summary["stm"] == 1
    assert summary["ltm"] == 1
    assert summary["episodic"] == 1
    assert summary["notes"] == 1
    assert summary["entities"] == 2
    assert [r.id for r in context.relationships] == [edge.id]


@pytest.mark.asyncio
async def test_excluded_kinds_are_not_fetched(store, clock):
    """include_* flags skip whole kinds."""
    await insert(store, Entity(name="Project Alpha"), ShortTermMemory(content="project", timestamp=NOW))
    config = replace(RetrievalConfig.personal_focus(), enable_semantic_search=False, relevance_threshold=0.0)
    engine = RetrievalEngine(store, config=config, clock=clock)
    context = await engine.retrieve("project")
    assert context.entities == []
    assert len(context.stm) == 1


@pytest.mark.asyncio
async def test_semantic_ranking(store, clock):
    """With embeddings, the semantically closer memory wins."""
    embedder = KeywordEmbedder(["trip", "paris", "budget"])
    close = ShortTermMemory(
        content="trip notes", timestamp=NOW, embedding=[1.0, 1.0, 0.0], embedding_generated_at=NOW
    )
    far = ShortTermMemory(
        content="trip budget", timestamp=NOW, embedding=[0.0, 0.0, 1.0], embedding_generated_at=NOW
    )
    await insert(store, far, close)

    config = replace(RetrievalConfig.default(), semantic_similarity_threshold=0.0)
    engine = RetrievalEngine(store, embedder, config=config, clock=clock)
    context = await engine.retrieve("trip paris")
    assert context.semantic_applied
    assert [m.id for m in context.stm][0] == close.id


@pytest.mark.asyncio
async def test_stale_or_missing_embeddings_score_zero(store, clock):
    """Stale and missing vectors contribute nothing but never exclude the item."""
    embedder = KeywordEmbedder(["trip"])
    stale = ShortTermMemory(
        content="trip", timestamp=NOW, embedding=[1.0],
        embedding_generated_at=NOW - timedelta(days=30),
    )
    missing = ShortTermMemory(content="trip", timestamp=NOW)
    await insert(store, stale, missing)

    config = replace(RetrievalConfig.default(), semantic_similarity_threshold=0.0)
    engine = RetrievalEngine(store, embedder, config=config, clock=clock)
    context = await engine.retrieve("trip")
    assert {m.id for m in context.stm} == {stale.id, missing.id}


@pytest.mark.asyncio
async def test_missing_embedder_degrades_to_keyword(store, clock):
    """Semantic requested without a provider: keyword ranking, reason recorded."""
    await insert(store, ShortTermMemory(content="project alpha", timestamp=NOW))
    engine = RetrievalEngine(store, None, config=RetrievalConfig.default(), clock=clock)
    context = await engine.retrieve("project alpha")
    assert context.is_degraded
    assert context.degraded_reason == "embedding provider unavailable"
    assert len(context.stm) == 1


@pytest.mark.asyncio
async def test_embedding_failure_degrades(store, clock):
    """A failing embedder does not fail retrieval."""
    await insert(store, ShortTermMemory(content="project alpha", timestamp=NOW))
    embedder = KeywordEmbedder(["project"], error=RuntimeError("model offline"))
    engine = RetrievalEngine(store, embedder, config=RetrievalConfig.default(), clock=clock)
    context = await engine.retrieve("project alpha")
    assert context.is_degraded
    assert "model offline" in context.degraded_reason
    assert len(context.stm) == 1


@pytest.mark.asyncio
async def test_store_failure_raises_retrieval_failed(store, clock):
    """Fetch errors abort the query with a typed error."""
    await store.close()
    engine = RetrievalEngine(store, config=RetrievalConfig.keyword_only(), clock=clock)
    with pytest.raises(RetrievalFailedError):
        await engine.retrieve("project alpha")


@pytest.mark.asyncio
async def test_personal_flag_set_on_context(store, clock):
    """contains_personal_data reflects the query."""
    engine = RetrievalEngine(store, config=RetrievalConfig.keyword_only(), clock=clock)
    context = await engine.retrieve("what did I eat")
    assert context.contains_personal_data
