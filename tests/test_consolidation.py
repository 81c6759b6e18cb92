"""Tests for STM -> LTM consolidation."""

import asyncio
from datetime import timedelta

import pytest

from memex.agents.consolidation import (
    ConsolidationEngine,
    category_for,
    parse_decision,
)
from memex.core.errors import ProviderUnavailableError
from memex.memory.base import LTMCategory, MemoryKind, MemoryType, ShortTermMemory
from tests.conftest import NOW, GatedProvider, ScriptedProvider


async def add_stm(store, content: str, hours_old: float, **kwargs) -> ShortTermMemory:
    stm = ShortTermMemory(content=content, timestamp=NOW - timedelta(hours=hours_old), **kwargs)
    async with store.transaction():
        await store.insert(stm)
    return stm


def decide_by_content(prompt: str) -> str:
    if "keep" in prompt:
        return "PROMOTE_TO_LTM: worth keeping"
    if "explode" in prompt:
        raise RuntimeError("model crashed")
    return "EXPIRE"


def test_parse_decision():
    """Marker promotes and carries an optional summary; anything else expires."""
    assert parse_decision("PROMOTE_TO_LTM: Likes jazz\nmore text").summary == "Likes jazz"
    assert parse_decision("PROMOTE_TO_LTM").promote
    assert parse_decision("PROMOTE_TO_LTM").summary == ""
    assert not parse_decision("EXPIRE").promote
    assert not parse_decision("").promote


def test_category_for():
    assert category_for(ShortTermMemory(content="x", memory_type=MemoryType.SEMANTIC)) is LTMCategory.FACTUAL
    assert category_for(ShortTermMemory(content="x", context_tags=["Health"])) is LTMCategory.HEALTH


@pytest.mark.asyncio
async def test_missing_provider_raises(store, prompts, clock):
    engine = ConsolidationEngine(store, None, prompts, clock=clock)
    with pytest.raises(ProviderUnavailableError):
        await engine.run()


@pytest.mark.asyncio
async def test_promote_creates_ltm_and_removes_stm(store, prompts, clock):
    """A promoted STM becomes exactly one LTM that remembers its source."""
    stm = await add_stm(
        store, "keep: Alice likes jazz", 30, context_tags=["music"], embedding=[1.0, 0.0]
    )
    engine = ConsolidationEngine(store, ScriptedProvider(decide_by_content), prompts, clock=clock)

    report = await engine.run()

    assert report.promoted == [stm.id]
    assert report.succeeded
    assert await store.get(MemoryKind.STM, stm.id) is None
    ltms = await store.fetch(MemoryKind.LTM)
    assert len(ltms) == 1
    ltm = ltms[0]
    assert ltm.source_stm_ids == [stm.id]
    assert ltm.summary == "worth keeping"
    assert ltm.category is LTMCategory.EXPERIENTIAL
    assert ltm.retrieval_cues == ["music"]
    assert ltm.embedding == [1.0, 0.0]


@pytest.mark.asyncio
async def test_expire_deletes_without_ltm(store, prompts, clock):
    stm = await add_stm(store, "weather chat", 30)
    engine = ConsolidationEngine(store, ScriptedProvider(decide_by_content), prompts, clock=clock)

    report = await engine.run()

    assert report.expired == [stm.id]
    assert await store.count(MemoryKind.STM) == 0
    assert await store.count(MemoryKind.LTM) == 0


@pytest.mark.asyncio
async def test_young_stm_untouched(store, prompts, clock):
    """Only items older than the consolidation age are examined."""
    await add_stm(store, "keep: fresh", 2)
    provider = ScriptedProvider(decide_by_content)
    engine = ConsolidationEngine(store, provider, prompts, clock=clock)

    report = await engine.run()

    assert report.examined == []
    assert provider.prompts == []
    assert await store.count(MemoryKind.STM) == 1


@pytest.mark.asyncio
async def test_failure_keeps_item_and_continues(store, prompts, clock):
    """One provider failure is reported; the rest of the sweep proceeds."""
    bad = await add_stm(store, "explode please", 40)
    good = await add_stm(store, "keep: this one", 30)
    engine = ConsolidationEngine(store, ScriptedProvider(decide_by_content), prompts, clock=clock)

    report = await engine.run()

    assert report.examined == [bad.id, good.id]
    assert report.failed == [bad.id]
    assert report.promoted == [good.id]
    assert not report.succeeded
    assert report.errors[0].item_id == bad.id
    assert await store.get(MemoryKind.STM, bad.id) is not None


@pytest.mark.asyncio
async def test_second_run_is_idempotent(store, prompts, clock):
    """A repeated sweep never double-promotes."""
    await add_stm(store, "keep: once", 30)
    engine = ConsolidationEngine(store, ScriptedProvider(decide_by_content), prompts, clock=clock)

    await engine.run()
    clock.advance(hours=1)
    report = await engine.run()

    assert report.examined == []
    assert await store.count(MemoryKind.LTM) == 1


@pytest.mark.asyncio
async def test_prompt_carries_item_details(store, prompts, clock):
    await add_stm(store, "quarterly review", 36, importance=0.7)
    provider = ScriptedProvider("EXPIRE")
    engine = ConsolidationEngine(store, provider, prompts, clock=clock)

    await engine.run()

    prompt = provider.prompts[0]
    assert "quarterly review" in prompt
    assert "0.70" in prompt
    assert "36.0" in prompt
    assert not engine.is_running


@pytest.mark.asyncio
async def test_cancelled_sweep_finishes_item_before_next_sweep(store, prompts, clock):
    """Cancelling mid-item commits that item before another sweep can start."""
    stm = await add_stm(store, "keep: only once", 30)
    provider = GatedProvider(decide_by_content)
    engine = ConsolidationEngine(store, provider, prompts, clock=clock)

    sweep = asyncio.create_task(engine.run())
    await provider.started.wait()
    sweep.cancel()
    await asyncio.sleep(0.01)
    assert engine.is_running
    second = asyncio.create_task(engine.run())
    provider.gate.set()

    with pytest.raises(asyncio.CancelledError):
        await sweep
    report = await second

    assert report.examined == []
    ltms = await store.fetch(MemoryKind.LTM)
    assert [ltm.source_stm_ids for ltm in ltms] == [[stm.id]]
    assert await store.count(MemoryKind.STM) == 0


@pytest.mark.asyncio
async def test_item_removed_during_decision_is_skipped(store, prompts, clock):
    """An STM deleted while the provider decides is neither promoted nor expired."""
    stm = await add_stm(store, "keep: removed elsewhere", 30)

    class DeletingProvider(ScriptedProvider):
        async def generate(self, prompt, context=None):
            async with store.transaction():
                await store.delete(stm)
            return await super().generate(prompt, context)

    engine = ConsolidationEngine(store, DeletingProvider(decide_by_content), prompts, clock=clock)

    report = await engine.run()

    assert report.examined == [stm.id]
    assert report.promoted == []
    assert report.expired == []
    assert report.succeeded
    assert await store.count(MemoryKind.LTM) == 0
