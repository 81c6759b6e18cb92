"""Tests for the orchestrator cycle, states, autonomous actions and insights."""

import asyncio
import json
from datetime import timedelta

import pytest

from memex.agents.awareness import AwarenessAgent
from memex.agents.memory_agent import AgentConfig, MemoryAgent
from memex.core.errors import GenerationFailedError, NotInitializedError, RetrievalFailedError
from memex.core.orchestrator import (
    INSIGHT_JOB,
    Orchestrator,
    classify_intent,
    detect_triggers,
)
from memex.core.scheduler import Scheduler
from memex.core.types import (
    AutonomousActionType,
    EventType,
    InsightType,
    OrchestratorState,
    QueryIntent,
    SystemState,
)
from memex.memory.base import MemoryKind, ShortTermMemory
from memex.memory.context import MemoryContext
from memex.memory.retrieval import RetrievalEngine
from tests.conftest import NOW, GatedProvider, ScriptedProvider

THEMES = json.dumps(
    [
        {"title": f"Theme {i}", "description": f"theme number {i}", "confidence": 0.6}
        for i in range(5)
    ]
)


def replies(prompt: str) -> str:
    if "decide if it should be consolidated" in prompt:
        return "EXPIRE"
    if "recurring themes" in prompt:
        return THEMES
    return "ok"


def build(store, prompts, analyzer, clock, provider=None, notifier=None, scheduler=None, **config):
    agent_config = AgentConfig(**config)
    agent = MemoryAgent(
        store=store,
        retrieval=RetrievalEngine(store, clock=clock),
        privacy=analyzer,
        prompts=prompts,
        config=agent_config,
        response_provider=provider or ScriptedProvider(replies),
        clock=clock,
    )
    return Orchestrator(agent, analyzer, notifier=notifier, scheduler=scheduler, clock=clock)


async def add_stms(store, count: int, content: str, age: timedelta = timedelta()) -> None:
    async with store.transaction():
        for i in range(count):
            await store.insert(ShortTermMemory(content=f"{content} {i}", timestamp=NOW - age))


@pytest.fixture
async def orchestrator(store, prompts, analyzer, clock):
    orchestrator = build(store, prompts, analyzer, clock)
    await orchestrator.start()
    yield orchestrator
    await orchestrator.stop()


def test_classify_intent():
    assert classify_intent("Do you remember the trip?") is QueryIntent.RECALL
    assert classify_intent("What is Acme?") is QueryIntent.SEEKING
    assert classify_intent("Remind me tomorrow") is QueryIntent.TASK
    assert classify_intent("find my keys") is QueryIntent.SEARCH
    assert classify_intent("hello") is QueryIntent.GENERAL


def test_detect_triggers():
    """Backlog, long queries and orphans each raise a trigger."""
    context = MemoryContext(user_query="x")
    assert detect_triggers("short", context, SystemState(stm_count=50)) == []

    triggers = detect_triggers("x" * 201, context, SystemState(stm_count=51, orphan_relationships=2))
    actions = {t.action for t in triggers}
    assert actions == {
        AutonomousActionType.MEMORY_CONSOLIDATION,
        AutonomousActionType.ENTITY_EXTRACTION,
        AutonomousActionType.DATA_CLEANUP,
    }


@pytest.mark.asyncio
async def test_query_before_start_raises(store, prompts, analyzer, clock):
    orchestrator = build(store, prompts, analyzer, clock)
    with pytest.raises(NotInitializedError):
        await orchestrator.process_query("hello")
    assert orchestrator.state is OrchestratorState.IDLE


@pytest.mark.asyncio
async def test_lifecycle_states(store, prompts, analyzer, clock):
    """start() passes through INITIALIZING; stop() returns to IDLE."""
    orchestrator = build(store, prompts, analyzer, clock)
    transitions = []
    orchestrator.subscribe(
        lambda e: transitions.append(e.payload) if e.type is EventType.STATE_CHANGED else None
    )

    await orchestrator.start()
    assert orchestrator.state is OrchestratorState.ACTIVE
    assert orchestrator.agent.is_initialized
    await orchestrator.stop()

    assert transitions == [
        (OrchestratorState.IDLE, OrchestratorState.INITIALIZING),
        (OrchestratorState.INITIALIZING, OrchestratorState.ACTIVE),
        (OrchestratorState.ACTIVE, OrchestratorState.STOPPING),
        (OrchestratorState.STOPPING, OrchestratorState.IDLE),
    ]
    assert not orchestrator.agent.is_initialized


@pytest.mark.asyncio
async def test_process_query_full_cycle(orchestrator: Orchestrator, store):
    """A cycle answers, stores the exchange plus a learning record, keeps history."""
    response = await orchestrator.process_query("hello there")

    assert response.content == "ok"
    assert response.confidence == 0.8
    assert response.perception.intent is QueryIntent.GENERAL
    assert response.reasoning.analysis.overall > 0
    assert orchestrator.state is OrchestratorState.ACTIVE
    assert orchestrator.history == [response]
    # query + conversation + learning
    assert await store.count(MemoryKind.EPISODIC) == 3
    assert await store.count(MemoryKind.STM) == 1


@pytest.mark.asyncio
async def test_backlog_triggers_consolidation(store, prompts, analyzer, clock):
    """More than 50 STMs runs consolidation at the default threshold."""
    await add_stms(store, 51, "old memory", age=timedelta(days=2))
    orchestrator = build(store, prompts, analyzer, clock, action_confidence_threshold=0.8)
    await orchestrator.start()

    response = await orchestrator.process_query("status")

    (action,) = response.autonomous_actions
    assert action.action is AutonomousActionType.MEMORY_CONSOLIDATION
    assert action.success
    assert action.detail == "promoted 0, expired 51, failed 0"
    assert await store.count(MemoryKind.STM) == 1


@pytest.mark.asyncio
async def test_cancelled_query_waits_for_running_action(store, prompts, analyzer, clock):
    """A started autonomous action completes before a cancelled query unwinds."""
    await add_stms(store, 51, "old memory", age=timedelta(days=2))
    provider = GatedProvider(replies, match="decide if it should be consolidated")
    orchestrator = build(store, prompts, analyzer, clock, provider=provider, action_confidence_threshold=0.8)
    await orchestrator.start()

    query = asyncio.create_task(orchestrator.process_query("status"))
    await provider.started.wait()
    query.cancel()
    await asyncio.sleep(0.01)
    assert not query.done()
    provider.gate.set()

    with pytest.raises(asyncio.CancelledError):
        await query
    assert await store.count(MemoryKind.STM) == 0
    assert orchestrator.state is OrchestratorState.ACTIVE


@pytest.mark.asyncio
async def test_high_threshold_skips_actions(store, prompts, analyzer, clock):
    """Recommendations below the threshold are not executed."""
    await add_stms(store, 51, "old memory", age=timedelta(days=2))
    orchestrator = build(store, prompts, analyzer, clock, action_confidence_threshold=0.95)
    await orchestrator.start()

    response = await orchestrator.process_query("status")

    assert response.autonomous_actions == []
    assert response.reasoning.recommendations[0].action is AutonomousActionType.MEMORY_CONSOLIDATION
    assert await store.count(MemoryKind.STM) == 52


@pytest.mark.asyncio
async def test_autonomous_actions_can_be_disabled(store, prompts, analyzer, clock):
    await add_stms(store, 51, "old memory", age=timedelta(days=2))
    orchestrator = build(store, prompts, analyzer, clock, enable_autonomous_actions=False)
    await orchestrator.start()

    response = await orchestrator.process_query("status")
    assert response.autonomous_actions == []


@pytest.mark.asyncio
async def test_generation_failure_is_recoverable(store, prompts, analyzer, clock):
    """A failed answer persists nothing and leaves the orchestrator ACTIVE."""
    provider = ScriptedProvider(error=RuntimeError("model crashed"))
    orchestrator = build(store, prompts, analyzer, clock, provider=provider)
    await orchestrator.start()

    with pytest.raises(GenerationFailedError):
        await orchestrator.process_query("What did I do yesterday?")

    assert orchestrator.state is OrchestratorState.ACTIVE
    assert orchestrator.history == []
    assert await store.count(MemoryKind.EPISODIC) == 0
    assert await store.count(MemoryKind.STM) == 0


@pytest.mark.asyncio
async def test_unrecoverable_error_then_recovery(orchestrator: Orchestrator, monkeypatch):
    """Retrieval failures park the orchestrator in ERROR until a cycle succeeds."""
    agent = orchestrator.agent
    original = agent.retrieve_context
    calls = []

    async def flaky(text):
        calls.append(text)
        if len(calls) == 1:
            raise RetrievalFailedError("disk gone")
        return await original(text)

    monkeypatch.setattr(agent, "retrieve_context", flaky)

    with pytest.raises(RetrievalFailedError):
        await orchestrator.process_query("first")
    assert orchestrator.state is OrchestratorState.ERROR

    await orchestrator.process_query("second")
    assert orchestrator.state is OrchestratorState.ACTIVE


@pytest.mark.asyncio
async def test_events_and_unsubscribe(orchestrator: Orchestrator):
    """Subscribers see responses; a failing subscriber does not break the cycle."""
    seen = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    async def collect(event):
        seen.append(event)

    orchestrator.subscribe(broken)
    unsubscribe = orchestrator.subscribe(collect)

    response = await orchestrator.process_query("hello there")
    types = [e.type for e in seen]
    assert types.count(EventType.RESPONSE) == 1
    assert seen[-1].payload is response
    assert EventType.STATE_CHANGED in types

    unsubscribe()
    count = len(seen)
    await orchestrator.process_query("hello again")
    assert len(seen) == count


@pytest.mark.asyncio
async def test_memory_gap_insight(orchestrator: Orchestrator):
    """A recall query that finds nothing produces a memory-gap insight."""
    response = await orchestrator.process_query("Do you remember the zebra?")

    (insight,) = response.action.insights
    assert insight.type is InsightType.MEMORY_GAP
    assert orchestrator.insights == [insight]


@pytest.mark.asyncio
async def test_recurring_topic_notifies(store, prompts, analyzer, clock):
    """A topic in five recent memories is actionable and gets delivered."""
    delivered = []
    notifier = AwarenessAgent(lambda n: delivered.append(n.message))
    await add_stms(store, 5, "budget item")
    orchestrator = build(store, prompts, analyzer, clock, notifier=notifier)
    await orchestrator.start()

    response = await orchestrator.process_query("tell me about budget")

    insight = next(i for i in response.action.insights if i.type is InsightType.PATTERN)
    assert insight.title == "Recurring topic: budget"
    assert insight.actionable
    (action,) = response.autonomous_actions
    assert action.action is AutonomousActionType.PROACTIVE_NOTIFICATION
    assert action.success
    assert delivered == [f"Recurring topic: budget: {insight.description}"]


@pytest.mark.asyncio
async def test_notification_without_notifier_fails_softly(store, prompts, analyzer, clock):
    await add_stms(store, 5, "budget item")
    orchestrator = build(store, prompts, analyzer, clock)
    await orchestrator.start()

    response = await orchestrator.process_query("tell me about budget")

    (action,) = response.autonomous_actions
    assert not action.success
    assert action.detail == "No notifier configured"
    assert orchestrator.state is OrchestratorState.ACTIVE


@pytest.mark.asyncio
async def test_periodic_insights_are_bounded(store, prompts, analyzer, clock):
    """Provider themes merge into the insight list up to its bound."""
    await add_stms(store, 3, "gym session")
    orchestrator = build(store, prompts, analyzer, clock, max_proactive_insights=3)
    await orchestrator.start()
    seen = []
    orchestrator.subscribe(lambda e: seen.append(e) if e.type is EventType.INSIGHT else None)

    insights = await orchestrator.generate_periodic_insights()

    assert len(insights) == 5
    assert all(i.type is InsightType.THEME for i in insights)
    assert [i.title for i in orchestrator.insights] == ["Theme 0", "Theme 1", "Theme 2"]
    assert len(seen) == 5


@pytest.mark.asyncio
async def test_repeated_insights_are_deduplicated(store, prompts, analyzer, clock):
    """Insights with a title already held replace rather than duplicate."""
    await add_stms(store, 3, "gym session")
    orchestrator = build(store, prompts, analyzer, clock)
    await orchestrator.start()

    first = await orchestrator.generate_periodic_insights()
    second = await orchestrator.generate_periodic_insights()

    assert len(orchestrator.insights) == 5
    assert {i.id for i in orchestrator.insights} == {i.id for i in second}
    assert not {i.id for i in orchestrator.insights} & {i.id for i in first}


@pytest.mark.asyncio
async def test_periodic_insights_need_memories(orchestrator: Orchestrator):
    assert await orchestrator.generate_periodic_insights() == []


@pytest.mark.asyncio
async def test_insight_job_scheduled(store, prompts, analyzer, clock):
    scheduler = Scheduler(clock=clock)
    orchestrator = build(store, prompts, analyzer, clock, scheduler=scheduler, insight_interval_seconds=600)
    await orchestrator.start()

    job = scheduler.get(INSIGHT_JOB)
    assert job is not None
    assert job.next_run == NOW + timedelta(minutes=10)

    await orchestrator.stop()
    assert scheduler.get(INSIGHT_JOB) is None
