"""Agent orchestrator - perception, reasoning and action around every query."""

import asyncio
import contextlib
import inspect
import string
import time
from collections import Counter, deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta

from memex.agents.awareness import AwarenessAgent
from memex.agents.memory_agent import AgentConfig, MemoryAgent
from memex.agents.privacy import PrivacyAnalyzer
from memex.core.errors import MemexError, NotInitializedError
from memex.core.logging import get_logger, preview
from memex.core.scheduler import JobPriority, Scheduler
from memex.core.types import (
    ActionRecommendation,
    AgentAction,
    AgentPerception,
    AgentReasoning,
    AgentResponse,
    AutonomousAction,
    AutonomousActionType,
    AutonomousTrigger,
    EventType,
    InsightType,
    OrchestratorEvent,
    OrchestratorState,
    ProactiveInsight,
    QueryIntent,
    ResponseAnalysis,
    SystemState,
)
from memex.llm.base import GeneratedResponse
from memex.llm.prompts import parse_json_reply
from memex.memory.base import MemoryKind
from memex.memory.context import MemoryContext
from memex.memory.retrieval import extract_query_terms

logger = get_logger("core.orchestrator")

INSIGHT_JOB = "proactive-insights"

STM_BACKLOG_LIMIT = 50
LONG_QUERY_CHARS = 200
LONG_RESPONSE_CHARS = 100
RECURRING_TOPIC_MIN = 3

INTENT_WORDS: list[tuple[QueryIntent, frozenset[str]]] = [
    (QueryIntent.RECALL, frozenset({"remember", "recall"})),
    (QueryIntent.SEEKING, frozenset({"what", "how", "why"})),
    (QueryIntent.TASK, frozenset({"remind", "schedule"})),
    (QueryIntent.SEARCH, frozenset({"find", "search"})),
]

EventCallback = Callable[[OrchestratorEvent], Awaitable[None] | None]


def classify_intent(query: str) -> QueryIntent:
    words = {w.strip(string.punctuation) for w in query.lower().split()}
    for intent, markers in INTENT_WORDS:
        if words & markers:
            return intent
    return QueryIntent.GENERAL


def detect_triggers(
    query: str, context: MemoryContext, state: SystemState
) -> list[AutonomousTrigger]:
    triggers = []
    if state.stm_count > STM_BACKLOG_LIMIT:
        triggers.append(
            AutonomousTrigger(
                AutonomousActionType.MEMORY_CONSOLIDATION,
                f"{state.stm_count} short-term memories pending",
                0.9,
            )
        )
    if len(query) > LONG_QUERY_CHARS and len(context.entities) < 3:
        triggers.append(
            AutonomousTrigger(
                AutonomousActionType.ENTITY_EXTRACTION,
                "Long query with few known entities",
                0.7,
            )
        )
    if state.orphan_relationships > 0:
        triggers.append(
            AutonomousTrigger(
                AutonomousActionType.DATA_CLEANUP,
                f"{state.orphan_relationships} orphan relationships",
                0.85,
            )
        )
    return triggers


def analyze_response(response: GeneratedResponse) -> ResponseAnalysis:
    return ResponseAnalysis(
        confidence=response.confidence,
        relevance=response.confidence * 0.9,
        completeness=min(1.0, len(response.content) / 200),
        clarity=0.8,
    )


class Orchestrator:
    """Runs the perception -> reasoning -> action loop and autonomous follow-ups.

    Cycles are serialized: the cycle lock owns the state flag and the
    insight list. Observers get copies through properties or events.
    """

    def __init__(
        self,
        agent: MemoryAgent,
        privacy: PrivacyAnalyzer,
        config: AgentConfig | None = None,
        scheduler: Scheduler | None = None,
        notifier: AwarenessAgent | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.agent = agent
        self.privacy = privacy
        self.config = config or agent.config
        self.scheduler = scheduler
        self.notifier = notifier
        self.clock = clock
        self._state = OrchestratorState.IDLE
        self._cycle_lock = asyncio.Lock()
        self._insights: list[ProactiveInsight] = []
        self._history: deque[AgentResponse] = deque(maxlen=self.config.history_size)
        self._subscribers: list[EventCallback] = []

    # Observation

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def insights(self) -> list[ProactiveInsight]:
        return list(self._insights)

    @property
    def history(self) -> list[AgentResponse]:
        return list(self._history)

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register an event callback. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def _emit(self, event_type: EventType, payload: object) -> None:
        event = OrchestratorEvent(type=event_type, payload=payload, timestamp=self.clock())
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Event subscriber failed on {event_type.value}: {e}")

    async def _set_state(self, state: OrchestratorState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        logger.debug(f"State {previous.value} -> {state.value}")
        await self._emit(EventType.STATE_CHANGED, (previous, state))

    # Lifecycle

    async def start(self) -> None:
        if self._state not in (OrchestratorState.IDLE, OrchestratorState.ERROR):
            return
        await self._set_state(OrchestratorState.INITIALIZING)
        try:
            await self.agent.initialize()
        except Exception:
            await self._set_state(OrchestratorState.ERROR)
            raise
        if self.scheduler and self.config.enable_proactive_insights:
            interval = timedelta(seconds=self.config.insight_interval_seconds)
            self.scheduler.schedule(
                INSIGHT_JOB,
                "Proactive insights",
                self.generate_periodic_insights,
                interval=interval,
                priority=JobPriority.LOW,
                delay=interval,
            )
        await self._set_state(OrchestratorState.ACTIVE)
        logger.info("Orchestrator started")

    async def stop(self) -> None:
        if self._state is OrchestratorState.IDLE:
            return
        await self._set_state(OrchestratorState.STOPPING)
        if self.scheduler:
            self.scheduler.cancel(INSIGHT_JOB)
        async with self._cycle_lock:
            await self.agent.shutdown()
        await self._set_state(OrchestratorState.IDLE)
        logger.info("Orchestrator stopped")

    # Query cycle

    async def process_query(self, query: str) -> AgentResponse:
        """Run one full perception -> reasoning -> action cycle."""
        if self._state not in (OrchestratorState.ACTIVE, OrchestratorState.ERROR):
            raise NotInitializedError("orchestrator")

        async with self._cycle_lock:
            await self._set_state(OrchestratorState.PROCESSING)
            try:
                response = await self._cycle(query)
            except asyncio.CancelledError:
                await self._set_state(OrchestratorState.ACTIVE)
                raise
            except MemexError as e:
                logger.warning(f"Query cycle failed: {e}")
                await self._set_state(
                    OrchestratorState.ACTIVE if e.recoverable else OrchestratorState.ERROR
                )
                raise
            except Exception as e:
                logger.error(f"Query cycle failed: {e}")
                await self._set_state(OrchestratorState.ERROR)
                raise
            await self._set_state(OrchestratorState.ACTIVE)

        await self._emit(EventType.RESPONSE, response)
        return response

    async def _cycle(self, query: str) -> AgentResponse:
        started = time.monotonic()
        logger.info(f"Processing query: {preview(query)}")

        perception = await self._perceive(query)
        reasoning = await self._reason(perception)
        action = await self._act(perception, reasoning)

        await self.agent.store_interaction(query, reasoning.response, perception.context)
        await self._record_learning(perception, reasoning, action)

        response = AgentResponse(
            content=reasoning.response.content,
            confidence=reasoning.response.confidence,
            perception=perception,
            reasoning=reasoning,
            action=action,
            processing_time=time.monotonic() - started,
        )
        self._history.append(response)
        return response

    async def _perceive(self, query: str) -> AgentPerception:
        context = await self.agent.retrieve_context(query)
        state = await self.agent.system_state()
        return AgentPerception(
            query=query,
            privacy=self.privacy.analyze(query, context),
            context=context,
            system_state=state,
            intent=classify_intent(query),
            triggers=detect_triggers(query, context, state),
            timestamp=self.clock(),
        )

    async def _reason(self, perception: AgentPerception) -> AgentReasoning:
        response = await self.agent.generate_response(perception.query, perception.context)
        insights = (
            self._derive_insights(perception) if self.config.enable_proactive_insights else []
        )
        return AgentReasoning(
            response=response,
            analysis=analyze_response(response),
            recommendations=self._recommend(perception, response, insights),
            insights=insights,
        )

    def _recommend(
        self,
        perception: AgentPerception,
        response: GeneratedResponse,
        insights: list[ProactiveInsight],
    ) -> list[ActionRecommendation]:
        context = perception.context
        candidates = [ActionRecommendation(t.action, t.reason, t.confidence) for t in perception.triggers]

        if len(response.content) > LONG_RESPONSE_CHARS and len(context.entities) < 2:
            candidates.append(
                ActionRecommendation(
                    AutonomousActionType.ENTITY_EXTRACTION,
                    "Detailed response mentions few known entities",
                    0.7,
                )
            )
        if len(context.entities) >= 2 and not context.relationships:
            candidates.append(
                ActionRecommendation(
                    AutonomousActionType.KNOWLEDGE_GRAPH_UPDATE,
                    "Related entities have no relationships",
                    0.75,
                )
            )
        for insight in insights:
            if insight.actionable and insight.confidence >= 0.8:
                candidates.append(
                    ActionRecommendation(
                        AutonomousActionType.PROACTIVE_NOTIFICATION,
                        insight.title,
                        insight.confidence,
                    )
                )

        # Highest confidence per action type wins
        best: dict[AutonomousActionType, ActionRecommendation] = {}
        for rec in candidates:
            if rec.action not in best or rec.confidence > best[rec.action].confidence:
                best[rec.action] = rec
        return sorted(best.values(), key=lambda r: r.confidence, reverse=True)

    def _derive_insights(self, perception: AgentPerception) -> list[ProactiveInsight]:
        context = perception.context
        now = self.clock()
        insights = []

        texts = [m.content.lower() for m in context.stm]
        texts += [m.event_description.lower() for m in context.episodic]
        counts = Counter(
            term for term in set(extract_query_terms(perception.query))
            for text in texts if term in text
        )
        for term, count in counts.most_common(1):
            if count >= RECURRING_TOPIC_MIN:
                insights.append(
                    ProactiveInsight(
                        type=InsightType.PATTERN,
                        title=f"Recurring topic: {term}",
                        description=f"'{term}' came up in {count} recent memories",
                        confidence=min(0.95, 0.5 + 0.1 * count),
                        actionable=count >= 5,
                        created_at=now,
                    )
                )

        if context.is_empty and perception.intent is QueryIntent.RECALL:
            insights.append(
                ProactiveInsight(
                    type=InsightType.MEMORY_GAP,
                    title="Nothing remembered about this",
                    description=f"No memories matched '{preview(perception.query)}'",
                    confidence=0.6,
                    created_at=now,
                )
            )

        if len(context.entities) >= 2 and not context.relationships:
            names = ", ".join(e.name for e in context.entities[:3])
            insights.append(
                ProactiveInsight(
                    type=InsightType.RELATIONSHIP,
                    title="Possible connection",
                    description=f"{names} appear together but are not linked",
                    confidence=0.7,
                    created_at=now,
                )
            )
        return insights

    async def _act(self, perception: AgentPerception, reasoning: AgentReasoning) -> AgentAction:
        actions: list[AutonomousAction] = []
        if self.config.enable_autonomous_actions:
            threshold = self.config.action_confidence_threshold
            for rec in reasoning.recommendations:
                if rec.confidence < threshold:
                    continue
                # A started action runs to completion even if the query is cancelled
                task = asyncio.ensure_future(self._execute(rec, perception, reasoning))
                try:
                    action = await asyncio.shield(task)
                except asyncio.CancelledError:
                    with contextlib.suppress(Exception):
                        await task
                    raise
                actions.append(action)
                await self._emit(EventType.AUTONOMOUS_ACTION, action)

        if reasoning.insights:
            self._merge_insights(reasoning.insights)
            for insight in reasoning.insights:
                await self._emit(EventType.INSIGHT, insight)

        return AgentAction(response=reasoning.response, actions=actions, insights=reasoning.insights)

    async def _execute(
        self,
        rec: ActionRecommendation,
        perception: AgentPerception,
        reasoning: AgentReasoning,
    ) -> AutonomousAction:
        logger.info(f"Autonomous action: {rec.action.value} ({rec.confidence:.2f}) - {rec.reason}")
        try:
            detail = await self._run_action(rec, perception, reasoning)
            success = True
        except Exception as e:
            logger.warning(f"Autonomous action {rec.action.value} failed: {e}")
            detail, success = str(e), False
        return AutonomousAction(
            action=rec.action,
            confidence=rec.confidence,
            success=success,
            detail=detail,
            executed_at=self.clock(),
        )

    async def _run_action(
        self,
        rec: ActionRecommendation,
        perception: AgentPerception,
        reasoning: AgentReasoning,
    ) -> str:
        if rec.action is AutonomousActionType.MEMORY_CONSOLIDATION:
            report = await self.agent.consolidate_now()
            return (
                f"promoted {len(report.promoted)}, expired {len(report.expired)}, "
                f"failed {len(report.failed)}"
            )
        if rec.action is AutonomousActionType.ENTITY_EXTRACTION:
            text = f"{perception.query}\n{reasoning.response.content}"
            entities = await self.agent.extract_entities(text)
            return f"extracted {len(entities)} entities"
        if rec.action is AutonomousActionType.KNOWLEDGE_GRAPH_UPDATE:
            created = await self.agent.link_entities(perception.context.entities)
            return f"created {created} relationships"
        if rec.action is AutonomousActionType.DATA_CLEANUP:
            removed = await self.agent.cleanup()
            return f"removed {removed} orphan relationships"

        if self.notifier is None:
            raise RuntimeError("No notifier configured")
        delivered = 0
        for insight in reasoning.insights:
            if insight.actionable and insight.confidence >= 0.8:
                if await self.notifier.notify(f"{insight.title}: {insight.description}"):
                    delivered += 1
        return f"delivered {delivered} notifications"

    async def _record_learning(
        self,
        perception: AgentPerception,
        reasoning: AgentReasoning,
        action: AgentAction,
    ) -> None:
        succeeded = sum(1 for a in action.actions if a.success)
        await self.agent.record_learning(
            f"Learning: {perception.intent.value} query '{preview(perception.query)}' "
            f"answered with quality {reasoning.analysis.overall:.2f}; "
            f"{succeeded}/{len(action.actions)} autonomous actions succeeded"
        )

    # Insights

    def _merge_insights(self, new: list[ProactiveInsight]) -> None:
        """Newest first, one per title, bounded by max_proactive_insights."""
        merged: list[ProactiveInsight] = []
        seen: set[str] = set()
        for insight in [*new, *self._insights]:
            if insight.title in seen:
                continue
            seen.add(insight.title)
            merged.append(insight)
        self._insights = merged[: self.config.max_proactive_insights]

    async def generate_periodic_insights(self) -> list[ProactiveInsight]:
        """Ask the provider for themes across recent short-term memories."""
        provider = self.agent.response_provider
        if provider is None:
            return []

        recent = await self.agent.store.fetch(
            MemoryKind.STM, order_by="timestamp", limit=20
        )
        if len(recent) < RECURRING_TOPIC_MIN:
            return []

        prompt = self.agent.prompts.render(
            "insights",
            memories="\n".join(f"- {m.content}" for m in recent),
            limit=3,
        )
        reply = await provider.generate(prompt)
        try:
            items = parse_json_reply(reply.content)
        except ValueError as e:
            logger.warning(f"Insight generation returned invalid JSON: {e}")
            return []
        if not isinstance(items, list):
            return []

        now = self.clock()
        insights = [
            ProactiveInsight(
                type=InsightType.THEME,
                title=str(item.get("title", "")).strip(),
                description=str(item.get("description", "")).strip(),
                confidence=max(0.0, min(1.0, float(item.get("confidence", 0.5)))),
                actionable=bool(item.get("actionable", False)),
                created_at=now,
            )
            for item in items
            if isinstance(item, dict) and item.get("title")
        ]

        async with self._cycle_lock:
            self._merge_insights(insights)
        for insight in insights:
            await self._emit(EventType.INSIGHT, insight)
        logger.info(f"Generated {len(insights)} periodic insights")
        return insights
