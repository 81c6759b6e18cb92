"""
Shared type definitions.

Records chained through one perception -> reasoning -> action cycle.
They live only in the orchestrator's bounded history and are never stored.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from memex.agents.privacy import PrivacyAnalysis
from memex.llm.base import GeneratedResponse
from memex.memory.context import MemoryContext


class QueryIntent(Enum):
    RECALL = "recall"
    SEEKING = "seeking"
    TASK = "task"
    SEARCH = "search"
    GENERAL = "general"


class AutonomousActionType(Enum):
    MEMORY_CONSOLIDATION = "memory_consolidation"
    ENTITY_EXTRACTION = "entity_extraction"
    KNOWLEDGE_GRAPH_UPDATE = "knowledge_graph_update"
    PROACTIVE_NOTIFICATION = "proactive_notification"
    DATA_CLEANUP = "data_cleanup"


class OrchestratorState(Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    PROCESSING = "processing"
    STOPPING = "stopping"
    ERROR = "error"


class InsightType(Enum):
    PATTERN = "pattern"
    MEMORY_GAP = "memory_gap"
    RELATIONSHIP = "relationship"
    THEME = "theme"


@dataclass
class SystemState:
    """Store counts at one point in time."""

    stm_count: int = 0
    ltm_count: int = 0
    episodic_count: int = 0
    entity_count: int = 0
    relationship_count: int = 0
    note_count: int = 0
    orphan_relationships: int = 0
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AutonomousTrigger:
    action: AutonomousActionType
    reason: str
    confidence: float


@dataclass
class ActionRecommendation:
    action: AutonomousActionType
    reason: str
    confidence: float


@dataclass
class AutonomousAction:
    """Outcome of one executed recommendation."""

    action: AutonomousActionType
    confidence: float
    success: bool
    detail: str = ""
    executed_at: datetime = field(default_factory=datetime.now)


@dataclass
class ProactiveInsight:
    type: InsightType
    title: str
    description: str
    confidence: float
    actionable: bool = False
    created_at: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: uuid4().hex)


@dataclass
class ResponseAnalysis:
    """Heuristic quality estimate of a generated response."""

    confidence: float
    relevance: float
    completeness: float
    clarity: float

    @property
    def overall(self) -> float:
        return (self.confidence + self.relevance + self.completeness + self.clarity) / 4


@dataclass
class AgentPerception:
    query: str
    privacy: PrivacyAnalysis
    context: MemoryContext
    system_state: SystemState
    intent: QueryIntent
    triggers: list[AutonomousTrigger] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class AgentReasoning:
    response: GeneratedResponse
    analysis: ResponseAnalysis
    recommendations: list[ActionRecommendation] = field(default_factory=list)
    insights: list[ProactiveInsight] = field(default_factory=list)


@dataclass
class AgentAction:
    response: GeneratedResponse
    actions: list[AutonomousAction] = field(default_factory=list)
    insights: list[ProactiveInsight] = field(default_factory=list)


@dataclass
class AgentResponse:
    """Everything one orchestrated query produced."""

    content: str
    confidence: float
    perception: AgentPerception
    reasoning: AgentReasoning
    action: AgentAction
    processing_time: float = 0.0
    id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def autonomous_actions(self) -> list[AutonomousAction]:
        return self.action.actions


class EventType(Enum):
    STATE_CHANGED = "state_changed"
    INSIGHT = "insight"
    AUTONOMOUS_ACTION = "autonomous_action"
    RESPONSE = "response"


@dataclass
class OrchestratorEvent:
    type: EventType
    payload: Any
    timestamp: datetime = field(default_factory=datetime.now)
