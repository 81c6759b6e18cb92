"""
Agents module - memory-side workers.

Agents:
- privacy: Privacy classification and context filtering
- consolidation: STM -> LTM promotion sweeps
- memory_agent: Ingestion, answering and interaction storage
- awareness: Proactive notifications
- session: Per-session query debouncing
"""

from memex.agents.awareness import AwarenessAgent, Notification
from memex.agents.consolidation import ConsolidationEngine, ConsolidationReport
from memex.agents.privacy import PrivacyAnalysis, PrivacyAnalyzer, PrivacyLevel
from memex.agents.session import QueryDebouncer

__all__ = [
    "AwarenessAgent",
    "ConsolidationEngine",
    "ConsolidationReport",
    "Notification",
    "PrivacyAnalysis",
    "PrivacyAnalyzer",
    "PrivacyLevel",
    "QueryDebouncer",
]
