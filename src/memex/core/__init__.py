"""
Core module - orchestration, scheduling, configuration, shared types.

Components:
- config: Settings management via pydantic-settings
- errors: Typed error taxonomy
- types: Perception/reasoning/action records
- scheduler: Cancellable periodic background jobs
- orchestrator: Perception-reasoning-action loop
- logging: Structured logging setup
"""

from memex.core.config import Settings
from memex.core.errors import (
    ConsolidationFailedError,
    GenerationFailedError,
    MemexError,
    NotInitializedError,
    ProviderUnavailableError,
    RetrievalFailedError,
)

__all__ = [
    "ConsolidationFailedError",
    "GenerationFailedError",
    "MemexError",
    "NotInitializedError",
    "ProviderUnavailableError",
    "RetrievalFailedError",
    "Settings",
]
