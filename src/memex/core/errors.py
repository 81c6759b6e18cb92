"""
Error taxonomy.

Recoverable errors leave the orchestrator ready for the next query;
everything else parks it in the error state until a cycle succeeds.
"""


class MemexError(Exception):
    """Base for all typed memex errors."""

    recoverable = False


class NotInitializedError(MemexError):
    """Operation invoked before startup completed."""

    recoverable = True

    def __init__(self, component: str = "memory agent"):
        super().__init__(f"{component} is not initialized")
        self.component = component


class ProviderUnavailableError(MemexError):
    """Response or embedding provider missing or not ready."""

    recoverable = True


class RetrievalFailedError(MemexError):
    """Memory store fetch failed; the query is aborted."""


class ConsolidationFailedError(MemexError):
    """A single STM item could not be consolidated."""

    recoverable = True

    def __init__(self, item_id: str, reason: str):
        super().__init__(f"consolidation of {item_id} failed: {reason}")
        self.item_id = item_id
        self.reason = reason


class GenerationFailedError(MemexError):
    """Response provider raised while generating an answer."""

    recoverable = True
