"""
LLM provider interfaces.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from memex.memory.context import MemoryContext


class ProviderType(Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass
class GeneratedResponse:
    """Response from a response provider."""

    content: str
    confidence: float
    model_used: str
    is_on_device: bool
    tokens_used: int = 0
    processing_time: float = 0.0


class ResponseProvider(ABC):
    """Abstract text generation provider."""

    provider_type: ProviderType

    @property
    def is_on_device(self) -> bool:
        return self.provider_type is ProviderType.LOCAL

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        context: "MemoryContext | None" = None,
    ) -> GeneratedResponse:
        """
        Generate a response for a prompt.

        Args:
            prompt: Fully rendered user prompt
            context: Retrieved memories to ground the answer (optional)
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if provider is available."""
        ...

    async def close(self) -> None:
        """Release client resources."""


class EmbeddingProvider(ABC):
    """Abstract text embedding provider."""

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Embed text into a dense vector."""
        ...
