"""Shared fixtures: temporary stores, scripted providers, a controllable clock."""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from memex.agents.privacy import PrivacyAnalyzer
from memex.llm.base import EmbeddingProvider, GeneratedResponse, ProviderType, ResponseProvider
from memex.llm.prompts import PromptLibrary
from memex.memory.context import MemoryContext
from memex.memory.store import SQLiteMemoryStore

NOW = datetime(2026, 3, 14, 12, 0, 0)


class Clock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class ScriptedProvider(ResponseProvider):
    """Response provider answering from a function of the prompt."""

    provider_type = ProviderType.LOCAL

    def __init__(
        self,
        reply: str | Callable[[str], str] = "ok",
        confidence: float = 0.8,
        error: Exception | None = None,
    ):
        self.reply = reply
        self.confidence = confidence
        self.error = error
        self.prompts: list[str] = []
        self.contexts: list[MemoryContext | None] = []

    async def generate(self, prompt: str, context: MemoryContext | None = None) -> GeneratedResponse:
        self.prompts.append(prompt)
        self.contexts.append(context)
        if self.error is not None:
            raise self.error
        content = self.reply(prompt) if callable(self.reply) else self.reply
        return GeneratedResponse(
            content=content,
            confidence=self.confidence,
            model_used="scripted",
            is_on_device=True,
        )

    async def health_check(self) -> bool:
        return self.error is None


class GatedProvider(ScriptedProvider):
    """Scripted provider that holds matching prompts until the gate opens."""

    def __init__(self, reply: str | Callable[[str], str] = "ok", match: str = ""):
        super().__init__(reply)
        self.match = match
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def generate(self, prompt: str, context: MemoryContext | None = None) -> GeneratedResponse:
        if self.match in prompt:
            self.started.set()
            await self.gate.wait()
        return await super().generate(prompt, context)


class KeywordEmbedder(EmbeddingProvider):
    """Deterministic embeddings: one dimension per vocabulary word."""

    def __init__(self, vocabulary: list[str], error: Exception | None = None):
        self.vocabulary = vocabulary
        self.error = error
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        lowered = text.lower()
        return [1.0 if word in lowered else 0.0 for word in self.vocabulary]


@pytest.fixture
async def store(tmp_path: Path):
    """Create a temporary memory store."""
    store = SQLiteMemoryStore(tmp_path / "test.db")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def prompts() -> PromptLibrary:
    return PromptLibrary()


@pytest.fixture
def analyzer() -> PrivacyAnalyzer:
    return PrivacyAnalyzer()
