"""
Integration tests against a running on-device LLM server.

Run with: pytest tests/integration -m integration -v
Requires: an OpenAI-compatible server at MEMEX_LOCAL_LLM_URL
"""

import pytest

from memex.agents.privacy import PrivacyAnalyzer
from memex.core.config import get_settings
from memex.llm.local import LocalProvider
from memex.llm.router import create_default_router

# Mark all tests in this module as integration tests
pytestmark = pytest.mark.integration


@pytest.fixture
async def provider():
    provider = LocalProvider(get_settings())
    if not await provider.health_check():
        await provider.close()
        pytest.skip("Local LLM server not running")
    yield provider
    await provider.close()


@pytest.mark.asyncio
async def test_local_completion(provider):
    """Local server answers a short prompt."""
    response = await provider.generate("Reply with the single word: pong")
    assert response.content
    assert response.is_on_device


@pytest.mark.asyncio
async def test_local_embedding(provider):
    """Local server returns a non-empty embedding."""
    vector = await provider.embed("hello world")
    assert len(vector) > 0


@pytest.mark.asyncio
async def test_router_keeps_private_query_local(provider):
    """A personal query is answered on-device."""
    router = create_default_router(get_settings(), PrivacyAnalyzer())
    try:
        response = await router.generate("What did my doctor tell me?")
    finally:
        await router.close()
    assert response.is_on_device
