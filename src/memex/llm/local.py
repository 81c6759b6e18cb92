"""Local LLM provider - OpenAI-compatible API for Ollama, LM Studio, etc."""

import time

import httpx

from memex.core.config import Settings, get_settings
from memex.core.errors import ProviderUnavailableError
from memex.core.logging import get_logger, preview
from memex.llm.base import EmbeddingProvider, GeneratedResponse, ProviderType, ResponseProvider
from memex.memory.context import MemoryContext

logger = get_logger("llm.local")

SYSTEM_PREAMBLE = "Relevant memories:\n"


def build_messages(prompt: str, context: MemoryContext | None, max_chars: int) -> list[dict]:
    """Chat messages: memories as system message, prompt as user message."""
    messages = []
    if context is not None and not context.is_empty:
        messages.append({"role": "system", "content": SYSTEM_PREAMBLE + context.to_prompt(max_chars)})
    messages.append({"role": "user", "content": prompt})
    return messages


class LocalProvider(ResponseProvider, EmbeddingProvider):
    """On-device LLM via OpenAI-compatible API (Ollama, LM Studio, vLLM, etc.)."""

    provider_type = ProviderType.LOCAL

    def __init__(
        self,
        settings: Settings | None = None,
        base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = settings or get_settings()
        self.base_url = base_url or settings.local_llm_url
        self.model = settings.local_model
        self.embedding_model = settings.local_embedding_model
        self.confidence = settings.on_device_confidence
        self.max_context_size = settings.max_context_size
        self.timeout = settings.request_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,  # Local models can be slow
                transport=self._transport,
            )
        return self._client

    async def generate(
        self,
        prompt: str,
        context: MemoryContext | None = None,
    ) -> GeneratedResponse:
        """Generate completion via local OpenAI-compatible API."""
        payload = {
            "model": self.model,
            "messages": build_messages(prompt, context, self.max_context_size),
            "stream": False,
        }
        logger.debug(f"Local request: model={self.model}, url={self.base_url}")
        logger.debug(f"Local [user]: {preview(prompt, 100)}")

        started = time.monotonic()
        try:
            response = await self.client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.ConnectError as e:
            logger.warning(f"Local LLM not reachable at {self.base_url}: {e}")
            raise ProviderUnavailableError(f"Local LLM not reachable at {self.base_url}") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"Local LLM error: {e.response.status_code}")
            raise

        content = data["choices"][0]["message"].get("content") or ""
        usage = data.get("usage") or {}
        tokens = usage.get("total_tokens") or (
            usage.get("prompt_tokens", 0) + usage.get("completion_tokens", 0)
        )
        elapsed = time.monotonic() - started
        logger.debug(f"Local response ({tokens} tokens, {elapsed:.2f}s): {preview(content, 200)}")

        return GeneratedResponse(
            content=content,
            confidence=self.confidence,
            model_used=data.get("model", self.model),
            is_on_device=True,
            tokens_used=tokens,
            processing_time=elapsed,
        )

    async def embed(self, text: str) -> list[float]:
        """Embed text via the /embeddings endpoint."""
        try:
            response = await self.client.post(
                "/embeddings", json={"model": self.embedding_model, "input": text}
            )
            response.raise_for_status()
        except httpx.ConnectError as e:
            raise ProviderUnavailableError(f"Local LLM not reachable at {self.base_url}") from e
        data = response.json()
        return [float(x) for x in data["data"][0]["embedding"]]

    async def health_check(self) -> bool:
        """Check if local LLM server is running."""
        try:
            response = await self.client.get("/models")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.debug(f"Local LLM health check failed: {e}")
            return False

    async def list_models(self) -> list[str]:
        """List available models from local server."""
        try:
            response = await self.client.get("/models")
        except httpx.HTTPError as e:
            logger.debug(f"Listing local models failed: {e}")
            return []
        if response.status_code != 200:
            return []
        return [m.get("id", m.get("name", "unknown")) for m in response.json().get("data", [])]

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
