"""Remote LLM provider - LiteLLM for any hosted model."""

import time

import litellm
from litellm import acompletion

from memex.core.config import Settings, get_settings
from memex.core.errors import ProviderUnavailableError
from memex.core.logging import get_logger
from memex.llm.base import GeneratedResponse, ProviderType, ResponseProvider
from memex.llm.local import build_messages
from memex.memory.context import MemoryContext

logger = get_logger("llm.remote")

# Disable LiteLLM's verbose logging
litellm.suppress_debug_info = True


class RemoteProvider(ResponseProvider):
    """Off-device generation through LiteLLM's unified completion API."""

    provider_type = ProviderType.REMOTE

    def __init__(self, settings: Settings | None = None, model: str | None = None):
        settings = settings or get_settings()
        self.model = model or settings.remote_model
        self.api_key = settings.remote_api_key or None
        self.confidence = settings.remote_confidence
        self.max_context_size = settings.max_context_size
        self.timeout = settings.request_timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.model)

    async def generate(
        self,
        prompt: str,
        context: MemoryContext | None = None,
    ) -> GeneratedResponse:
        if not self.is_configured:
            raise ProviderUnavailableError("No remote model configured")

        params = {
            "model": self.model,
            "messages": build_messages(prompt, context, self.max_context_size),
            "timeout": self.timeout,
        }
        if self.api_key:
            params["api_key"] = self.api_key

        logger.debug(f"LiteLLM request: model={self.model}, messages={len(params['messages'])}")

        started = time.monotonic()
        try:
            response = await acompletion(**params)
        except Exception as e:
            logger.error(f"LiteLLM error for {self.model}: {e}")
            raise

        content = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        tokens = usage.total_tokens if usage else 0
        elapsed = time.monotonic() - started
        logger.debug(f"LiteLLM response: model={response.model}, tokens={tokens}")

        return GeneratedResponse(
            content=content,
            confidence=self.confidence,
            model_used=response.model or self.model,
            is_on_device=False,
            tokens_used=tokens,
            processing_time=elapsed,
        )

    async def health_check(self) -> bool:
        """Configured remote models are assumed reachable; failures surface on use."""
        return self.is_configured
