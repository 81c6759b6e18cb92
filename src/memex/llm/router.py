"""Privacy router - keeps personal queries on-device, lets public ones go remote."""

from memex.agents.privacy import PrivacyAnalyzer, PrivacyLevel
from memex.core.errors import ProviderUnavailableError
from memex.core.logging import get_logger
from memex.llm.base import GeneratedResponse, ProviderType, ResponseProvider
from memex.memory.context import MemoryContext

logger = get_logger("llm.router")


class PrivacyRouter(ResponseProvider):
    """Routes generation to the local or remote provider by privacy level.

    Anything that requires on-device processing goes to the local provider
    or nowhere. Public queries prefer the remote provider (with only public
    context attached) and fall back to local.
    """

    provider_type = ProviderType.LOCAL

    def __init__(
        self,
        analyzer: PrivacyAnalyzer,
        local: ResponseProvider | None = None,
        remote: ResponseProvider | None = None,
    ):
        self.analyzer = analyzer
        self.local = local
        self.remote = remote

    def select(self, prompt: str, context: MemoryContext | None) -> tuple[ResponseProvider, MemoryContext | None]:
        """Pick a provider and the context it may see."""
        analysis = self.analyzer.analyze(context.user_query if context else prompt, context)

        if self.analyzer.should_use_on_device(analysis) or self.remote is None:
            if self.local is None:
                raise ProviderUnavailableError(
                    f"No on-device provider for {analysis.level.value} request"
                )
            return self.local, context

        if context is not None:
            context = self.analyzer.filter_context(context, PrivacyLevel.CONTEXTUAL)
        return self.remote, context

    async def generate(
        self,
        prompt: str,
        context: MemoryContext | None = None,
    ) -> GeneratedResponse:
        provider, routed_context = self.select(prompt, context)
        logger.debug(f"Routing to {provider.provider_type.value} provider")
        return await provider.generate(prompt, routed_context)

    async def health_check(self) -> bool:
        """Healthy when the on-device provider is (remote is optional)."""
        if self.local is None:
            return False
        return await self.local.health_check()

    async def close(self) -> None:
        for provider in (self.local, self.remote):
            if provider is not None:
                await provider.close()


def create_default_router(settings, analyzer: PrivacyAnalyzer) -> PrivacyRouter:
    """Router over the configured local provider and, if set, a remote model."""
    from memex.llm.local import LocalProvider
    from memex.llm.remote import RemoteProvider

    remote = RemoteProvider(settings) if settings.remote_model else None
    return PrivacyRouter(analyzer, local=LocalProvider(settings), remote=remote)
