"""Consolidation engine - promotes aged short-term memories to long-term or expires them."""

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from memex.core.errors import ConsolidationFailedError, ProviderUnavailableError
from memex.core.logging import get_logger, preview
from memex.llm.base import ResponseProvider
from memex.llm.prompts import PromptLibrary
from memex.memory.base import (
    Before,
    LongTermMemory,
    LTMCategory,
    MemoryKind,
    MemoryStore,
    MemoryType,
    ShortTermMemory,
)

logger = get_logger("agents.consolidation")

PROMOTE_MARKER = "PROMOTE_TO_LTM"

CATEGORY_BY_TYPE = {
    MemoryType.EPISODIC: LTMCategory.EXPERIENTIAL,
    MemoryType.SEMANTIC: LTMCategory.FACTUAL,
    MemoryType.PROCEDURAL: LTMCategory.PROCEDURAL,
    MemoryType.WORKING: LTMCategory.CONCEPTUAL,
}


@dataclass
class ConsolidationReport:
    """Outcome of one consolidation sweep."""

    started_at: datetime
    finished_at: datetime | None = None
    examined: list[str] = field(default_factory=list)
    promoted: list[str] = field(default_factory=list)
    expired: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errors: list[ConsolidationFailedError] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return not self.failed


@dataclass
class Decision:
    promote: bool
    summary: str = ""


def parse_decision(content: str) -> Decision:
    """PROMOTE_TO_LTM[: summary] promotes; anything else expires."""
    if PROMOTE_MARKER not in content:
        return Decision(promote=False)
    after = content.split(PROMOTE_MARKER, 1)[1].lstrip(" :\t")
    summary = after.splitlines()[0].strip() if after else ""
    return Decision(promote=True, summary=summary)


def category_for(stm: ShortTermMemory) -> LTMCategory:
    if "health" in (t.lower() for t in stm.context_tags):
        return LTMCategory.HEALTH
    return CATEGORY_BY_TYPE[stm.memory_type]


class ConsolidationEngine:
    """Sweeps aged STM and asks the response provider what to keep.

    Each STM is decided and committed on its own, so one failure never
    blocks the rest and a retried sweep never double-promotes.
    """

    def __init__(
        self,
        store: MemoryStore,
        provider: ResponseProvider | None,
        prompts: PromptLibrary,
        age_hours: float = 24.0,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.provider = provider
        self.prompts = prompts
        self.age = timedelta(hours=age_hours)
        self.clock = clock
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def run(self) -> ConsolidationReport:
        """Run one sweep over every STM older than the consolidation age."""
        if self.provider is None:
            raise ProviderUnavailableError("Consolidation needs a response provider")

        async with self._lock:
            now = self.clock()
            report = ConsolidationReport(started_at=now)
            candidates = await self.store.fetch(
                MemoryKind.STM,
                where=Before("timestamp", now - self.age),
                order_by="timestamp",
                descending=False,
            )
            logger.info(f"Consolidation: {len(candidates)} STM older than {self.age}")

            for stm in candidates:
                report.examined.append(stm.id)
                # Once started, an item finishes even if the sweep is cancelled
                task = asyncio.ensure_future(self._consolidate(stm, now))
                try:
                    promoted = await asyncio.shield(task)
                except asyncio.CancelledError:
                    # Hold the lock until the item has committed or failed
                    with contextlib.suppress(Exception):
                        await task
                    raise
                except Exception as e:
                    error = ConsolidationFailedError(stm.id, str(e))
                    logger.warning(str(error))
                    report.failed.append(stm.id)
                    report.errors.append(error)
                    continue
                if promoted is None:
                    continue
                (report.promoted if promoted else report.expired).append(stm.id)

            report.finished_at = self.clock()

        logger.info(
            f"Consolidation: promoted {len(report.promoted)}, expired {len(report.expired)}, "
            f"failed {len(report.failed)}"
        )
        return report

    async def _consolidate(self, stm: ShortTermMemory, now: datetime) -> bool | None:
        """Decide and apply one item. Returns True when promoted, None when already gone."""
        prompt = self.prompts.render(
            "consolidation",
            content=stm.content,
            memory_type=stm.memory_type.value,
            importance=stm.importance,
            access_count=stm.access_count,
            age_hours=(now - stm.timestamp).total_seconds() / 3600,
        )
        response = await self.provider.generate(prompt)
        decision = parse_decision(response.content)

        async with self.store.transaction():
            if await self.store.get(MemoryKind.STM, stm.id) is None:
                logger.debug(f"STM {stm.id} already consolidated, skipping")
                return None
            if decision.promote:
                ltm = LongTermMemory(
                    content=stm.content,
                    summary=decision.summary or stm.content[:100],
                    category=category_for(stm),
                    importance=stm.importance,
                    source_stm_ids=[stm.id],
                    related_entity_ids=list(stm.related_entity_ids),
                    related_concepts=list(stm.context_tags),
                    retrieval_cues=list(stm.context_tags),
                    last_accessed=now,
                    created_at=now,
                    embedding=stm.embedding,
                    embedding_generated_at=stm.embedding_generated_at,
                )
                await self.store.insert(ltm)
                logger.debug(f"Promoted STM {stm.id} -> LTM {ltm.id}: {preview(ltm.summary)}")
            else:
                logger.debug(f"Expired STM {stm.id}")
            await self.store.delete(stm)

        return decision.promote
