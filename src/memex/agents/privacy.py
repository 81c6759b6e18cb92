"""
Privacy analyzer - classifies how personal a text or memory context is.

Pure and deterministic: the same input always yields the same analysis.
The level decides whether processing may leave the device.
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from memex.core.logging import get_logger, preview
from memex.memory.base import (
    Entity,
    EpisodicMemory,
    LongTermMemory,
    Note,
    Relationship,
    ShortTermMemory,
)
from memex.memory.context import MemoryContext

logger = get_logger("agents.privacy")


class PrivacyLevel(Enum):
    PUBLIC = "public"
    CONTEXTUAL = "contextual"
    PERSONAL = "personal"
    SENSITIVE = "sensitive"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    @property
    def requires_on_device(self) -> bool:
        return self is not PrivacyLevel.PUBLIC

    @property
    def max_context_size(self) -> int:
        return _MAX_CONTEXT[self]


_LEVEL_ORDER = [
    PrivacyLevel.PUBLIC,
    PrivacyLevel.CONTEXTUAL,
    PrivacyLevel.PERSONAL,
    PrivacyLevel.SENSITIVE,
]

_MAX_CONTEXT = {
    PrivacyLevel.PUBLIC: 32768,
    PrivacyLevel.CONTEXTUAL: 16384,
    PrivacyLevel.PERSONAL: 8192,
    PrivacyLevel.SENSITIVE: 4096,
}

# Per-record contribution to a context's privacy score
_CONTEXT_WEIGHTS = {
    PrivacyLevel.PUBLIC: 0.0,
    PrivacyLevel.CONTEXTUAL: 0.1,
    PrivacyLevel.PERSONAL: 0.3,
    PrivacyLevel.SENSITIVE: 0.5,
}
EPISODIC_CONTEXT_WEIGHT = 0.4
ENTITY_CONTEXT_WEIGHT = 0.05

PRONOUNS = ("i", "me", "my", "mine", "myself", "we", "us", "our", "ours")
VERBS = ("remember", "recall", "forget", "experienced", "felt", "thought", "believe", "know")
FAMILY = (
    "mom", "dad", "mother", "father", "sister", "brother", "family",
    "spouse", "wife", "husband", "child", "daughter", "son",
)
LOCATIONS = ("home", "work", "office", "school", "house", "apartment", "address", "street", "city")
HEALTH = ("health", "doctor", "medication", "symptom", "illness", "treatment", "hospital", "clinic")
FINANCIAL = (
    "money", "bank", "account", "credit", "loan", "income", "salary", "payment", "investment",
)
TEMPORAL = ("yesterday", "today", "tomorrow", "last week", "this morning", "tonight")

HEALTH_RISK = "health_information"
FINANCIAL_RISK = "financial_information"
CONTEXT_RISK = "personal_memory_context"


def _pattern(terms: tuple[str, ...]) -> dict[str, re.Pattern[str]]:
    return {t: re.compile(rf"\b{re.escape(t)}\b") for t in terms}


_PATTERNS = {
    name: _pattern(terms)
    for name, terms in {
        "pronoun": PRONOUNS,
        "verb": VERBS,
        "family": FAMILY,
        "location": LOCATIONS,
        "health": HEALTH,
        "financial": FINANCIAL,
        "temporal": TEMPORAL,
    }.items()
}

_PLACEHOLDERS = {
    **dict.fromkeys(PRONOUNS, "[PERSONAL]"),
    **dict.fromkeys(FAMILY, "[FAMILY]"),
    **dict.fromkeys(LOCATIONS, "[LOCATION]"),
}
# One pass, so a placeholder is never rewritten by a later term
_SANITIZE_RX = re.compile(
    r"\b(" + "|".join(re.escape(t) for t in _PLACEHOLDERS) + r")\b", re.IGNORECASE
)


@dataclass
class PrivacyAnalysis:
    level: PrivacyLevel
    personal_indicators: list[str] = field(default_factory=list)
    sensitive_entities: list[str] = field(default_factory=list)
    risk_factors: list[str] = field(default_factory=list)
    confidence: float = 1.0
    score: float = 0.0

    @property
    def requires_on_device(self) -> bool:
        return self.level.requires_on_device


class PrivacyAnalyzer:
    """Keyword-weighted privacy classifier."""

    def analyze(self, text: str, context: MemoryContext | None = None) -> PrivacyAnalysis:
        """Classify a query, optionally together with its retrieved context."""
        normalized = text.lower()
        found = {
            name: [term for term, rx in patterns.items() if rx.search(normalized)]
            for name, patterns in _PATTERNS.items()
        }

        personal = found["pronoun"] + found["verb"] + found["temporal"]
        sensitive = found["family"] + found["location"] + found["health"] + found["financial"]
        risks: list[str] = []

        score = (
            len(found["pronoun"]) * 0.3
            + len(found["verb"]) * 0.2
            + len(found["family"]) * 0.4
            + len(found["location"]) * 0.3
            + len(found["health"]) * 0.6
            + len(found["financial"]) * 0.5
            + len(found["temporal"]) * 0.2
        )
        if found["health"]:
            risks.append(HEALTH_RISK)
        if found["financial"]:
            risks.append(FINANCIAL_RISK)

        if context is not None:
            context_score = self._context_score(context)
            score += context_score
            if context_score > 0.3:
                risks.append(CONTEXT_RISK)

        analysis = PrivacyAnalysis(
            level=self._level_for(score, risks),
            personal_indicators=personal,
            sensitive_entities=sensitive,
            risk_factors=risks,
            confidence=min(1.0, score),
            score=score,
        )
        logger.debug(
            f"Privacy of '{preview(text)}': {analysis.level.value} (score={score:.2f})"
        )
        return analysis

    def analyze_record(self, record: Any) -> PrivacyAnalysis:
        """Classify a stored record, adjusting for where its content came from."""
        if isinstance(record, ShortTermMemory):
            base = self.analyze(record.content)
            sources = {t.lower() for t in record.context_tags} | {record.memory_type.value}
        elif isinstance(record, LongTermMemory):
            base = self.analyze(record.searchable_text)
            sources = {record.category.value}
        elif isinstance(record, EpisodicMemory):
            base = self.analyze(record.event_description)
            sources = {c.lower() for c in record.contextual_cues}
        elif isinstance(record, Note):
            base = self.analyze(record.searchable_text)
            sources = set()
        elif isinstance(record, (Entity, Relationship)):
            return self.analyze(record.searchable_text)
        else:
            return PrivacyAnalysis(level=PrivacyLevel.PUBLIC)

        level = base.level
        risks = list(base.risk_factors)
        if sources & {"transcription", "voice"}:
            risks.append("voice_data")
            if level is PrivacyLevel.CONTEXTUAL:
                level = PrivacyLevel.PERSONAL
        if "health" in sources:
            risks.append("health_data_source")
            level = PrivacyLevel.SENSITIVE
        return replace(base, level=level, risk_factors=risks)

    def _context_score(self, context: MemoryContext) -> float:
        score = 0.0
        for memory in [*context.stm, *context.ltm]:
            score += _CONTEXT_WEIGHTS[self.analyze_record(memory).level]
        score += EPISODIC_CONTEXT_WEIGHT * len(context.episodic)
        score += ENTITY_CONTEXT_WEIGHT * len(context.entities)
        return min(1.0, score)

    def _level_for(self, score: float, risks: list[str]) -> PrivacyLevel:
        if HEALTH_RISK in risks or FINANCIAL_RISK in risks:
            return PrivacyLevel.SENSITIVE
        if score < 0.2:
            return PrivacyLevel.PUBLIC
        if score < 0.5:
            return PrivacyLevel.CONTEXTUAL
        if score < 0.8:
            return PrivacyLevel.PERSONAL
        return PrivacyLevel.SENSITIVE

    # Filtering

    def filter_context(self, context: MemoryContext, target_level: PrivacyLevel) -> MemoryContext:
        """Strip what a target privacy level may not see. Sensitive returns the input as-is."""
        if target_level is PrivacyLevel.SENSITIVE:
            return context

        if target_level is PrivacyLevel.PUBLIC:
            return MemoryContext(
                user_query=self.sanitize(context.user_query),
                timestamp=context.timestamp,
                contains_personal_data=False,
                semantic_requested=context.semantic_requested,
                semantic_applied=context.semantic_applied,
                degraded_reason=context.degraded_reason,
            )

        if target_level is PrivacyLevel.CONTEXTUAL:
            entities = [
                e for e in context.entities
                if self.analyze_record(e).level is PrivacyLevel.PUBLIC
            ]
            kept = {e.id for e in entities}
            return replace(
                context,
                contains_personal_data=False,
                stm=[],
                ltm=[],
                episodic=[],
                notes=[],
                entities=entities,
                relationships=[
                    r for r in context.relationships
                    if r.subject_id in kept and r.object_id in kept
                ],
            )

        def allowed(record: Any) -> bool:
            return self.analyze_record(record).level is not PrivacyLevel.SENSITIVE

        return replace(
            context,
            contains_personal_data=True,
            stm=[m for m in context.stm if allowed(m)],
            ltm=[m for m in context.ltm if allowed(m)],
            notes=[n for n in context.notes if allowed(n)],
            episodic=[],
            entities=list(context.entities),
            relationships=list(context.relationships),
        )

    def sanitize(self, query: str) -> str:
        """Replace pronouns, family and location words with placeholders."""
        return _SANITIZE_RX.sub(lambda m: _PLACEHOLDERS[m.group(0).lower()], query)

    # Advice

    def should_use_on_device(self, analysis: PrivacyAnalysis) -> bool:
        return (
            analysis.requires_on_device
            or HEALTH_RISK in analysis.risk_factors
            or FINANCIAL_RISK in analysis.risk_factors
        )

    def recommended_context_size(self, analysis: PrivacyAnalysis) -> int:
        return analysis.level.max_context_size

    def report(self, analysis: PrivacyAnalysis) -> str:
        lines = [
            "Privacy Analysis Report:",
            f"Level: {analysis.level.value}",
            f"Requires On-Device: {analysis.requires_on_device}",
            f"Confidence: {analysis.confidence:.2f}",
        ]
        if analysis.personal_indicators:
            lines.append(f"Personal Indicators: {', '.join(analysis.personal_indicators)}")
        if analysis.sensitive_entities:
            lines.append(f"Sensitive Entities: {', '.join(analysis.sensitive_entities)}")
        if analysis.risk_factors:
            lines.append(f"Risk Factors: {', '.join(analysis.risk_factors)}")
        return "\n".join(lines)
