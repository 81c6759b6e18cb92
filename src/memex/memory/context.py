"""Query-scoped memory aggregate."""

from dataclasses import dataclass, field
from datetime import datetime

from memex.memory.base import (
    Entity,
    EpisodicMemory,
    LongTermMemory,
    Note,
    Relationship,
    ShortTermMemory,
)


@dataclass
class MemoryContext:
    """Memories gathered for one query. Built fresh per query, never persisted."""

    user_query: str
    timestamp: datetime = field(default_factory=datetime.now)
    contains_personal_data: bool = False
    stm: list[ShortTermMemory] = field(default_factory=list)
    ltm: list[LongTermMemory] = field(default_factory=list)
    episodic: list[EpisodicMemory] = field(default_factory=list)
    entities: list[Entity] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)
    notes: list[Note] = field(default_factory=list)

    # Retrieval diagnostics
    semantic_requested: bool = False
    semantic_applied: bool = False
    degraded_reason: str | None = None

    @property
    def is_degraded(self) -> bool:
        """Semantic ranking was asked for but keyword-only was used."""
        return self.semantic_requested and not self.semantic_applied

    @property
    def total_items(self) -> int:
        return (
            len(self.stm)
            + len(self.ltm)
            + len(self.episodic)
            + len(self.entities)
            + len(self.relationships)
            + len(self.notes)
        )

    @property
    def is_empty(self) -> bool:
        return self.total_items == 0

    def summary(self) -> dict[str, int]:
        return {
            "stm": len(self.stm),
            "ltm": len(self.ltm),
            "episodic": len(self.episodic),
            "entities": len(self.entities),
            "relationships": len(self.relationships),
            "notes": len(self.notes),
        }

    def to_prompt(self, max_chars: int = 8192) -> str:
        """Render memories as prompt context, trimmed to max_chars."""
        sections: list[str] = []
        if self.ltm:
            sections.append("## Long-term memories")
            sections.extend(f"- {m.summary or m.content}" for m in self.ltm)
        if self.stm:
            sections.append("## Recent memories")
            sections.extend(f"- {m.content}" for m in self.stm)
        if self.episodic:
            sections.append("## Events")
            sections.extend(
                f"- [{m.timestamp:%Y-%m-%d}] {m.event_description}" for m in self.episodic
            )
        if self.entities:
            sections.append("## Entities")
            sections.extend(
                f"- {e.name} ({e.type.value})" + (f": {e.description}" if e.description else "")
                for e in self.entities
            )
        if self.notes:
            sections.append("## Notes")
            sections.extend(f"- {n.summary or n.original_text}" for n in self.notes)

        text = "\n".join(sections) if sections else "(no relevant memories)"
        if len(text) > max_chars:
            text = text[: max_chars - 3] + "..."
        return text
