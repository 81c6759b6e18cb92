"""
Memex - memory retrieval and decision core for a personal notes assistant.

Package structure:
- core: Orchestrator, scheduler, config, errors, shared types
- memory: Memory records, SQLite store, hybrid retrieval
- agents: Memory agent, consolidation, privacy analysis, awareness
- llm: Response and embedding provider abstraction
"""

__version__ = "0.1.0"
