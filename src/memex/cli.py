"""
CLI entry point.

Commands:
- init: Initialize data directory and database
- query <text>: Answer a question from memory
- ingest <kind> <text>: Store a transcription, note, health_data or user_interaction
- consolidate: Run one consolidation sweep now
- chat: Interactive query loop
- health: Check LLM provider connectivity

Flags:
- --debug: Enable debug logging
"""

import asyncio
import contextlib
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

from memex.core.config import Settings, get_settings
from memex.core.errors import MemexError
from memex.core.logging import get_logger, setup_logging

if TYPE_CHECKING:
    from memex.agents.memory_agent import MemoryAgent
    from memex.agents.session import QueryDebouncer
    from memex.core.orchestrator import Orchestrator
    from memex.llm.router import PrivacyRouter
    from memex.memory.store import SQLiteMemoryStore

USAGE = """Usage: memex [--debug] <command> [args]
Commands: init, query <text>, ingest <kind> <text>, consolidate, chat, health
Ingest kinds: transcription, note, health_data, user_interaction
Flags: --debug (enable debug logging)"""

CHAT_SESSION = "cli"


def main() -> int:
    """Main entry point."""
    settings = get_settings()
    args = list(sys.argv[1:])

    # Parse --debug flag (enables verbose DEBUG traces)
    debug_mode = "--debug" in args
    if debug_mode:
        args.remove("--debug")

    log_level = logging.DEBUG if debug_mode else getattr(logging, settings.log_level.upper(), logging.INFO)
    setup_logging(level=log_level, log_file=settings.log_path)
    logger = get_logger("cli")

    if not args:
        print(USAGE)
        return 1

    command, rest = args[0], args[1:]

    if command == "init":
        return asyncio.run(_init(settings))

    if command == "query":
        if not rest:
            print("Usage: memex query <text>")
            return 1
        return asyncio.run(_query(settings, " ".join(rest)))

    if command == "ingest":
        if len(rest) < 2:
            print("Usage: memex ingest <kind> <text>")
            return 1
        return asyncio.run(_ingest(settings, rest[0], " ".join(rest[1:])))

    if command == "consolidate":
        return asyncio.run(_consolidate(settings))

    if command == "chat":
        logger.info("Starting CLI chat mode")
        return asyncio.run(_chat_loop(settings))

    if command == "health":
        return asyncio.run(_health_check(settings))

    print(f"Unknown command: {command}")
    return 1


@dataclass
class Runtime:
    """Wired components for one CLI invocation."""

    store: "SQLiteMemoryStore"
    agent: "MemoryAgent"
    orchestrator: "Orchestrator"
    router: "PrivacyRouter"
    debouncer: "QueryDebouncer"


@asynccontextmanager
async def open_runtime(settings: Settings, background: bool = False) -> AsyncIterator[Runtime]:
    """Connect the store, wire providers and agents, start the orchestrator.

    With ``background`` set, periodic consolidation and insight jobs run
    for as long as the runtime is open.
    """
    from memex.agents.awareness import AwarenessAgent
    from memex.agents.memory_agent import AgentConfig, MemoryAgent
    from memex.agents.privacy import PrivacyAnalyzer
    from memex.agents.session import QueryDebouncer
    from memex.core.orchestrator import Orchestrator
    from memex.core.scheduler import Scheduler
    from memex.llm.prompts import PromptLibrary
    from memex.llm.router import create_default_router
    from memex.memory.retrieval import RetrievalEngine
    from memex.memory.store import SQLiteMemoryStore

    config = AgentConfig.from_settings(settings)
    store = SQLiteMemoryStore(settings.db_path)
    await store.connect()

    scheduler = Scheduler() if background else None
    analyzer = PrivacyAnalyzer()
    router = create_default_router(settings, analyzer)
    embedder = router.local if config.retrieval.enable_semantic_search else None
    agent = MemoryAgent(
        store=store,
        retrieval=RetrievalEngine(store, embedder, config.retrieval),
        privacy=analyzer,
        prompts=PromptLibrary(),
        config=config,
        response_provider=router,
        embedding_provider=embedder,
        scheduler=scheduler,
    )
    orchestrator = Orchestrator(
        agent,
        analyzer,
        config,
        scheduler=scheduler,
        notifier=AwarenessAgent(print_notification),
    )

    async def answer(text: str):
        try:
            return await orchestrator.process_query(text)
        except MemexError as e:
            print(f"Error: {e}\n")
            return None

    debouncer = QueryDebouncer(answer, print_response, settings.debounce_seconds)
    try:
        await orchestrator.start()
        if scheduler:
            await scheduler.start()
        yield Runtime(
            store=store, agent=agent, orchestrator=orchestrator, router=router, debouncer=debouncer
        )
    finally:
        await debouncer.close()
        if scheduler:
            await scheduler.stop()
        await orchestrator.stop()
        await router.close()
        await store.close()


def print_notification(notification) -> None:
    print(f"  [notice] {notification.message}")


def print_response(session_id: str, response) -> None:
    if response is not None:
        print(f"\n{response.content}\n")


async def _init(settings: Settings) -> int:
    from memex.memory.store import SQLiteMemoryStore

    settings.data_dir.mkdir(parents=True, exist_ok=True)
    store = SQLiteMemoryStore(settings.db_path)
    await store.connect()
    await store.close()
    get_logger("cli").info(f"Initialized data directory: {settings.data_dir}")
    print(f"Created: {settings.db_path}")
    return 0


async def _query(settings: Settings, text: str) -> int:
    async with open_runtime(settings) as runtime:
        try:
            response = await runtime.orchestrator.process_query(text)
        except MemexError as e:
            print(f"Error: {e}")
            return 1
        print(response.content)
        for action in response.autonomous_actions:
            status = "ok" if action.success else "failed"
            print(f"  [{action.action.value}: {status}] {action.detail}")
    return 0


async def _ingest(settings: Settings, kind_name: str, text: str) -> int:
    from memex.agents.memory_agent import IngestKind

    try:
        kind = IngestKind(kind_name)
    except ValueError:
        print(f"Unknown ingest kind: {kind_name}")
        return 1

    async with open_runtime(settings) as runtime:
        try:
            records = await runtime.agent.ingest(kind, text)
        except (MemexError, ValueError) as e:
            print(f"Error: {e}")
            return 1
    print(f"Stored {len(records)} record(s)")
    return 0


async def _consolidate(settings: Settings) -> int:
    async with open_runtime(settings) as runtime:
        try:
            report = await runtime.agent.consolidate_now()
        except MemexError as e:
            print(f"Error: {e}")
            return 1
    print(
        f"Examined {len(report.examined)}: promoted {len(report.promoted)}, "
        f"expired {len(report.expired)}, failed {len(report.failed)}"
    )
    return 0 if report.succeeded else 2


async def _chat_loop(settings: Settings) -> int:
    """Interactive query loop through the orchestrator."""
    print("memex chat")
    print("Commands: /status, /insights, /exit")
    print("-" * 40)

    async with open_runtime(settings, background=True) as runtime:
        orchestrator = runtime.orchestrator
        print("Ready.\n")
        pending = None
        while True:
            try:
                # Off the event loop so background jobs keep running
                user_input = (await asyncio.to_thread(input, "> ")).strip()
            except (EOFError, KeyboardInterrupt):
                break

            if not user_input:
                continue
            if user_input.lower() in ("/exit", "exit", "quit", "q"):
                break
            if user_input == "/status":
                state = await runtime.agent.system_state()
                print(f"State: {orchestrator.state.value}")
                print(f"STM {state.stm_count}, LTM {state.ltm_count}, episodic {state.episodic_count}")
                print(f"Entities {state.entity_count}, relationships {state.relationship_count}\n")
                continue
            if user_input == "/insights":
                for insight in orchestrator.insights:
                    print(f"- {insight.title} ({insight.confidence:.2f})")
                print()
                continue

            # A newer line supersedes a query still inside the debounce window
            pending = runtime.debouncer.submit(CHAT_SESSION, user_input)

        if pending is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await pending

    print("Goodbye!")
    return 0


async def _health_check(settings: Settings) -> int:
    """Check LLM provider health."""
    from memex.agents.privacy import PrivacyAnalyzer
    from memex.llm.router import create_default_router

    print("Checking LLM providers...")
    router = create_default_router(settings, PrivacyAnalyzer())
    try:
        local_ok = await router.local.health_check()
        print(f"  local ({settings.local_llm_url}): {'OK' if local_ok else 'unreachable'}")
        if router.remote is not None:
            remote_ok = await router.remote.health_check()
            print(f"  remote ({settings.remote_model}): {'configured' if remote_ok else 'missing'}")
    finally:
        await router.close()
    return 0 if local_ok else 1


if __name__ == "__main__":
    sys.exit(main())
