"""Per-session query debouncing for as-you-type retrieval."""

import asyncio
import contextlib
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from memex.core.logging import get_logger, preview

logger = get_logger("agents.session")


class QueryDebouncer:
    """Runs only the latest query of each session after a quiet period.

    A newer submit for the same session cancels the older one, and a
    superseded run never hands its result to ``on_result``.
    """

    def __init__(
        self,
        run_query: Callable[[str], Awaitable[Any]],
        on_result: Callable[[str, Any], Awaitable[None] | None],
        debounce_seconds: float = 0.3,
    ):
        self._run_query = run_query
        self._on_result = on_result
        self.debounce_seconds = debounce_seconds
        self._tasks: dict[str, asyncio.Task] = {}

    def submit(self, session_id: str, query: str) -> asyncio.Task:
        """Schedule a query, superseding any pending one for the session."""
        previous = self._tasks.get(session_id)
        if previous is not None and not previous.done():
            previous.cancel()
            logger.debug(f"Session {session_id}: superseded pending query")

        task = asyncio.create_task(self._run(session_id, query))
        self._tasks[session_id] = task
        return task

    def pending(self, session_id: str) -> bool:
        task = self._tasks.get(session_id)
        return task is not None and not task.done()

    async def _run(self, session_id: str, query: str) -> None:
        await asyncio.sleep(self.debounce_seconds)
        try:
            result = await self._run_query(query)
        except Exception as e:
            logger.warning(f"Session {session_id}: query '{preview(query)}' failed: {e}")
            return
        if self._tasks.get(session_id) is not asyncio.current_task():
            return
        outcome = self._on_result(session_id, result)
        if inspect.isawaitable(outcome):
            await outcome

    async def cancel(self, session_id: str) -> None:
        task = self._tasks.pop(session_id, None)
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def close(self) -> None:
        for session_id in list(self._tasks):
            await self.cancel(session_id)
