"""Best-effort background side effects."""

import asyncio
from collections.abc import Coroutine, Hashable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


class BackgroundRunner:
    """
    Runs side effects as tasks detached from the caller's result.

    Failures are logged as warnings and never propagate. Side effects
    spawned with the same ``key`` run one after another in submission
    order; different keys run concurrently. Tasks are tracked until they
    finish so they can be drained on shutdown.
    """

    def __init__(self) -> None:
        """Initialize runner with no pending tasks."""
        self._tasks: set[asyncio.Task[Any]] = set()
        self._tails: dict[Hashable, asyncio.Task[Any]] = {}

    @property
    def pending(self) -> int:
        """Number of side effects still running or waiting their turn."""
        return len(self._tasks)

    def spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        event: str,
        *,
        key: Hashable | None = None,
        **context: Any,
    ) -> asyncio.Task[Any]:
        """
        Start a side effect without waiting for it.

        Args:
            coro: Side effect to run
            event: Log event name used if the side effect fails
            key: Side effects sharing a key are serialized
            context: Extra fields for the failure log

        Returns:
            The scheduled task
        """
        previous = self._tails.get(key) if key is not None else None

        task = asyncio.create_task(self._run(coro, event, context, previous))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        if key is not None:
            self._tails[key] = task
            task.add_done_callback(lambda done: self._release(key, done))

        return task

    async def drain(self) -> None:
        """Wait for every pending side effect to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _release(self, key: Hashable, task: asyncio.Task[Any]) -> None:
        # A later side effect for the key may already have taken the tail
        if self._tails.get(key) is task:
            del self._tails[key]

    @staticmethod
    async def _run(
        coro: Coroutine[Any, Any, Any],
        event: str,
        context: dict[str, Any],
        previous: asyncio.Task[Any] | None,
    ) -> None:
        try:
            if previous is not None:
                await asyncio.wait({previous})
        except asyncio.CancelledError:
            coro.close()
            raise

        try:
            await coro
        except Exception as e:
            logger.warning(event, error=getattr(e, "message", str(e)), **context)
