"""Orderly shutdown: drain in-flight work, flush and close every log sink."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine, Mapping
from enum import Enum
from typing import Any

from .interface import RecordSink

logger = logging.getLogger(__name__)


class ShutdownReason(str, Enum):
    INTERRUPT = "interrupt"  # Ctrl+C / SIGTERM from the operator
    FAULT = "fault"  # Unhandled exception during normal operation
    RESTART = "restart"  # Supervisor asked for a restart (SIGUSR2)

    @property
    def exit_code(self) -> int:
        return 1 if self is ShutdownReason.FAULT else 0


class LifecycleController:
    """Coordinates graceful shutdown of the relay.

    The controller does not know about signals. Whatever supervises the
    process calls trigger() (or fail()) to request a shutdown and then
    awaits shutdown(), which:

      1. waits for in-flight subscribe/unsubscribe batches to finish
         (they are never cancelled, so their log records still land),
      2. runs the on_drained hooks (the runtime stops the feed here),
      3. ends every sink concurrently and waits until all report closed,
      4. returns the exit status for the first recorded reason.

    If any sink was never initialized the sink close step is skipped with
    an error, since there is nothing safe to flush.
    """

    def __init__(
        self,
        sinks: Mapping[str, RecordSink | None] | None = None,
        close_timeout: float = 10.0,
        drain_timeout: float = 10.0,
    ) -> None:
        self._sinks: dict[str, RecordSink | None] = dict(sinks or {})
        self._close_timeout = close_timeout
        self._drain_timeout = drain_timeout
        self._tasks: set[asyncio.Task] = set()
        self._reason: ShutdownReason | None = None
        self._exit_callbacks: list[Callable[[], None]] = []
        self._drain_hooks: list[Callable[[], Awaitable[None]]] = []
        self._shutdown: asyncio.Future[int] | None = None

    def attach_sinks(self, sinks: Mapping[str, RecordSink | None]) -> None:
        self._sinks.update(sinks)

    def on_exit(self, callback: Callable[[], None]) -> None:
        """Register a callback that stops the process's main loop."""
        self._exit_callbacks.append(callback)

    def on_drained(self, hook: Callable[[], Awaitable[None]]) -> None:
        """Register a coroutine function run after in-flight work drains, before sinks close."""
        self._drain_hooks.append(hook)

    @property
    def reason(self) -> ShutdownReason | None:
        return self._reason

    @property
    def exit_status(self) -> int:
        return (self._reason or ShutdownReason.INTERRUPT).exit_code

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def trigger(self, reason: ShutdownReason) -> None:
        """Request a shutdown. Only the first reason is kept."""
        if self._reason is not None:
            return
        self._reason = reason
        logger.info("Shutdown requested (%s)", reason.value)
        for callback in self._exit_callbacks:
            callback()

    def fail(self, exc: BaseException) -> None:
        """Report an unhandled fault and request a non-zero exit."""
        logger.error("Unhandled exception: %s", exc, exc_info=exc)
        self.trigger(ShutdownReason.FAULT)

    def handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        """asyncio exception handler: unhandled exceptions are fatal."""
        exc = context.get("exception")
        if exc is None:
            loop.default_exception_handler(context)
            return
        self.fail(exc)

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task:
        """Run a command as a tracked task; an escaping exception is fatal."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    async def shutdown(self) -> int:
        """Run the shutdown sequence once. Later calls wait for the same result."""
        if self._shutdown is None:
            self._shutdown = asyncio.ensure_future(self._shutdown_sequence())
        return await asyncio.shield(self._shutdown)

    # --- Internal ---

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.fail(exc)

    async def _shutdown_sequence(self) -> int:
        if self._reason is None:
            self._reason = ShutdownReason.INTERRUPT
        await self._drain_tasks()
        for hook in self._drain_hooks:
            try:
                await hook()
            except Exception:
                logger.exception("Shutdown hook failed")
        await self._close_sinks()
        logger.info("Shutdown complete (%s, exit status %d)", self._reason.value, self.exit_status)
        return self.exit_status

    async def _drain_tasks(self) -> None:
        pending = list(self._tasks)
        if not pending:
            return
        logger.info("Waiting for %d in-flight command(s)", len(pending))
        _, still_running = await asyncio.wait(pending, timeout=self._drain_timeout)
        if still_running:
            logger.warning("%d command(s) still running after %.1fs", len(still_running), self._drain_timeout)

    async def _close_sinks(self) -> None:
        missing = [name for name, sink in self._sinks.items() if sink is None]
        if not self._sinks or missing:
            logger.error("One or more log sinks are not initialized (%s)", ", ".join(missing) or "none")
            return

        sinks = [(name, sink) for name, sink in self._sinks.items() if sink is not None]
        for _, sink in sinks:
            sink.end()

        try:
            results = await asyncio.wait_for(
                asyncio.gather(*(sink.wait_closed() for _, sink in sinks), return_exceptions=True),
                timeout=self._close_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Timed out after %.1fs waiting for log sinks to close", self._close_timeout)
            return

        for (name, _), result in zip(sinks, results):
            if isinstance(result, BaseException):
                logger.error("Error closing log sink %s: %s", name, result)
            else:
                logger.info("Log sink %s closed", name)
