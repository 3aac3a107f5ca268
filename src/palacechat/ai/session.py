"""Session state machine and cooperative cancellation.

A session tracks which phase of an exchange is running and owns the handles
needed to cancel it: the task driving the exchange and the future of the tool
call currently awaited.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from ..events import EventBus, LivePreviewUpdated, StatusChanged
from .errors import ExchangeCancelledError
from .types import SessionStatus

__all__ = ["ExchangeHandle", "PendingTool", "Session"]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PendingTool:
    """A tool call whose result the exchange is waiting for."""

    tool_use_id: str
    name: str
    future: asyncio.Future

    def reject(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)


@dataclass(slots=True)
class ExchangeHandle:
    """Cancellation state of one exchange.

    The controller keeps its own reference, so an exchange that was aborted
    can still tell it was aborted after the session has moved on.
    """

    generation: int
    task: asyncio.Task | None = None
    pending_tool: PendingTool | None = None
    aborted: bool = False
    turns: int = 0


class Session:
    """Status and cancellation state for one conversation controller.

    Exactly one status is active at a time. Transitions are driven by the
    conversation controller; ``abort()`` may be called by anyone, in any state.
    """

    def __init__(self, bus: EventBus) -> None:
        self._bus = bus
        self._status = SessionStatus.IDLE
        self._current: ExchangeHandle | None = None
        self._generation = 0

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_idle(self) -> bool:
        return self._status is SessionStatus.IDLE and self._current is None

    @property
    def pending_tool(self) -> PendingTool | None:
        current = self._current
        return current.pending_tool if current is not None else None

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, status: SessionStatus) -> None:
        """Move to ``status`` and publish the change; no-op if unchanged."""
        previous = self._status
        if previous is status:
            return
        self._status = status
        LOGGER.debug("Session status %s -> %s", previous.value, status.value)
        self._bus.publish(StatusChanged(status=status, previous=previous))

    def advance(self, handle: ExchangeHandle, status: SessionStatus) -> None:
        """Transition on behalf of ``handle``; ignored once it is no longer current."""
        if self._current is handle:
            self.transition(status)

    def begin_exchange(self) -> ExchangeHandle:
        """Open a new exchange and move to ``thinking``."""
        self._generation += 1
        handle = ExchangeHandle(generation=self._generation)
        self._current = handle
        self.transition(SessionStatus.THINKING)
        return handle

    def is_current(self, handle: ExchangeHandle) -> bool:
        return self._current is handle and not handle.aborted

    def begin_tool(self, handle: ExchangeHandle, tool_use_id: str, name: str) -> PendingTool:
        """Track a tool call and return the pending handle the exchange awaits."""
        pending = PendingTool(
            tool_use_id=tool_use_id,
            name=name,
            future=asyncio.get_running_loop().create_future(),
        )
        handle.pending_tool = pending
        return pending

    def end_tool(self, handle: ExchangeHandle, pending: PendingTool) -> None:
        if handle.pending_tool is pending:
            handle.pending_tool = None

    def finish_exchange(self, handle: ExchangeHandle) -> None:
        """Return to idle and drop the handle's resources if it is still current."""
        handle.task = None
        handle.pending_tool = None
        if self._current is not handle:
            return
        self._current = None
        self.clear_preview()
        self.transition(SessionStatus.IDLE)

    def clear_preview(self) -> None:
        self._bus.publish(LivePreviewUpdated(blocks=None))

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def abort(self) -> bool:
        """Cancel the in-flight exchange, if any.

        Signals the transport to stop, discards the live preview, rejects a
        pending tool with :class:`ExchangeCancelledError` and returns to idle.
        A tool call that is already executing is not interrupted; its result is
        simply never used. Idempotent; a no-op while idle.

        Returns:
            ``True`` if an exchange was cancelled.
        """
        handle = self._current
        if handle is None:
            LOGGER.debug("abort() called while idle; nothing to cancel")
            return False

        LOGGER.info("Aborting exchange %s (status=%s)", handle.generation, self._status.value)
        handle.aborted = True
        self._current = None

        pending = handle.pending_tool
        handle.pending_tool = None
        if pending is not None:
            pending.reject(ExchangeCancelledError())

        task = handle.task
        if task is not None and not task.done():
            task.cancel()

        self.clear_preview()
        self.transition(SessionStatus.IDLE)
        return True
