"""Event bus infrastructure for conversation observers.

Each conversation controller owns its own bus, so subscribers of one session
never receive events from another. Observers use the bus to follow status
changes, streaming previews and appended messages without sharing mutable
state with the conversation loop.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Generic,
    Protocol,
    Sequence,
    TypeVar,
    TYPE_CHECKING,
    runtime_checkable,
)
from weakref import WeakMethod

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from .ai.types import Message, SessionStatus

logger = logging.getLogger(__name__)

# Type variable for event types
E = TypeVar("E", bound="Event")

# Handler type: a callable that takes an event and returns None
Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all conversation events."""

    pass


# Event types published too often to log individually
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Conversation Events
# =============================================================================


@dataclass(slots=True)
class StatusChanged(Event):
    """Emitted when the session moves to a new status.

    Attributes:
        status: The new session status.
        previous: The status the session left.
    """

    status: "SessionStatus"
    previous: "SessionStatus"


@dataclass(slots=True)
class LivePreviewUpdated(Event):
    """Emitted while a response streams in.

    The preview is advisory only: blocks are plain dictionaries ordered by
    index, and ``None`` means the preview was cleared.

    Attributes:
        blocks: Snapshot of the partial blocks, or ``None``.
    """

    blocks: list[dict[str, Any]] | None


# Published for every stream event.
_QUIET_EVENT_TYPES.add(LivePreviewUpdated)


@dataclass(slots=True)
class MessageAppended(Event):
    """Emitted when a message is appended to the conversation history.

    Attributes:
        message: The appended message.
    """

    message: "Message"


# =============================================================================
# Observer Protocol
# =============================================================================


@runtime_checkable
class ConversationObserver(Protocol):
    """Callback protocol for hosts that follow a conversation."""

    def on_message_appended(self, message: "Message") -> None:
        """Called after a message is appended to history."""
        ...

    def on_live_preview_update(self, blocks: Sequence[dict[str, Any]] | None) -> None:
        """Called with the partial blocks while streaming, ``None`` when cleared."""
        ...

    def on_status_change(self, status: "SessionStatus") -> None:
        """Called when the session status changes."""
        ...


# =============================================================================
# Event Bus
# =============================================================================


class EventBus(Generic[E]):
    """Per-conversation publish-subscribe dispatcher keyed by event class.

    Bound methods are held through :class:`weakref.WeakMethod`, so an observer
    that goes away stops receiving events without unsubscribing. Plain
    functions and lambdas are held strongly.

    Example::

        bus = EventBus()

        def on_appended(event: MessageAppended) -> None:
            print(event.message.text)

        bus.subscribe(MessageAppended, on_appended)
        bus.publish(MessageAppended(message=message))
        bus.unsubscribe(MessageAppended, on_appended)

    Handlers run on the event loop thread that drives the conversation; the
    bus does no locking of its own.
    """

    __slots__ = ("_subscriptions",)

    def __init__(self) -> None:
        self._subscriptions: dict[type[Event], list[_HandlerRef]] = {}

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register ``handler`` for events of exactly ``event_type``.

        Subscribing the same handler twice delivers each event twice.
        """
        self._subscriptions.setdefault(event_type, []).append(_HandlerRef(handler))
        logger.debug("%s subscribed to %s", _handler_name(handler), event_type.__name__)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Drop the first registration of ``handler``; unknown handlers are ignored."""
        refs = self._subscriptions.get(event_type, [])
        position = next((i for i, ref in enumerate(refs) if ref.points_to(handler)), None)
        if position is None:
            return
        del refs[position]
        logger.debug("%s unsubscribed from %s", _handler_name(handler), event_type.__name__)

    def publish(self, event: E) -> None:
        """Deliver ``event`` synchronously in subscription order.

        A handler that raises is logged and delivery continues with the next one.
        """
        event_type = type(event)
        refs = self._subscriptions.get(event_type)
        if not refs:
            return
        if event_type not in _QUIET_EVENT_TYPES:
            logger.debug("Publishing %s to %d handler(s)", event_type.__name__, len(refs))

        live: list[Handler] = []
        for ref in refs:
            handler = ref()
            if handler is not None:
                live.append(handler)
        if len(live) != len(refs):
            refs[:] = [ref for ref in refs if ref() is not None]

        for handler in live:
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s failed while handling %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

    def clear(self) -> None:
        self._subscriptions.clear()

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Count registered handlers for ``event_type``, or across all types."""
        if event_type is None:
            return sum(len(refs) for refs in self._subscriptions.values())
        return len(self._subscriptions.get(event_type, ()))


class _HandlerRef:
    """Callable that returns the subscribed handler, or ``None`` once it is gone."""

    __slots__ = ("_target", "_weak")

    def __init__(self, handler: Handler) -> None:
        self._weak = False
        self._target: Any = handler
        if getattr(handler, "__self__", None) is not None and hasattr(handler, "__func__"):
            try:
                self._target = WeakMethod(handler)
                self._weak = True
            except TypeError:
                # Owner without __weakref__; fall back to a strong reference.
                pass

    def __call__(self) -> Handler | None:
        return self._target() if self._weak else self._target

    def points_to(self, handler: Handler) -> bool:
        current = self()
        return current is not None and current == handler


def _handler_name(handler: Handler) -> str:
    owner = getattr(handler, "__self__", None)
    if owner is not None:
        return f"{type(owner).__name__}.{getattr(handler, '__name__', '?')}"
    return getattr(handler, "__qualname__", None) or repr(handler)


# =============================================================================
# Observer Adapter
# =============================================================================


class ObserverBinding:
    """Subscribes a :class:`ConversationObserver` to a bus.

    The binding holds a strong reference to the observer for as long as it is
    attached, since the bus itself only keeps weak references to bound methods.
    """

    __slots__ = ("observer", "_bus", "__weakref__")

    def __init__(self, bus: EventBus, observer: ConversationObserver) -> None:
        self.observer = observer
        self._bus = bus

    def attach(self) -> None:
        self._bus.subscribe(MessageAppended, self._on_message_appended)
        self._bus.subscribe(LivePreviewUpdated, self._on_preview)
        self._bus.subscribe(StatusChanged, self._on_status)

    def detach(self) -> None:
        self._bus.unsubscribe(MessageAppended, self._on_message_appended)
        self._bus.unsubscribe(LivePreviewUpdated, self._on_preview)
        self._bus.unsubscribe(StatusChanged, self._on_status)

    def _on_message_appended(self, event: MessageAppended) -> None:
        self.observer.on_message_appended(event.message)

    def _on_preview(self, event: LivePreviewUpdated) -> None:
        self.observer.on_live_preview_update(event.blocks)

    def _on_status(self, event: StatusChanged) -> None:
        self.observer.on_status_change(event.status)


__all__ = [
    "Event",
    "EventBus",
    "StatusChanged",
    "LivePreviewUpdated",
    "MessageAppended",
    "ConversationObserver",
    "ObserverBinding",
]
