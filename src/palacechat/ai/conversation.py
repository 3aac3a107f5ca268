"""Conversation loop controller.

Drives one exchange at a time: stream the model's reply, assemble it, run any
requested tools in order, feed their results back and repeat until the model
stops asking for tools.

Example:
    controller = ConversationController(settings=load_settings(), dispatcher=ToolDispatcher())
    new_messages = await controller.send("Create a room called Library")
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import TYPE_CHECKING, Any, List, Mapping, Sequence

from ..events import (
    ConversationObserver,
    E,
    EventBus,
    Handler,
    LivePreviewUpdated,
    MessageAppended,
    ObserverBinding,
)
from .assembler import BlockAssembler
from .client import ModelRequest, StreamTransport
from .errors import (
    ConversationError,
    ExchangeCancelledError,
    ReentrancyError,
    TransportError,
    TurnLimitError,
)
from .prompts import ContextProvider, build_system_prompt
from .session import ExchangeHandle, Session
from .tools.dispatcher import ToolDispatcher
from .transports import TransportCache
from .types import (
    AssembledMessage,
    Message,
    MessageStop,
    SessionStatus,
    StopReason,
    ToolResultBlock,
    ToolUseBlock,
)

if TYPE_CHECKING:
    from ..services.settings import Settings

__all__ = ["ConversationController"]

LOGGER = logging.getLogger(__name__)


class ConversationController:
    """Runs the streaming tool-use loop for one conversation.

    Each controller owns its history, session and event bus; independent
    controllers share nothing. At most one exchange is in flight at a time.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        transport: StreamTransport | None = None,
        transport_cache: TransportCache | None = None,
        dispatcher: ToolDispatcher | None = None,
        context_provider: ContextProvider | None = None,
        history: Sequence[Message] = (),
        bus: EventBus | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            settings: Model and client settings; defaults are used when omitted.
            transport: Fixed transport. When omitted, one is obtained from
                ``transport_cache`` for the current client settings on every send.
            transport_cache: Cache used to build transports lazily.
            dispatcher: Tool dispatcher; a backend-less dispatcher by default.
            context_provider: Builds the system prompt from the host context.
            history: Messages to seed the conversation with.
            bus: Event bus for observers; a private bus by default.
        """
        if settings is None:
            from ..services.settings import Settings

            settings = Settings()
        self._settings = settings
        self._transport = transport
        self._transport_cache = transport_cache if transport_cache is not None else TransportCache()
        self._dispatcher = dispatcher or ToolDispatcher()
        self._context_provider = context_provider or self._default_context_provider
        self._history: List[Message] = list(history)
        self._bus: EventBus = bus if bus is not None else EventBus()
        self._session = Session(self._bus)
        self._observers: dict[int, ObserverBinding] = {}

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @settings.setter
    def settings(self, value: Settings) -> None:
        self._settings = value

    @property
    def history(self) -> tuple[Message, ...]:
        """Read-only view of the conversation history."""
        return tuple(self._history)

    @property
    def status(self) -> SessionStatus:
        return self._session.status

    @property
    def session(self) -> Session:
        return self._session

    @property
    def dispatcher(self) -> ToolDispatcher:
        return self._dispatcher

    @property
    def bus(self) -> EventBus:
        return self._bus

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def add_observer(self, observer: ConversationObserver) -> None:
        """Forward conversation events to ``observer`` until it is removed."""
        key = id(observer)
        if key in self._observers:
            return
        binding = ObserverBinding(self._bus, observer)
        binding.attach()
        self._observers[key] = binding

    def remove_observer(self, observer: ConversationObserver) -> None:
        binding = self._observers.pop(id(observer), None)
        if binding is not None:
            binding.detach()

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Subscribe directly to one event type on this controller's bus."""
        self._bus.subscribe(event_type, handler)

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        self._bus.unsubscribe(event_type, handler)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def send(self, user_text: str, context: Mapping[str, Any] | None = None) -> list[Message]:
        """Run one exchange and return the messages it produced.

        The user message is recorded in history first; the returned list holds
        what followed it: assistant messages and tool-result messages.

        Raises:
            ReentrancyError: If another exchange is still in flight.
            ConfigurationError: If no transport can be built for the settings.
            TransportError: If the stream fails; ``ExchangeCancelledError`` when
                the exchange was aborted. History keeps the messages appended
                before the failure.
            TurnLimitError: If ``max_turns`` is set and the model is still
                requesting tools once it is reached.
        """
        if not self._session.is_idle:
            raise ReentrancyError(status=self._session.status.value)
        transport = self._resolve_transport()

        handle = self._session.begin_exchange()
        if handle.aborted:
            # An observer aborted on the thinking transition.
            self._session.finish_exchange(handle)
            raise ExchangeCancelledError()
        task = asyncio.create_task(self._run_exchange(handle, transport, user_text, context))
        handle.task = task
        try:
            messages = await task
        except asyncio.CancelledError:
            if handle.aborted:
                raise ExchangeCancelledError() from None
            # The caller was cancelled; stop the exchange too.
            task.cancel()
            raise
        finally:
            self._session.finish_exchange(handle)
        if handle.aborted:
            raise ExchangeCancelledError()
        return messages

    def abort(self) -> bool:
        """Cancel the in-flight exchange; see :meth:`Session.abort`."""
        return self._session.abort()

    def reset(self) -> None:
        """Clear the conversation history."""
        if not self._session.is_idle:
            raise ReentrancyError(
                "Cannot reset while an exchange is in flight",
                status=self._session.status.value,
            )
        self._history.clear()

    async def aclose(self) -> None:
        """Abort any exchange, detach observers and close cached transports."""
        self._session.abort()
        for binding in list(self._observers.values()):
            binding.detach()
        self._observers.clear()
        await self._transport_cache.aclose()
        if self._transport is not None:
            await self._transport.aclose()

    # ------------------------------------------------------------------
    # Exchange
    # ------------------------------------------------------------------

    def _resolve_transport(self) -> StreamTransport:
        if self._transport is not None:
            return self._transport
        self._settings.validate()
        return self._transport_cache.get(self._settings.client_settings())

    def _default_context_provider(self, context: Mapping[str, Any] | None) -> str:
        return build_system_prompt(context, base_prompt=self._settings.system_prompt)

    async def _run_exchange(
        self,
        handle: ExchangeHandle,
        transport: StreamTransport,
        user_text: str,
        context: Mapping[str, Any] | None,
    ) -> list[Message]:
        self._ensure_current(handle)
        if self._transport is None:
            # Transports built for earlier settings are no longer reachable.
            await self._transport_cache.prune()
        appended: list[Message] = []
        conversation = [message for message in self._history if message.role in ("user", "assistant")]
        user_message = Message.user(user_text)
        conversation.append(user_message)
        self._history.append(user_message)
        max_turns = self._settings.max_turns

        while True:
            self._ensure_current(handle)
            if max_turns is not None and handle.turns >= max_turns:
                LOGGER.warning("Turn limit of %s reached with tools still pending", max_turns)
                raise TurnLimitError(
                    f"Stopped after {max_turns} model turn(s) with tool calls still pending",
                    limit=max_turns,
                    messages=tuple(appended),
                )
            handle.turns += 1
            self._session.advance(handle, SessionStatus.STREAMING)
            request = self._build_request(conversation, context)
            result = await self._stream_turn(handle, transport, request)

            if result.is_empty:
                LOGGER.info("Model returned no content (stop_reason=%s)", result.stop_reason)
                return appended

            self._append(handle, result.message, appended)
            conversation.append(result.message)

            if result.stop_reason != StopReason.TOOL_USE:
                return appended

            tool_uses = result.message.tool_uses
            if not tool_uses:
                LOGGER.warning("stop_reason=tool_use without any tool_use block; ending exchange")
                return appended

            self._session.advance(handle, SessionStatus.TOOL_USE)
            results: list[ToolResultBlock] = []
            for block in tool_uses:
                results.append(await self._run_tool(handle, block))
                self._ensure_current(handle)

            results_message = Message.tool_results(results)
            self._append(handle, results_message, appended)
            conversation.append(results_message)
            self._session.clear_preview()

    def _build_request(self, conversation: Sequence[Message], context: Mapping[str, Any] | None) -> ModelRequest:
        settings = self._settings
        return ModelRequest(
            model=settings.model,
            max_output_tokens=settings.max_output_tokens,
            temperature=settings.temperature,
            system_prompt=self._context_provider(context),
            messages=tuple(conversation),
            tools=self._dispatcher.declarations,
        )

    async def _stream_turn(
        self,
        handle: ExchangeHandle,
        transport: StreamTransport,
        request: ModelRequest,
    ) -> AssembledMessage:
        assembler = BlockAssembler()
        events = transport.stream(request)
        try:
            async for event in events:
                assembler.on_event(event)
                if not isinstance(event, MessageStop) and self._session.is_current(handle):
                    self._bus.publish(LivePreviewUpdated(blocks=assembler.preview()))
        except (asyncio.CancelledError, ConversationError):
            raise
        except Exception as exc:
            LOGGER.exception("Transport failed while streaming")
            raise TransportError(f"Transport failed: {exc}") from exc
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()
        return assembler.finalize()

    async def _run_tool(self, handle: ExchangeHandle, block: ToolUseBlock) -> ToolResultBlock:
        """Run one tool call and convert its outcome into a result block.

        The call runs in its own task so that an abort only stops the wait;
        the call itself finishes on its own and its result is dropped.
        """
        pending = self._session.begin_tool(handle, block.id, block.name)
        tool_task = asyncio.create_task(self._dispatcher.execute(block.name, block.input))
        tool_task.add_done_callback(partial(_settle_pending, pending.future))
        try:
            content = await pending.future
        except ExchangeCancelledError:
            raise
        except Exception as exc:
            message = exc.message if isinstance(exc, ConversationError) else str(exc)
            LOGGER.warning("Tool %s failed: %s", block.name, message)
            return ToolResultBlock(tool_use_id=block.id, content=f"Error: {message}", is_error=True)
        finally:
            self._session.end_tool(handle, pending)
            future = pending.future
            if future.done() and not future.cancelled():
                future.exception()
        return ToolResultBlock(tool_use_id=block.id, content=str(content))

    def _ensure_current(self, handle: ExchangeHandle) -> None:
        if not self._session.is_current(handle):
            raise asyncio.CancelledError()

    def _append(self, handle: ExchangeHandle, message: Message, appended: list[Message]) -> None:
        self._ensure_current(handle)
        self._history.append(message)
        appended.append(message)
        self._bus.publish(MessageAppended(message=message))


def _settle_pending(future: asyncio.Future, task: asyncio.Task) -> None:
    if task.cancelled():
        future.cancel()
        return
    error = task.exception()
    if future.done():
        if error is not None:
            LOGGER.debug("Discarding failure of an abandoned tool call: %s", error)
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(task.result())

