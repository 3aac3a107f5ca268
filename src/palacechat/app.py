"""Command line host for a memory palace conversation."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
import threading
from typing import Any, Dict, Sequence, TextIO

from .ai.conversation import ConversationController
from .ai.errors import ConfigurationError, ConversationError, ExchangeCancelledError, TurnLimitError
from .ai.tools import ToolDispatcher
from .ai.types import Message, SessionStatus, ToolResultBlock
from .services.settings import PROVIDER_CHOICES, Settings, load_settings
from .utils import logging as logging_utils

_LOGGER = logging.getLogger(__name__)
_QUIT_COMMANDS = {"/quit", "/exit"}
_RESET_COMMAND = "/reset"


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure logging for the command line host."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug(
        "Logging configured (level=%s, file=%s)",
        logging.getLevelName(level),
        logging_utils.get_log_path(),
    )


class ConsolePrinter:
    """Observer that echoes a conversation to a text stream."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream or sys.stdout
        self._printed = 0

    def on_live_preview_update(self, blocks: Sequence[Dict[str, Any]] | None) -> None:
        if blocks is None:
            self._printed = 0
            return
        text = "".join(str(block.get("text", "")) for block in blocks if block.get("type") == "text")
        if len(text) > self._printed:
            self._stream.write(text[self._printed :])
            self._stream.flush()
            self._printed = len(text)

    def on_message_appended(self, message: Message) -> None:
        if message.role == "assistant":
            if self._printed:
                self._stream.write("\n")
            self._printed = 0
            for tool in message.tool_uses:
                arguments = json.dumps(tool.input, ensure_ascii=False) if tool.input is not None else "<invalid>"
                self._stream.write(f"  -> {tool.name} {arguments}\n")
        else:
            for block in message.content:
                if isinstance(block, ToolResultBlock):
                    marker = "!!" if block.is_error else "<-"
                    self._stream.write(f"  {marker} {block.content}\n")
        self._stream.flush()

    def on_status_change(self, status: SessionStatus) -> None:
        _LOGGER.debug("Status: %s", status.value)


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point invoked by the ``palacechat`` console script."""

    args = _parse_cli_args(argv)
    configure_logging(args.debug)

    overrides: Dict[str, Any] = {
        "model": args.model,
        "provider": args.provider,
        "max_turns": args.max_turns,
    }
    if args.debug:
        overrides["debug_logging"] = True
    settings = load_settings(overrides)

    if args.dump_settings:
        print(json.dumps(settings.redacted(), indent=2, sort_keys=True))
        return 0

    try:
        settings.validate()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc.message}", file=sys.stderr)
        return 2

    try:
        asyncio.run(_repl(settings))
    except KeyboardInterrupt:
        pass
    return 0


class InterruptHandler:
    """SIGINT handler: abort the running exchange, or leave the prompt when idle."""

    def __init__(self, controller: ConversationController, task: asyncio.Task | None) -> None:
        self._controller = controller
        self._task = task
        self.exiting = False

    def __call__(self) -> None:
        if self._controller.abort():
            return
        self.exiting = True
        if self._task is not None:
            self._task.cancel()


def _start_line_reader(source: TextIO, loop: asyncio.AbstractEventLoop) -> asyncio.Queue[str]:
    """Read ``source`` on a daemon thread; an empty string marks end of input.

    The thread is a daemon so that a blocked ``readline`` never holds up exit.
    """

    lines: asyncio.Queue[str] = asyncio.Queue()

    def _deliver(line: str) -> None:
        try:
            loop.call_soon_threadsafe(lines.put_nowait, line)
        except RuntimeError:
            # Loop already closed: the prompt has exited.
            _LOGGER.debug("Dropping stdin input after shutdown")

    def _pump() -> None:
        for line in iter(source.readline, ""):
            _deliver(line)
        _deliver("")

    threading.Thread(target=_pump, name="palacechat-stdin", daemon=True).start()
    return lines


async def _repl(settings: Settings, *, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
    printer = ConsolePrinter(stdout)
    controller = ConversationController(settings=settings, dispatcher=ToolDispatcher())
    controller.add_observer(printer)

    loop = asyncio.get_running_loop()
    task = asyncio.current_task()
    interrupt = InterruptHandler(controller, task)
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, interrupt)
    lines = _start_line_reader(stdin or sys.stdin, loop)

    try:
        while True:
            line = await lines.get()
            if not line:
                break
            text = line.strip()
            if not text:
                continue
            if text in _QUIT_COMMANDS:
                break
            if text == _RESET_COMMAND:
                controller.reset()
                continue
            await _send(controller, text)
    except asyncio.CancelledError:
        if not interrupt.exiting:
            raise
        if task is not None:
            task.uncancel()
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
        await controller.aclose()


async def _send(controller: ConversationController, text: str) -> None:
    try:
        await controller.send(text)
    except ExchangeCancelledError:
        print("\n[aborted]", file=sys.stderr)
    except TurnLimitError as exc:
        print(f"\n[stopped] {exc.message}", file=sys.stderr)
    except ConversationError as exc:
        _LOGGER.error("Exchange failed: %s", exc)
        print(f"\n[error] {exc.message}", file=sys.stderr)


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="palacechat",
        description="Talk to the memory palace assistant. Reads one message per line; Ctrl-C aborts a reply, or exits at the prompt.",
    )
    parser.add_argument("--model", help="Model identifier (defaults to the configured model).")
    parser.add_argument("--provider", choices=PROVIDER_CHOICES, help="Model service to talk to.")
    parser.add_argument(
        "--max-turns",
        type=int,
        metavar="N",
        help="Stop an exchange after N model turns that still request tools.",
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug logging, including request payloads.")
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings (with secrets redacted) and exit.",
    )
    return parser.parse_args(argv)


if __name__ == "__main__":
    raise SystemExit(main())
