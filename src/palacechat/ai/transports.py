"""Transport construction and reuse."""

from __future__ import annotations

import logging
from typing import Callable, Dict

from .client import AnthropicClient, ClientSettings, StreamTransport
from .errors import ConfigurationError
from .openai_compat import OpenAICompatClient

__all__ = ["TransportFactory", "build_transport", "TransportCache"]

LOGGER = logging.getLogger(__name__)

TransportFactory = Callable[[ClientSettings], StreamTransport]

_PROVIDERS: Dict[str, TransportFactory] = {
    "anthropic": AnthropicClient,
    "openai": OpenAICompatClient,
}


def build_transport(settings: ClientSettings) -> StreamTransport:
    """Create the transport for ``settings.provider``.

    Raises:
        ConfigurationError: If the provider is unknown or credentials are missing.
    """

    factory = _PROVIDERS.get(settings.provider)
    if factory is None:
        raise ConfigurationError(
            f"Unsupported provider: {settings.provider!r}",
            setting="provider",
        )
    return factory(settings)


class TransportCache:
    """Memoizes transports keyed on their client settings.

    Any change to a setting (a rotated API key, a new base URL) produces a new
    transport on the next :meth:`get`; the superseded one is closed by
    :meth:`aclose` or by the next :meth:`prune`.
    """

    def __init__(self, factory: TransportFactory = build_transport) -> None:
        self._factory = factory
        self._entries: Dict[ClientSettings, StreamTransport] = {}
        self._current: ClientSettings | None = None

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, settings: ClientSettings) -> StreamTransport:
        transport = self._entries.get(settings)
        if transport is None:
            LOGGER.debug("Building %s transport", settings.provider)
            transport = self._factory(settings)
            self._entries[settings] = transport
        self._current = settings
        return transport

    async def prune(self) -> None:
        """Close every cached transport except the most recently requested one."""
        stale = [key for key in self._entries if key != self._current]
        for key in stale:
            await self._entries.pop(key).aclose()

    async def aclose(self) -> None:
        entries = list(self._entries.values())
        self._entries.clear()
        self._current = None
        for transport in entries:
            await transport.aclose()
