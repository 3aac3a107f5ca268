"""Tests for ai/transports.py."""

from __future__ import annotations

import pytest

from palacechat.ai.client import AnthropicClient, ClientSettings
from palacechat.ai.errors import ConfigurationError
from palacechat.ai.openai_compat import OpenAICompatClient
from palacechat.ai.transports import TransportCache, build_transport


class _StubTransport:
    def __init__(self, settings: ClientSettings) -> None:
        self.settings = settings
        self.closed = False

    async def stream(self, request):  # pragma: no cover - never streamed here
        if False:
            yield request

    async def aclose(self) -> None:
        self.closed = True


def test_build_transport_selects_provider() -> None:
    assert isinstance(build_transport(ClientSettings(provider="anthropic", api_key="k1")), AnthropicClient)
    assert isinstance(build_transport(ClientSettings(provider="openai", api_key="k2")), OpenAICompatClient)


def test_build_transport_rejects_unknown_provider() -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        build_transport(ClientSettings(provider="carrier-pigeon", api_key="k"))

    assert excinfo.value.setting == "provider"


def test_cache_reuses_transport_for_equal_settings() -> None:
    cache = TransportCache(factory=_StubTransport)

    first = cache.get(ClientSettings(api_key="k1", default_headers=(("x-team", "a"),)))
    second = cache.get(ClientSettings(api_key="k1", default_headers=(("x-team", "a"),)))

    assert first is second
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_changed_credentials_build_new_transport_and_prune_old() -> None:
    cache = TransportCache(factory=_StubTransport)
    old = cache.get(ClientSettings(api_key="k1"))
    new = cache.get(ClientSettings(api_key="k2"))

    assert old is not new

    await cache.prune()

    assert old.closed and not new.closed
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_aclose_closes_every_transport() -> None:
    cache = TransportCache(factory=_StubTransport)
    transports = [cache.get(ClientSettings(api_key=key)) for key in ("a", "b")]

    await cache.aclose()

    assert all(transport.closed for transport in transports)
    assert len(cache) == 0
