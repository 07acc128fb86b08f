"""Pytest configuration and fixtures."""

from __future__ import annotations

import socket
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest

from minipassy.config import GatewayConfig, ProviderConfig
from minipassy.routing import Alias
from minipassy.server import GatewayServer


def provider_spec(
    url: str,
    keys: list[str] | None = None,
    openai: bool = True,
    anthropic: bool = False,
    models: list[str] | None = None,
) -> dict[str, Any]:
    """Describe a provider with hand-set discovery results."""
    return {
        "url": url,
        "keys": keys or ["test-key"],
        "openai": openai,
        "anthropic": anthropic,
        "models": models or [],
    }


@pytest.fixture
def make_provider() -> Callable[..., dict[str, Any]]:
    return provider_spec


@pytest.fixture
async def gateway_factory() -> AsyncIterator[Callable[..., Any]]:
    """Start gateways on OS-assigned ports with discovery results set by hand.

    Yields a coroutine function ``(providers, aliases, **config) -> (server, base_url)``.
    """
    servers: list[GatewayServer] = []

    async def _make(
        providers: dict[str, dict[str, Any]],
        aliases: list[Alias],
        **config_kwargs: Any,
    ) -> tuple[GatewayServer, str]:
        config = GatewayConfig(
            host="127.0.0.1",
            port=0,
            providers={
                name: ProviderConfig(name=name, base_url=spec["url"], credentials=tuple(spec["keys"]))
                for name, spec in providers.items()
            },
            aliases={alias.name: alias for alias in aliases},
            **config_kwargs,
        )
        server = GatewayServer(config=config)
        for name, spec in providers.items():
            provider = server.registry.get(name)
            assert provider is not None
            provider.openai = spec["openai"]
            provider.anthropic = spec["anthropic"]
            provider.merge_models(spec["models"])
            provider.discovered = True

        await server.start(discover=False)
        server.mark_discovered()
        servers.append(server)
        return server, server.url

    yield _make

    for server in servers:
        await server.stop()


def occupy_consecutive_ports(count: int, attempts: int = 50) -> tuple[list[socket.socket], int]:
    """Hold ``count`` consecutive listening ports whose successor is free.

    Returns:
        (listening sockets, first port). Close the sockets when done.
    """
    for _ in range(attempts):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
            probe.bind(("127.0.0.1", 0))
            base = probe.getsockname()[1]
        if base + count >= 65535:
            continue

        held: list[socket.socket] = []
        try:
            for port in range(base, base + count + 1):
                s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
                s.bind(("127.0.0.1", port))
                held.append(s)
        except OSError:
            for s in held:
                s.close()
            continue

        # Release the successor so it is free, keep the rest listening
        held.pop().close()
        for s in held:
            s.listen(1)
        return held, base

    raise RuntimeError(f"Could not find {count + 1} consecutive free ports")


@pytest.fixture
def occupied_ports() -> Any:
    """Factory fixture: ``occupied_ports(n)`` -> first of n held ports (n+1-th is free)."""
    held: list[socket.socket] = []

    def _occupy(count: int) -> int:
        sockets, base = occupy_consecutive_ports(count)
        held.extend(sockets)
        return base

    yield _occupy

    for s in held:
        s.close()
