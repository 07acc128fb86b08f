"""Mini-Passy - local request router for OpenAI/Anthropic-compatible LLM APIs.

Components:
- config:     provider/alias definitions parsed from environment-style keys
- discovery:  boot-time probing of which wire formats and models a provider serves
- routing:    alias table and fallback policy
- proxy:      dispatch with sequential fallback and unbuffered streaming
- server:     aiohttp HTTP surface (/health, /v1/models, /v1/chat/completions, /v1/messages)
- lifecycle:  runs the gateway as a supervised subprocess for an embedding app

Usage (embedded):
    >>> from minipassy import GatewayManager
    >>> manager = GatewayManager(env={
    ...     "PROVIDER_OPENAI_URL": "https://api.openai.com",
    ...     "PROVIDER_OPENAI_KEY": "sk-...",
    ...     "ALIAS_FAST": "openai:gpt-4o-mini",
    ... })
    >>> await manager.ready()
    >>> manager.url
    'http://127.0.0.1:3333'
    >>> await manager.stop()

Usage (in-process):
    >>> from minipassy import GatewayServer, load_config
    >>> server = GatewayServer(config=load_config())
    >>> await server.serve()
"""

from minipassy.__version__ import __version__
from minipassy.config import GatewayConfig, ProviderConfig, load_config
from minipassy.errors import (
    AggregateFailure,
    ConfigurationError,
    DiscoveryError,
    GatewayNotReadyError,
    PassyError,
    PortError,
    ProcessError,
    RoutingError,
    UpstreamError,
)
from minipassy.lifecycle import GatewayManager, HealthState, get_default_manager
from minipassy.routing import Alias, AliasTable, FailureClass, Target
from minipassy.server import GatewayServer

__all__ = [
    "__version__",
    # Config
    "GatewayConfig",
    "ProviderConfig",
    "load_config",
    # Routing
    "Alias",
    "AliasTable",
    "FailureClass",
    "Target",
    # Server
    "GatewayServer",
    # Lifecycle
    "GatewayManager",
    "HealthState",
    "get_default_manager",
    # Errors
    "AggregateFailure",
    "ConfigurationError",
    "DiscoveryError",
    "GatewayNotReadyError",
    "PassyError",
    "PortError",
    "ProcessError",
    "RoutingError",
    "UpstreamError",
]
