"""Gateway configuration.

Providers and aliases are declared with environment-style keys:

    PROVIDER_OPENAI_URL=https://api.openai.com
    PROVIDER_OPENAI_KEY=sk-one,sk-two
    ALIAS_FAST=groq:llama-3.1-8b-instant
    ALIAS_FAST_FALLBACK=openai:gpt-4o-mini,together
    ALIAS_FAST_FALLBACK_ON=5xx,timeout

``load_config()`` parses such a mapping (``os.environ`` by default) into a
``GatewayConfig`` once at boot. Tests build ``GatewayConfig`` directly or pass
their own mapping, so nothing here depends on the process environment.

Incomplete or malformed entries are logged and skipped; loading never fails
because of a single bad entry.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from minipassy.errors import ConfigurationError
from minipassy.routing import DEFAULT_FALLBACK_ON, Alias, FailureClass, Target

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3333
DEFAULT_HOST = "127.0.0.1"

# Per-probe discovery timeout is clamped to this range
MIN_DISCOVERY_TIMEOUT = 5.0
MAX_DISCOVERY_TIMEOUT = 10.0

_PROVIDER_URL_RE = re.compile(r"^PROVIDER_(.+)_URL$")
_PROVIDER_KEY_RE = re.compile(r"^PROVIDER_(.+)_KEY(?:_(\d+))?$")
_ALIAS_RE = re.compile(r"^ALIAS_(.+?)(_FALLBACK|_FALLBACK_ON)?$")


@dataclass(frozen=True)
class ProviderConfig:
    """Static definition of one upstream provider.

    Attributes:
        name: Unique provider id (lower-cased)
        base_url: Base URL without trailing slash; ``/v1/...`` paths are appended
        credentials: One or more API keys, rotated round-robin per request
    """

    name: str
    base_url: str
    credentials: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigurationError("provider name must not be empty")
        if not self.base_url:
            raise ConfigurationError(f"provider '{self.name}' has no URL")
        if not self.credentials:
            raise ConfigurationError(f"provider '{self.name}' has no credentials")
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))

    def __repr__(self) -> str:
        # Never leak keys into logs
        return (
            f"ProviderConfig(name={self.name!r}, base_url={self.base_url!r}, "
            f"credentials=<{len(self.credentials)}>)"
        )


@dataclass
class GatewayConfig:
    """Everything the gateway needs to boot.

    Attributes:
        host: Listen address
        port: Requested listen port; the bound port may be higher
        port_retries: How many sequential ports to try on EADDRINUSE
        providers: Provider definitions by id
        aliases: Alias definitions by public name
        discovery_timeout: Per-probe timeout for capability discovery
        connect_timeout: Upstream connect timeout
        upstream_timeout: Total timeout of each upstream call
        body_timeout: Timeout for reading an inbound request body
        max_body_size: Largest accepted inbound request body in bytes
        parent_pid: When set, exit once this process is no longer our parent
    """

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    port_retries: int = 10
    providers: dict[str, ProviderConfig] = field(default_factory=dict)
    aliases: dict[str, Alias] = field(default_factory=dict)

    # Timeouts (seconds)
    discovery_timeout: float = MIN_DISCOVERY_TIMEOUT
    connect_timeout: float = 10.0
    upstream_timeout: float = 300.0
    body_timeout: float = 30.0

    # Request limits
    max_body_size: int = 10 * 1024 * 1024  # 10MB

    # Connection pool
    pool_size: int = 50
    keepalive_timeout: float = 60.0

    parent_pid: int | None = None


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _parse_target(spec: str, default_model: str) -> Target:
    """Parse ``provider`` or ``provider:model``; only the first colon splits."""
    provider, sep, model = spec.partition(":")
    provider = provider.strip().lower()
    if not provider:
        raise ConfigurationError(f"empty provider in target '{spec}'")
    model = model.strip()
    return Target(provider=provider, model=model if sep and model else default_model)


def _int_setting(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer, using %d", key, raw, default)
        return default


def _float_setting(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number, using %s", key, raw, default)
        return default


def load_providers(env: Mapping[str, str]) -> dict[str, ProviderConfig]:
    """Parse PROVIDER_<ID>_URL / PROVIDER_<ID>_KEY[_<N>] pairs.

    A provider missing either half of its URL/KEY pair is skipped.
    """
    urls: dict[str, str] = {}
    keys: dict[str, list[tuple[int, str]]] = {}

    for key, value in env.items():
        url_match = _PROVIDER_URL_RE.match(key)
        if url_match:
            if value.strip():
                urls[url_match.group(1).lower()] = value.strip()
            continue
        key_match = _PROVIDER_KEY_RE.match(key)
        if key_match and value.strip():
            order = int(key_match.group(2)) if key_match.group(2) else 0
            keys.setdefault(key_match.group(1).lower(), []).append((order, value))

    providers: dict[str, ProviderConfig] = {}
    for name in sorted(set(urls) | set(keys)):
        credentials: list[str] = []
        for _, raw in sorted(keys.get(name, [])):
            credentials.extend(_split_csv(raw))
        try:
            if name not in urls:
                raise ConfigurationError(f"PROVIDER_{name.upper()}_URL is missing")
            if not credentials:
                raise ConfigurationError(f"PROVIDER_{name.upper()}_KEY is missing")
            providers[name] = ProviderConfig(
                name=name, base_url=urls[name], credentials=tuple(credentials)
            )
        except ConfigurationError as e:
            logger.warning("Skipping provider '%s': %s", name, e)
            continue
        logger.debug("Registered provider '%s' (%d credentials)", name, len(credentials))

    return providers


def load_aliases(
    env: Mapping[str, str],
    providers: Mapping[str, ProviderConfig] | None = None,
) -> dict[str, Alias]:
    """Parse ALIAS_<NAME>, ALIAS_<NAME>_FALLBACK and ALIAS_<NAME>_FALLBACK_ON.

    Args:
        env: Configuration mapping
        providers: Registered providers. When given, aliases with no target
            on a registered provider are rejected.

    Returns:
        Aliases by lower-cased public name
    """
    primaries: dict[str, str] = {}
    fallbacks: dict[str, str] = {}
    policies: dict[str, str] = {}

    for key, value in env.items():
        match = _ALIAS_RE.match(key)
        if not match or not value.strip():
            continue
        name, suffix = match.group(1).lower(), match.group(2)
        if suffix == "_FALLBACK":
            fallbacks[name] = value
        elif suffix == "_FALLBACK_ON":
            policies[name] = value
        else:
            primaries[name] = value

    aliases: dict[str, Alias] = {}
    for name in sorted(primaries):
        try:
            primary = _parse_target(primaries[name], default_model=name)
            targets = [primary]
            for spec in _split_csv(fallbacks.get(name, "")):
                target = _parse_target(spec, default_model=primary.model)
                if target not in targets:
                    targets.append(target)
        except ConfigurationError as e:
            logger.warning("Skipping alias '%s': %s", name, e)
            continue

        fallback_on = DEFAULT_FALLBACK_ON
        if name in policies:
            parsed = set()
            for token in _split_csv(policies[name]):
                try:
                    parsed.add(FailureClass.parse(token))
                except ValueError:
                    logger.warning("Alias '%s': ignoring unknown fallback class %r", name, token)
            fallback_on = frozenset(parsed)

        if providers is not None and not any(t.provider in providers for t in targets):
            logger.warning(
                "Skipping alias '%s': none of its providers (%s) are registered",
                name,
                ", ".join(t.provider for t in targets),
            )
            continue

        aliases[name] = Alias(name=name, targets=tuple(targets), fallback_on=fallback_on)
        logger.debug(
            "Registered alias '%s' -> %s", name, " -> ".join(str(t) for t in targets)
        )

    for orphan in sorted((set(fallbacks) | set(policies)) - set(primaries)):
        logger.warning(
            "Ignoring fallback settings for '%s': ALIAS_%s is not set", orphan, orphan.upper()
        )

    return aliases


def load_config(env: Mapping[str, str] | None = None) -> GatewayConfig:
    """Build a GatewayConfig from an environment-style mapping.

    Args:
        env: Mapping to read; defaults to ``os.environ``

    Returns:
        GatewayConfig with providers, aliases and listen settings
    """
    if env is None:
        env = os.environ

    providers = load_providers(env)
    aliases = load_aliases(env, providers)

    parent_pid = _int_setting(env, "PASSY_PARENT_PID", 0) or None
    discovery_timeout = _float_setting(env, "PASSY_DISCOVERY_TIMEOUT", MIN_DISCOVERY_TIMEOUT)

    config = GatewayConfig(
        host=env.get("HOST") or DEFAULT_HOST,
        port=_int_setting(env, "PORT", DEFAULT_PORT),
        port_retries=max(1, _int_setting(env, "PASSY_PORT_RETRIES", 10)),
        providers=providers,
        aliases=aliases,
        discovery_timeout=min(max(discovery_timeout, MIN_DISCOVERY_TIMEOUT), MAX_DISCOVERY_TIMEOUT),
        connect_timeout=_float_setting(env, "PASSY_CONNECT_TIMEOUT", 10.0),
        upstream_timeout=_float_setting(env, "PASSY_UPSTREAM_TIMEOUT", 300.0),
        body_timeout=_float_setting(env, "PASSY_BODY_TIMEOUT", 30.0),
        max_body_size=_int_setting(env, "PASSY_MAX_BODY_SIZE", 10 * 1024 * 1024),
        parent_pid=parent_pid,
    )
    logger.info(
        "Loaded %d providers (%s) and %d aliases (%s)",
        len(providers),
        ", ".join(providers) or "none",
        len(aliases),
        ", ".join(aliases) or "none",
    )
    return config
