"""Boot-time capability discovery.

Each provider is probed twice on ``GET <base_url>/v1/models``:

- OpenAI format: ``Authorization: Bearer <key>``
- Anthropic format: ``x-api-key: <key>`` + ``anthropic-version``

The probes are independent and each has its own timeout. A successful probe
sets the format flag and merges the returned model ids into the provider.
Failures are logged and otherwise ignored: a provider that answers neither
probe stays registered (so ``/health`` can show it) but is never routed to.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from minipassy.errors import DiscoveryError
from minipassy.providers import Provider, ProviderRegistry, WireFormat

logger = logging.getLogger(__name__)

MODELS_PATH = "/v1/models"


@dataclass
class ProbeResult:
    """Outcome of one capability probe."""

    provider: str
    format: WireFormat
    ok: bool
    models: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class DiscoveryReport:
    """Outcome of discovery across all providers."""

    results: list[ProbeResult] = field(default_factory=list)

    def for_provider(self, name: str) -> list[ProbeResult]:
        return [r for r in self.results if r.provider == name]

    @property
    def errors(self) -> list[str]:
        return [f"{r.provider}/{r.format}: {r.error}" for r in self.results if not r.ok]


def _extract_model_ids(payload: Any) -> list[str]:
    """Pull ``data[].id`` out of a model-list response."""
    if not isinstance(payload, dict):
        raise ValueError("model list is not a JSON object")
    data = payload.get("data") or []
    if not isinstance(data, list):
        raise ValueError("'data' is not a list")
    return [m["id"] for m in data if isinstance(m, dict) and isinstance(m.get("id"), str)]


async def probe(
    session: aiohttp.ClientSession,
    provider: Provider,
    fmt: WireFormat,
    timeout: float,
) -> ProbeResult:
    """Run a single model-list probe.

    Args:
        session: Client session to send the probe with
        provider: Provider to probe
        fmt: Which auth convention to probe with
        timeout: Total timeout for this probe in seconds

    Returns:
        ProbeResult; failures are reported, never raised
    """
    url = f"{provider.base_url}{MODELS_PATH}"
    # Discovery always uses the first credential so probes do not advance rotation
    headers = provider.auth_headers(fmt, credential=provider.config.credentials[0])

    try:
        async with session.get(
            url, headers=headers, timeout=aiohttp.ClientTimeout(total=timeout)
        ) as resp:
            if not 200 <= resp.status < 300:
                raise DiscoveryError(provider.name, fmt, f"HTTP {resp.status}")
            try:
                payload = await resp.json(content_type=None)
                models = _extract_model_ids(payload)
            except ValueError as e:
                raise DiscoveryError(provider.name, fmt, f"bad model list: {e}") from e
    except DiscoveryError as e:
        logger.info("[%s] ✗ %s format: %s", provider.name, fmt, e.reason)
        return ProbeResult(provider.name, fmt, ok=False, error=e.reason)
    except TimeoutError:
        logger.info("[%s] ✗ %s format: timed out after %.1fs", provider.name, fmt, timeout)
        return ProbeResult(provider.name, fmt, ok=False, error="timeout")
    except aiohttp.ClientError as e:
        logger.info("[%s] ✗ %s format: %s", provider.name, fmt, type(e).__name__)
        return ProbeResult(provider.name, fmt, ok=False, error=str(e) or type(e).__name__)

    logger.info("[%s] ✓ %s format, %d models", provider.name, fmt, len(models))
    return ProbeResult(provider.name, fmt, ok=True, models=models)


async def discover_provider(
    session: aiohttp.ClientSession,
    provider: Provider,
    timeout: float,
) -> list[ProbeResult]:
    """Probe both formats for one provider and record the results on it."""
    logger.debug("[%s] Discovering...", provider.name)
    results = await asyncio.gather(
        probe(session, provider, "openai", timeout),
        probe(session, provider, "anthropic", timeout),
    )

    # Merge in a fixed order (openai first) regardless of which probe finished first
    for result in results:
        if not result.ok:
            continue
        if result.format == "openai":
            provider.openai = True
        else:
            provider.anthropic = True
        provider.merge_models(result.models)

    provider.discovered = True
    if not provider.routable:
        logger.warning("[%s] ✗ No compatible format found; excluded from routing", provider.name)
    return list(results)


async def discover_providers(
    registry: ProviderRegistry,
    session: aiohttp.ClientSession | None = None,
    timeout: float = 5.0,
) -> DiscoveryReport:
    """Run discovery for every provider and wait for all of them.

    Args:
        registry: Providers to probe; updated in place
        session: Client session to reuse; a temporary one is created if None
        timeout: Per-probe timeout in seconds

    Returns:
        DiscoveryReport with one result per probe
    """
    report = DiscoveryReport()
    if not len(registry):
        return report

    owns_session = session is None
    if session is None:
        session = aiohttp.ClientSession()

    try:
        per_provider = await asyncio.gather(
            *(discover_provider(session, provider, timeout) for provider in registry)
        )
    finally:
        if owns_session:
            await session.close()

    for results in per_provider:
        report.results.extend(results)

    routable = sum(1 for p in registry if p.routable)
    logger.info("Discovery complete: %d/%d providers routable", routable, len(registry))
    return report
