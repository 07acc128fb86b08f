"""Proxy engine: dispatch a request to an alias's targets with fallback.

Targets are tried strictly one after another in declared order. A target is
skipped without a network call when its provider is not registered, answered
neither wire format during discovery, or does not serve the target model.
Otherwise the request is converted to the provider's wire format, sent with
the provider's next credential, and the outcome classified:

- qualifying failure (5xx / timeout / 429) included in the alias policy:
  recorded, next target
- anything else: relayed to the caller immediately

Streaming responses are copied to the caller chunk by chunk as they arrive
from upstream, so memory use does not depend on response size.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp
from aiohttp import web

from minipassy.errors import AggregateFailure, Convention, UpstreamError, error_body
from minipassy.routing import Alias, FailureClass, Target, classify_status
from minipassy.transforms import convert_request, convert_response

if TYPE_CHECKING:
    from minipassy.providers import Provider, ProviderRegistry, WireFormat

logger = logging.getLogger(__name__)

UPSTREAM_PATHS = {
    "openai": "/v1/chat/completions",
    "anthropic": "/v1/messages",
}

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _transport_failure(provider: str, exc: BaseException, stage: str) -> UpstreamError:
    """Classify a failure that left no usable upstream response.

    Timeouts map to 504 / TIMEOUT, everything else to 502 / SERVER_ERROR.
    """
    if isinstance(exc, TimeoutError):
        return UpstreamError(f"{provider}: timeout", 504, failure_class=FailureClass.TIMEOUT)
    return UpstreamError(
        f"{provider}: {stage} failed ({type(exc).__name__})",
        502,
        failure_class=FailureClass.SERVER_ERROR,
    )


@dataclass
class ProxyEngine:
    """Sends resolved requests upstream over a shared, bounded connection pool.

    Example:
        >>> engine = ProxyEngine(registry)
        >>> await engine.start()
        >>> response = await engine.dispatch(request, alias, body, "openai", trace_id)
        >>> await engine.close()
    """

    registry: ProviderRegistry
    connect_timeout: float = 10.0
    upstream_timeout: float = 300.0
    pool_size: int = 50
    keepalive_timeout: float = 60.0
    _session: aiohttp.ClientSession | None = field(default=None, repr=False)

    async def start(self) -> None:
        """Create the pooled client session."""
        if self._session is not None:
            return
        connector = aiohttp.TCPConnector(
            limit=self.pool_size,
            limit_per_host=self.pool_size,
            keepalive_timeout=self.keepalive_timeout,
        )
        self._session = aiohttp.ClientSession(connector=connector)

    async def close(self) -> None:
        """Close the client session and its pooled connections."""
        if self._session:
            await self._session.close()
            self._session = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("ProxyEngine not started. Call start() first.")
        return self._session

    def _timeout(self, streaming: bool) -> aiohttp.ClientTimeout:
        # Streams may legitimately run long; bound the gap between chunks instead
        if streaming:
            return aiohttp.ClientTimeout(
                total=None, connect=self.connect_timeout, sock_read=self.upstream_timeout
            )
        return aiohttp.ClientTimeout(total=self.upstream_timeout, connect=self.connect_timeout)

    def _skip_reason(self, target: Target, provider: Provider | None) -> str | None:
        """Why a target cannot be dispatched to, or None if it can."""
        if provider is None:
            return f"{target.provider}: not configured"
        if not provider.routable:
            return f"{provider.name}: no compatible API format discovered"
        if not provider.serves(target.model):
            return f"{provider.name}: model '{target.model}' not available"
        return None

    async def dispatch(
        self,
        request: web.Request,
        alias: Alias,
        body: dict[str, Any],
        convention: Convention,
        trace_id: str,
    ) -> web.StreamResponse:
        """Walk the alias's targets until one produces a relayable response.

        Args:
            request: Inbound request (needed to prepare streaming responses)
            alias: Resolved alias
            body: Parsed inbound JSON body
            convention: Wire convention of the inbound endpoint
            trace_id: Correlation id for logs and the X-Trace-Id header

        Returns:
            The response relayed to the caller

        Raises:
            AggregateFailure: Every target was skipped or failed with a
                qualifying error
        """
        errors: list[str] = []
        wants_stream = bool(body.get("stream"))

        for index, target in enumerate(alias.targets):
            provider = self.registry.get(target.provider)
            skip = self._skip_reason(target, provider)
            if skip is not None:
                logger.info("[%s] Skipping %s: %s", trace_id, target, skip)
                errors.append(skip)
                continue
            assert provider is not None

            fmt = provider.choose_format(convention)
            assert fmt is not None
            payload = convert_request(body, convention, fmt, target.model)
            url = f"{provider.base_url}{UPSTREAM_PATHS[fmt]}"
            headers = {"Content-Type": "application/json", **provider.auth_headers(fmt)}

            logger.info(
                "[%s] %s -> %s (%s format, attempt %d/%d)",
                trace_id,
                alias.name,
                target,
                fmt,
                index + 1,
                len(alias.targets),
            )

            try:
                upstream = await self.session.post(
                    url, json=payload, headers=headers, timeout=self._timeout(wants_stream)
                )
            except (TimeoutError, aiohttp.ClientError) as e:
                failure = _transport_failure(provider.name, e, "connection")
            else:
                try:
                    failure_class = classify_status(upstream.status)
                    if alias.should_fall_back(failure_class):
                        failure = UpstreamError(
                            f"{provider.name}: HTTP {upstream.status}",
                            upstream.status,
                            await self._read_detail(upstream),
                            failure_class,
                        )
                        logger.warning(
                            "[%s] %s, falling back: %s", trace_id, failure, failure.response_body
                        )
                        errors.append(str(failure))
                        continue

                    streaming = upstream.status < 300 and (
                        wants_stream or "text/event-stream" in upstream.content_type
                    )
                    if streaming:
                        return await self._relay_stream(request, upstream, provider, trace_id)
                    try:
                        raw = await upstream.read()
                    except (TimeoutError, aiohttp.ClientError) as e:
                        failure = _transport_failure(provider.name, e, "read")
                    else:
                        return self._relay_body(upstream, raw, fmt, convention, provider, trace_id)
                finally:
                    upstream.release()

            # Transport failure: no response to relay
            if alias.should_fall_back(failure.failure_class):
                logger.warning("[%s] %s, falling back", trace_id, failure)
                errors.append(str(failure))
                continue

            logger.error("[%s] %s", trace_id, failure)
            return web.json_response(
                error_body(
                    convention,
                    f"Upstream {failure}",
                    failure.status_code,
                    code="upstream_timeout" if failure.status_code == 504 else "upstream_unavailable",
                ),
                status=failure.status_code,
                headers={"X-Passy-Provider": provider.name, "X-Trace-Id": trace_id},
            )

        logger.error("[%s] All targets failed for '%s': %s", trace_id, alias.name, errors)
        raise AggregateFailure(alias.name, errors)

    async def _read_detail(self, upstream: aiohttp.ClientResponse, limit: int = 500) -> str:
        """Best-effort error body excerpt for logs; never raises."""
        try:
            raw = await upstream.content.read(limit)
        except (TimeoutError, aiohttp.ClientError):
            return ""
        return raw.decode("utf-8", errors="replace")

    async def _relay_stream(
        self,
        request: web.Request,
        upstream: aiohttp.ClientResponse,
        provider: Provider,
        trace_id: str,
    ) -> web.StreamResponse:
        """Pipe an upstream event stream to the caller without buffering."""
        response = web.StreamResponse(
            status=upstream.status,
            headers={**SSE_HEADERS, "X-Passy-Provider": provider.name, "X-Trace-Id": trace_id},
        )
        await response.prepare(request)

        total = 0
        try:
            async for chunk in upstream.content.iter_any():
                total += len(chunk)
                await response.write(chunk)
        except ConnectionResetError:
            logger.debug("[%s] Client disconnected during streaming", trace_id)
            return response
        except (TimeoutError, aiohttp.ClientError) as e:
            # Headers are already sent; all we can do is end the stream
            logger.warning(
                "[%s] Upstream %s broke mid-stream: %s", trace_id, provider.name, type(e).__name__
            )

        logger.info("[%s] Stream complete, forwarded %d bytes from %s", trace_id, total, provider.name)
        try:
            await response.write_eof()
        except ConnectionResetError:
            logger.debug("[%s] Client closed connection early", trace_id)
        return response

    def _relay_body(
        self,
        upstream: aiohttp.ClientResponse,
        raw: bytes,
        fmt: WireFormat,
        convention: Convention,
        provider: Provider,
        trace_id: str,
    ) -> web.Response:
        """Relay a complete upstream response, converting it back if needed."""
        headers = {"X-Passy-Provider": provider.name, "X-Trace-Id": trace_id}

        if upstream.status < 300 and fmt != convention:
            try:
                converted = convert_response(json.loads(raw), fmt, convention)
            except (ValueError, AttributeError):
                logger.warning(
                    "[%s] Could not convert %s response to %s format, relaying as-is",
                    trace_id,
                    fmt,
                    convention,
                )
            else:
                return web.json_response(converted, status=upstream.status, headers=headers)

        if upstream.status >= 400:
            logger.error(
                "[%s] Upstream %s error %d: %s",
                trace_id,
                provider.name,
                upstream.status,
                raw[:500].decode("utf-8", errors="replace"),
            )
        else:
            logger.info("[%s] Response received from %s (%d bytes)", trace_id, provider.name, len(raw))

        return web.Response(
            body=raw,
            status=upstream.status,
            content_type=upstream.content_type or "application/json",
            headers=headers,
        )
