"""Gateway HTTP server.

Exposes:
- GET  /health               gateway status + provider/alias inventory
- GET  /v1/models            alias names in OpenAI model-list format
- POST /v1/chat/completions  OpenAI convention
- POST /v1/messages          Anthropic convention

Each ``GatewayServer`` owns its provider registry, alias table, credential
cursors and connection pool, so several gateways can run in one process.

Startup order: bind (negotiating the port), then run capability discovery.
``/health`` answers 503 ``starting`` until discovery has finished for every
provider and proxy endpoints hold requests until then.
"""

from __future__ import annotations

import asyncio
import errno
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

from aiohttp import web

from minipassy.config import GatewayConfig
from minipassy.discovery import DiscoveryReport, discover_providers
from minipassy.errors import (
    AggregateFailure,
    Convention,
    InvalidRequestError,
    PortError,
    RoutingError,
    error_body,
)
from minipassy.providers import ProviderRegistry
from minipassy.proxy import ProxyEngine
from minipassy.routing import AliasTable
from minipassy.tracing import RequestTracer

logger = logging.getLogger(__name__)


async def bind_with_retry(
    runner: web.AppRunner,
    host: str,
    port: int,
    retries: int = 10,
) -> tuple[web.TCPSite, int]:
    """Bind the app to ``port``, moving to the next port while it is taken.

    The bind itself is the availability check: there is no separate probe
    that could go stale before the real bind.

    Args:
        runner: Set-up application runner
        host: Address to bind
        port: First port to try (0 lets the OS choose)
        retries: Number of sequential ports to try

    Returns:
        (site, actually bound port)

    Raises:
        PortError: If every port in range was in use
        OSError: On any bind failure other than "address in use"
    """
    for attempt in range(retries):
        candidate = port + attempt if port else 0
        site = web.TCPSite(runner, host, candidate)
        try:
            await site.start()
        except OSError as e:
            await site.stop()
            if e.errno == errno.EADDRINUSE:
                logger.debug(
                    "Port %d already in use, trying next (attempt %d/%d)",
                    candidate,
                    attempt + 1,
                    retries,
                )
                continue
            raise
        bound: int = site._server.sockets[0].getsockname()[1]
        return site, bound

    raise PortError(f"No free port in {port}-{port + retries - 1}")


@dataclass
class GatewayServer:
    """The routing gateway.

    Example:
        >>> config = load_config()
        >>> server = GatewayServer(config=config)
        >>> await server.serve()
    """

    config: GatewayConfig
    registry: ProviderRegistry = field(init=False)
    aliases: AliasTable = field(init=False)
    bound_port: int | None = None
    _engine: ProxyEngine = field(init=False)
    _app: web.Application | None = None
    _runner: web.AppRunner | None = None
    _site: web.TCPSite | None = None
    _discovered: asyncio.Event = field(default_factory=asyncio.Event)
    _shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    _discovery_task: asyncio.Task[DiscoveryReport | None] | None = None
    _tracer: RequestTracer = field(default_factory=RequestTracer)

    def __post_init__(self) -> None:
        self.registry = ProviderRegistry.from_configs(self.config.providers.values())
        self.aliases = AliasTable.from_aliases(self.config.aliases)
        self._engine = ProxyEngine(
            registry=self.registry,
            connect_timeout=self.config.connect_timeout,
            upstream_timeout=self.config.upstream_timeout,
            pool_size=self.config.pool_size,
            keepalive_timeout=self.config.keepalive_timeout,
        )

    @property
    def url(self) -> str:
        if self.bound_port is None:
            raise RuntimeError("Gateway is not listening")
        return f"http://{self.config.host}:{self.bound_port}"

    @property
    def ready(self) -> bool:
        """Discovery has completed and requests are being dispatched."""
        return self._discovered.is_set()

    def build_app(self) -> web.Application:
        """Create the aiohttp application with routes and error isolation."""

        @web.middleware
        async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
            try:
                return await handler(request)
            except web.HTTPException as e:
                if e.status < 400:
                    raise
                code = "not_found" if e.status == 404 else e.reason.lower().replace(" ", "_")
                return web.json_response(
                    error_body("openai", e.reason, e.status, code=code), status=e.status
                )
            except Exception:
                logger.exception("Unhandled error for %s %s", request.method, request.path)
                return web.json_response(
                    error_body("openai", "Internal server error", 500, code="internal_error"),
                    status=500,
                )

        app = web.Application(
            client_max_size=self.config.max_body_size,
            middlewares=[error_middleware],
        )
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/v1/models", self._handle_models)
        app.router.add_post("/v1/chat/completions", self._handle_chat_completions)
        app.router.add_post("/v1/messages", self._handle_messages)
        return app

    async def start(self, discover: bool = True) -> int:
        """Bind the server and kick off discovery.

        Args:
            discover: Run capability discovery in the background. When False,
                call ``run_discovery()`` (or ``mark_discovered()``) yourself.

        Returns:
            The port actually bound
        """
        await self._engine.start()

        self._app = self.build_app()
        self._runner = web.AppRunner(self._app, access_log=None)
        await self._runner.setup()
        try:
            self._site, self.bound_port = await bind_with_retry(
                self._runner, self.config.host, self.config.port, self.config.port_retries
            )
        except (OSError, PortError):
            await self.stop()
            raise

        logger.info("Mini-Passy running on http://%s:%d", self.config.host, self.bound_port)
        logger.info("Aliases: %s", ", ".join(self.aliases.names()) or "none")

        if discover:
            self._discovery_task = asyncio.create_task(self.run_discovery())
        return self.bound_port

    async def run_discovery(self) -> DiscoveryReport | None:
        """Probe every provider, then open the gate for proxied requests."""
        try:
            return await discover_providers(
                self.registry, self._engine.session, timeout=self.config.discovery_timeout
            )
        except Exception:
            logger.exception("Capability discovery failed")
            return None
        finally:
            self._discovered.set()

    def mark_discovered(self) -> None:
        """Open the discovery gate without probing (capabilities set by hand)."""
        self._discovered.set()

    async def serve(self) -> None:
        """Start, serve until shutdown is requested, then stop."""
        await self.start()
        watchdog = None
        if self.config.parent_pid:
            watchdog = asyncio.create_task(self._watch_parent(self.config.parent_pid))
        try:
            await self._shutdown_event.wait()
            logger.info("Gateway shutdown requested")
        finally:
            if watchdog:
                watchdog.cancel()
            await self.stop()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def stop(self) -> None:
        """Stop listening and close upstream connections."""
        if self._discovery_task and not self._discovery_task.done():
            self._discovery_task.cancel()
            try:
                await self._discovery_task
            except asyncio.CancelledError:
                pass
        self._discovery_task = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
        await self._engine.close()

    async def _watch_parent(self, parent_pid: int, interval: float = 1.0) -> None:
        """Shut down once the spawning process is gone (we were re-parented)."""
        while True:
            if os.getppid() != parent_pid:
                logger.warning("Parent process %d exited, shutting down", parent_pid)
                self.request_shutdown()
                return
            await asyncio.sleep(interval)

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health."""
        ready = self.ready
        return web.json_response(
            {
                "status": "ok" if ready else "starting",
                "pid": os.getpid(),
                "port": self.bound_port,
                "providers": [p.summary() for p in self.registry],
                "aliases": self.aliases.names(),
            },
            status=200 if ready else 503,
        )

    async def _handle_models(self, request: web.Request) -> web.Response:
        """Handle GET /v1/models - list alias names."""
        created = int(time.time())
        data = [
            {
                "id": alias.name,
                "object": "model",
                "created": created,
                "owned_by": alias.primary.provider if alias.primary else "unknown",
            }
            for alias in self.aliases
        ]
        return web.json_response({"object": "list", "data": data})

    async def _handle_chat_completions(self, request: web.Request) -> web.StreamResponse:
        """Handle POST /v1/chat/completions."""
        return await self._proxy(request, "openai")

    async def _handle_messages(self, request: web.Request) -> web.StreamResponse:
        """Handle POST /v1/messages."""
        return await self._proxy(request, "anthropic")

    async def _read_json(self, request: web.Request) -> dict[str, Any]:
        """Read the request body within the size and time bounds."""
        try:
            raw = await asyncio.wait_for(request.read(), timeout=self.config.body_timeout)
        except TimeoutError as e:
            raise InvalidRequestError(
                "Timed out reading request body", status=408, code="body_timeout"
            ) from e
        except web.HTTPRequestEntityTooLarge as e:
            raise InvalidRequestError(
                "Request body too large", status=413, code="body_too_large"
            ) from e

        try:
            body = json.loads(raw)
        except ValueError as e:
            raise InvalidRequestError(
                f"Invalid JSON in request body: {e}", code="invalid_json"
            ) from e
        if not isinstance(body, dict):
            raise InvalidRequestError("Request body must be a JSON object", code="invalid_json")

        messages = body.get("messages")
        if messages is not None and not (
            isinstance(messages, list) and all(isinstance(m, dict) for m in messages)
        ):
            raise InvalidRequestError(
                "'messages' must be a list of message objects", code="invalid_messages"
            )
        return body

    async def _proxy(self, request: web.Request, convention: Convention) -> web.StreamResponse:
        try:
            body = await self._read_json(request)
            alias = self.aliases.resolve(body.get("model"))
        except (InvalidRequestError, RoutingError) as e:
            logger.info("Rejected %s request: %s", convention, e)
            return web.json_response(
                error_body(convention, str(e), e.status, code=e.code), status=e.status
            )

        # Startup barrier: no dispatch before discovery has finished
        await self._discovered.wait()

        trace_id = self._tracer.generate_trace_id(body, convention)
        logger.info(
            "[%s] Request: model=%s, messages=%d, stream=%s",
            trace_id,
            alias.name,
            len(body.get("messages") or []),
            bool(body.get("stream")),
        )

        try:
            return await self._engine.dispatch(request, alias, body, convention, trace_id)
        except AggregateFailure as e:
            return web.json_response(
                error_body(
                    convention, "All providers failed", e.status, code="all_providers_failed",
                    details=e.details,
                ),
                status=e.status,
                headers={"X-Trace-Id": trace_id},
            )
