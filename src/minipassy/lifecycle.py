"""Gateway lifecycle manager - runs the gateway as a supervised subprocess.

An embedding application uses ``GatewayManager`` to get a local gateway URL
without managing the process itself:

    >>> manager = GatewayManager(port=3333, env={"PROVIDER_OPENAI_URL": "..."})
    >>> await manager.ready()
    >>> manager.url
    'http://127.0.0.1:3333'
    >>> await manager.stop()

Key Concepts:
- Each spawn attempt walks UNSTARTED -> STARTING -> READY | CRASHED -> STOPPED
- The gateway negotiates its own port (it binds directly and moves up on
  EADDRINUSE); the manager finds the bound port by polling /health on each
  candidate port and matching the reported pid against its child's pid
- Nothing is parsed from the child's output
- ready() is idempotent while the child is healthy and respawns a dead one
- Children are killed at interpreter exit; the child additionally exits by
  itself once its parent is gone
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import os
import signal
import subprocess
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Any

import aiohttp

from minipassy.config import DEFAULT_PORT, MAX_DISCOVERY_TIMEOUT
from minipassy.errors import GatewayNotReadyError, ProcessError

logger = logging.getLogger(__name__)

# Guard against registering the atexit handler multiple times
_atexit_registered = False
_live_pids: set[int] = set()

# Boot time allowed on top of the slowest possible discovery round
STARTUP_MARGIN = 10.0


def _kill_live_children() -> None:
    """Terminate every gateway child still running at interpreter exit."""
    for pid in list(_live_pids):
        try:
            os.kill(pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            pass
        _live_pids.discard(pid)


def _track(pid: int) -> None:
    global _atexit_registered
    if not _atexit_registered:
        atexit.register(_kill_live_children)
        _atexit_registered = True
    _live_pids.add(pid)


class HealthState(Enum):
    """Health of one spawn attempt."""

    UNSTARTED = "unstarted"
    STARTING = "starting"
    READY = "ready"
    CRASHED = "crashed"
    STOPPED = "stopped"


_TRANSITIONS: dict[HealthState, frozenset[HealthState]] = {
    HealthState.UNSTARTED: frozenset({HealthState.STARTING, HealthState.STOPPED}),
    HealthState.STARTING: frozenset(
        {HealthState.READY, HealthState.CRASHED, HealthState.STOPPED}
    ),
    HealthState.READY: frozenset({HealthState.STOPPED}),
    HealthState.CRASHED: frozenset({HealthState.STOPPED}),
    HealthState.STOPPED: frozenset(),
}


@dataclass
class GatewayProcess:
    """Handle on one spawned gateway.

    Attributes:
        requested_port: Port the child was asked to bind
        process: The child process (None until spawned)
        port: Port the child actually bound (None until READY)
        state: Health state of this spawn attempt
    """

    requested_port: int
    process: asyncio.subprocess.Process | None = None
    port: int | None = None
    state: HealthState = HealthState.UNSTARTED

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    def transition(self, new_state: HealthState) -> None:
        """Move to ``new_state``; states never go backwards within one attempt.

        Raises:
            ProcessError: On a transition the state machine does not allow
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise ProcessError(
                f"Illegal gateway state transition {self.state.value} -> {new_state.value}"
            )
        logger.debug("Gateway pid=%s: %s -> %s", self.pid, self.state.value, new_state.value)
        self.state = new_state


@dataclass
class GatewayManager:
    """Spawns, health-checks and stops one gateway subprocess.

    Attributes:
        port: Port the gateway should try first
        env: Extra environment for the child (provider/alias definitions)
        host: Address the gateway listens on
        port_retries: How many sequential ports the gateway may try
        startup_timeout: Max seconds from spawn until /health reports ok; must
            exceed the child's discovery timeout, since /health stays 503 until
            discovery finishes
        health_interval: Seconds between health polls during startup
        health_request_timeout: Timeout of a single health request
        stop_timeout: Seconds to wait after SIGTERM before SIGKILL
        command: Override the command that starts the gateway
        output: Where the child's stdout/stderr go (default: discarded)
    """

    port: int = DEFAULT_PORT
    env: dict[str, str] = field(default_factory=dict)
    host: str = "127.0.0.1"
    port_retries: int = 10
    startup_timeout: float = MAX_DISCOVERY_TIMEOUT + STARTUP_MARGIN
    health_interval: float = 0.1
    health_request_timeout: float = 0.5
    stop_timeout: float = 5.0
    command: list[str] | None = None
    output: int | IO[Any] | None = subprocess.DEVNULL
    _handle: GatewayProcess | None = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def __post_init__(self) -> None:
        if self.port <= 0:
            raise ValueError("GatewayManager needs an explicit port to negotiate from")

    @property
    def state(self) -> HealthState:
        return self._handle.state if self._handle else HealthState.UNSTARTED

    @property
    def pid(self) -> int | None:
        return self._handle.pid if self._handle else None

    @property
    def url(self) -> str:
        """Base URL of the running gateway.

        Raises:
            GatewayNotReadyError: If ready() has not completed
        """
        handle = self._handle
        if handle is None or handle.state is not HealthState.READY or handle.port is None:
            raise GatewayNotReadyError("Gateway not ready. Call ready() first.")
        return f"http://{self.host}:{handle.port}"

    async def ready(self) -> None:
        """Make sure a healthy gateway is running.

        Returns immediately if the current gateway still answers its health
        check; otherwise the dead process is reaped and a new one spawned.
        Concurrent callers share a single spawn.

        Raises:
            ProcessError: If the gateway fails to start or become healthy
        """
        async with self._lock:
            handle = self._handle
            if handle is not None and handle.state is HealthState.READY:
                if handle.alive and await self._is_healthy(handle):
                    return
                logger.warning(
                    "Gateway (pid %s) is no longer healthy, restarting", handle.pid
                )
            if handle is not None and handle.state is not HealthState.STOPPED:
                # Never leave a previous child running next to the new one
                await self._terminate(handle)

            self._handle = GatewayProcess(requested_port=self.port)
            await self._spawn(self._handle)

    async def stop(self) -> None:
        """Terminate the gateway and forget its port. Safe to call repeatedly."""
        async with self._lock:
            handle = self._handle
            if handle is None:
                return
            await self._terminate(handle)
            handle.port = None

    def _build_command(self) -> list[str]:
        if self.command:
            return list(self.command)
        return [sys.executable, "-m", "minipassy", "serve"]

    def _build_env(self) -> dict[str, str]:
        env = {
            **os.environ,
            "PORT": str(self.port),
            "HOST": self.host,
            "PASSY_PORT_RETRIES": str(self.port_retries),
            **self.env,
        }
        env["PASSY_PARENT_PID"] = str(os.getpid())
        return env

    async def _spawn(self, handle: GatewayProcess) -> None:
        env = self._build_env()
        requested = handle.requested_port = int(env["PORT"])
        handle.transition(HealthState.STARTING)

        command = self._build_command()
        logger.info("Starting gateway: %s (port %d)", " ".join(command), requested)
        try:
            handle.process = await asyncio.create_subprocess_exec(
                *command,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=self.output,
                stderr=self.output,
            )
        except OSError as e:
            handle.transition(HealthState.CRASHED)
            raise ProcessError(f"Failed to spawn gateway: {e}") from e

        assert handle.process is not None
        _track(handle.process.pid)

        try:
            handle.port = await asyncio.wait_for(
                self._wait_for_health(handle), timeout=self.startup_timeout
            )
        except TimeoutError:
            handle.transition(HealthState.CRASHED)
            await self._terminate(handle, mark_stopped=False)
            raise ProcessError(
                f"Gateway did not become healthy within {self.startup_timeout:.1f}s"
            ) from None
        except ProcessError:
            handle.transition(HealthState.CRASHED)
            await self._terminate(handle, mark_stopped=False)
            raise
        except asyncio.CancelledError:
            # The caller gave up on startup; the child must not outlive this attempt
            logger.info("Gateway startup cancelled, stopping pid %d", handle.process.pid)
            await asyncio.shield(self._terminate(handle))
            raise

        handle.transition(HealthState.READY)
        logger.info("Gateway ready on port %d (pid %d)", handle.port, handle.process.pid)

    async def _fetch_health(
        self, session: aiohttp.ClientSession, port: int
    ) -> dict[str, Any] | None:
        """GET /health on a port; None if nothing usable answered."""
        url = f"http://{self.host}:{port}/health"
        try:
            async with session.get(url) as resp:
                data = await resp.json(content_type=None)
        except (TimeoutError, aiohttp.ClientError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    async def _wait_for_health(self, handle: GatewayProcess) -> int:
        """Poll candidate ports until our child reports healthy.

        Returns:
            The port the child bound

        Raises:
            ProcessError: If the child exits before becoming healthy
        """
        assert handle.process is not None
        candidates = list(range(handle.requested_port, handle.requested_port + self.port_retries))
        timeout = aiohttp.ClientTimeout(total=self.health_request_timeout)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            while True:
                if handle.process.returncode is not None:
                    raise ProcessError(
                        f"Gateway exited with code {handle.process.returncode} during startup"
                    )

                for port in candidates:
                    data = await self._fetch_health(session, port)
                    if data is None or data.get("pid") != handle.process.pid:
                        continue
                    # Found our child; stop scanning the other ports
                    candidates = [port]
                    if data.get("status") == "ok":
                        return port
                    break

                await asyncio.sleep(self.health_interval)

    async def _is_healthy(self, handle: GatewayProcess, attempts: int = 3) -> bool:
        assert handle.port is not None
        timeout = aiohttp.ClientTimeout(total=self.health_request_timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            for attempt in range(attempts):
                data = await self._fetch_health(session, handle.port)
                if data and data.get("pid") == handle.pid and data.get("status") == "ok":
                    return True
                if attempt < attempts - 1:
                    await asyncio.sleep(self.health_interval)
        return False

    async def _terminate(self, handle: GatewayProcess, mark_stopped: bool = True) -> None:
        """SIGTERM, wait, SIGKILL if needed; then mark the attempt STOPPED.

        A failed start passes ``mark_stopped=False`` so the attempt stays
        CRASHED until stop() is called.
        """
        process = handle.process
        if process is not None:
            if process.returncode is None:
                logger.info("Stopping gateway (pid %d)", process.pid)
                try:
                    process.terminate()
                    await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
                except ProcessLookupError:
                    pass
                except TimeoutError:
                    logger.warning("Gateway (pid %d) did not stop gracefully, killing", process.pid)
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()
            else:
                # Reap an already-exited child
                await process.wait()
            _live_pids.discard(process.pid)

        if mark_stopped and handle.state is not HealthState.STOPPED:
            handle.transition(HealthState.STOPPED)


_default_manager: GatewayManager | None = None


def get_default_manager(**kwargs: Any) -> GatewayManager:
    """Process-wide gateway manager (at most one gateway per application).

    Keyword arguments configure the manager on first use and are ignored
    afterwards.
    """
    global _default_manager
    if _default_manager is None:
        _default_manager = GatewayManager(**kwargs)
    return _default_manager
