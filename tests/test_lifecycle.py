"""Tests for GatewayManager (gateway subprocess lifecycle)."""

import asyncio
import os
import signal
import sys

import aiohttp
import pytest
from aiohttp import web

from minipassy import lifecycle
from minipassy.config import MAX_DISCOVERY_TIMEOUT, GatewayConfig
from minipassy.errors import GatewayNotReadyError, ProcessError
from minipassy.lifecycle import GatewayManager, GatewayProcess, HealthState, get_default_manager
from minipassy.server import GatewayServer

# Real subprocess startup can be slow on loaded CI machines
STARTUP_TIMEOUT = 30.0


class TestGatewayProcess:
    """Tests for the per-attempt state machine."""

    def test_happy_path(self):
        handle = GatewayProcess(requested_port=3333)
        for state in (HealthState.STARTING, HealthState.READY, HealthState.STOPPED):
            handle.transition(state)
        assert handle.state is HealthState.STOPPED

    def test_crash_path(self):
        handle = GatewayProcess(requested_port=3333)
        handle.transition(HealthState.STARTING)
        handle.transition(HealthState.CRASHED)
        handle.transition(HealthState.STOPPED)

    @pytest.mark.parametrize(
        "path",
        [
            (HealthState.READY,),
            (HealthState.STARTING, HealthState.READY, HealthState.STARTING),
            (HealthState.STARTING, HealthState.CRASHED, HealthState.READY),
            (HealthState.STOPPED, HealthState.STARTING),
        ],
    )
    def test_illegal_transitions(self, path):
        handle = GatewayProcess(requested_port=3333)
        with pytest.raises(ProcessError, match="Illegal"):
            for state in path:
                handle.transition(state)

    def test_no_process(self):
        handle = GatewayProcess(requested_port=3333)
        assert handle.pid is None
        assert not handle.alive


class TestGatewayManagerUnit:
    """Manager behavior that does not need a child process."""

    def test_rejects_port_zero(self):
        with pytest.raises(ValueError):
            GatewayManager(port=0)

    def test_url_before_ready(self):
        manager = GatewayManager(port=3333)
        assert manager.state is HealthState.UNSTARTED
        assert manager.pid is None
        with pytest.raises(GatewayNotReadyError):
            _ = manager.url

    async def test_stop_before_start_is_noop(self):
        manager = GatewayManager(port=3333)
        await manager.stop()
        assert manager.state is HealthState.UNSTARTED

    def test_child_env(self, monkeypatch):
        monkeypatch.setenv("PROVIDER_X_URL", "https://x")
        manager = GatewayManager(port=4000, env={"ALIAS_FAST": "x:m", "PORT": "4100"})
        env = manager._build_env()
        assert env["PROVIDER_X_URL"] == "https://x"
        assert env["ALIAS_FAST"] == "x:m"
        assert env["PORT"] == "4100"
        assert env["PASSY_PARENT_PID"] == str(os.getpid())

    def test_default_command(self):
        assert GatewayManager(port=3333)._build_command() == [
            sys.executable,
            "-m",
            "minipassy",
            "serve",
        ]

    def test_default_manager_is_shared(self, monkeypatch):
        monkeypatch.setattr(lifecycle, "_default_manager", None)
        first = get_default_manager(port=4444)
        assert get_default_manager(port=5555) is first
        assert first.port == 4444

    def test_default_startup_timeout_outlasts_discovery(self):
        assert GatewayManager(port=3333).startup_timeout > MAX_DISCOVERY_TIMEOUT


@pytest.fixture
async def managers():
    """Track managers so their children are stopped after each test."""
    created: list[GatewayManager] = []

    def _make(**kwargs) -> GatewayManager:
        kwargs.setdefault("startup_timeout", STARTUP_TIMEOUT)
        manager = GatewayManager(**kwargs)
        created.append(manager)
        return manager

    yield _make

    for manager in created:
        await manager.stop()


async def health(url):
    async with (
        aiohttp.ClientSession() as session,
        session.get(f"{url}/health") as resp,
    ):
        return resp.status, await resp.json()


class TestGatewayManagerProcess:
    """Lifecycle tests against a real gateway subprocess."""

    async def test_ready_then_stop(self, managers, occupied_ports):
        port = occupied_ports(0)
        manager = managers(port=port)

        await manager.ready()
        assert manager.state is HealthState.READY
        assert manager.url == f"http://127.0.0.1:{port}"

        status, data = await health(manager.url)
        assert status == 200
        assert data["pid"] == manager.pid

        await manager.stop()
        assert manager.state is HealthState.STOPPED
        with pytest.raises(GatewayNotReadyError):
            _ = manager.url

    async def test_ready_is_idempotent(self, managers, occupied_ports):
        manager = managers(port=occupied_ports(0))

        await manager.ready()
        pid = manager.pid
        await manager.ready()
        assert manager.pid == pid

    async def test_concurrent_ready_shares_one_spawn(self, managers, occupied_ports):
        manager = managers(port=occupied_ports(0))

        await asyncio.gather(manager.ready(), manager.ready(), manager.ready())
        pid = manager.pid
        assert manager.state is HealthState.READY
        await manager.ready()
        assert manager.pid == pid

    async def test_restart_after_stop(self, managers, occupied_ports):
        manager = managers(port=occupied_ports(0))

        await manager.ready()
        first_pid = manager.pid
        await manager.stop()
        await manager.ready()

        assert manager.pid != first_pid
        status, data = await health(manager.url)
        assert status == 200
        assert data["pid"] == manager.pid

    async def test_respawns_killed_child(self, managers, occupied_ports):
        manager = managers(port=occupied_ports(0), health_interval=0.05)

        await manager.ready()
        first_pid = manager.pid
        os.kill(first_pid, signal.SIGKILL)
        await manager._handle.process.wait()

        await manager.ready()
        assert manager.pid != first_pid
        assert manager.state is HealthState.READY

    async def test_negotiates_next_port(self, managers, occupied_ports):
        base = occupied_ports(2)
        manager = managers(port=base)

        await manager.ready()
        assert manager.url == f"http://127.0.0.1:{base + 2}"
        status, data = await health(manager.url)
        assert data["port"] == base + 2

    async def test_child_exits_during_startup(self, managers):
        manager = managers(port=3333, command=[sys.executable, "-c", "import sys; sys.exit(3)"])

        with pytest.raises(ProcessError, match="code 3"):
            await manager.ready()
        assert manager.state is HealthState.CRASHED

        await manager.stop()
        assert manager.state is HealthState.STOPPED

    async def test_startup_timeout(self, managers, occupied_ports):
        manager = managers(
            port=occupied_ports(0),
            command=[sys.executable, "-c", "import time; time.sleep(60)"],
            startup_timeout=0.5,
            stop_timeout=1.0,
        )

        with pytest.raises(ProcessError, match="did not become healthy"):
            await manager.ready()
        assert manager.state is HealthState.CRASHED
        assert not manager._handle.alive

    async def test_spawn_failure(self, managers):
        manager = managers(port=3333, command=["/nonexistent/minipassy-binary"])

        with pytest.raises(ProcessError, match="Failed to spawn"):
            await manager.ready()
        assert manager.state is HealthState.CRASHED

    async def test_cancelled_startup_leaves_no_child(self, managers, occupied_ports):
        manager = managers(
            port=occupied_ports(0),
            command=[sys.executable, "-c", "import time; time.sleep(60)"],
            stop_timeout=1.0,
        )
        handles = []

        for _ in range(2):
            with pytest.raises(TimeoutError):
                await asyncio.wait_for(manager.ready(), timeout=0.5)
            handles.append(manager._handle)

        assert handles[0] is not handles[1]
        assert [h.alive for h in handles] == [False, False]
        assert [h.state for h in handles] == [HealthState.STOPPED, HealthState.STOPPED]
        assert not lifecycle._live_pids & {h.pid for h in handles}

    async def test_ready_replaces_leftover_child(self, managers, occupied_ports):
        manager = managers(port=occupied_ports(0))
        leftover = GatewayProcess(requested_port=manager.port)
        leftover.process = await asyncio.create_subprocess_exec(
            sys.executable, "-c", "import time; time.sleep(60)"
        )
        leftover.transition(HealthState.STARTING)
        manager._handle = leftover

        await manager.ready()

        assert not leftover.alive
        assert leftover.state is HealthState.STOPPED
        assert manager.pid != leftover.pid

    async def test_ready_with_unresponsive_provider(self, managers, occupied_ports):
        release = asyncio.Event()

        async def hang(request):
            await release.wait()
            return web.json_response({"data": []})

        app = web.Application()
        app.router.add_get("/v1/models", hang)
        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "127.0.0.1", 0)
        await site.start()
        upstream = f"http://127.0.0.1:{site._server.sockets[0].getsockname()[1]}"

        try:
            manager = managers(
                port=occupied_ports(0),
                env={
                    "PROVIDER_SLOW_URL": upstream,
                    "PROVIDER_SLOW_KEY": "k",
                    "PASSY_DISCOVERY_TIMEOUT": "10",
                },
                startup_timeout=GatewayManager.startup_timeout,
            )
            await manager.ready()

            status, data = await health(manager.url)
            assert status == 200
            assert data["providers"] == [
                {"name": "slow", "models": 0, "openai": False, "anthropic": False}
            ]
        finally:
            release.set()
            await runner.cleanup()


class TestOrphanWatchdog:
    """The gateway exits by itself once its parent process is gone."""

    async def test_watchdog_requests_shutdown(self):
        server = GatewayServer(config=GatewayConfig(port=0))
        await asyncio.wait_for(server._watch_parent(os.getppid() + 1, interval=0.01), timeout=5)
        assert server._shutdown_event.is_set()

    async def test_serve_returns_when_parent_differs(self):
        server = GatewayServer(config=GatewayConfig(port=0, parent_pid=os.getppid() + 1))
        await asyncio.wait_for(server.serve(), timeout=10)
        assert server._runner is None
