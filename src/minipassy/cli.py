"""CLI entry point (``python -m minipassy``).

This is what ``GatewayManager`` spawns. It reads provider and alias
definitions from the environment.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys

import rich_click as click

from minipassy.__version__ import __version__

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    # Quiet noisy loggers
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


def print_table(headers: list[str], rows: list[list[str]], widths: list[int]) -> None:
    """Print a formatted table with headers."""
    fmt = " ".join(f"{{:<{w}}}" for w in widths[:-1]) + " {}"
    click.echo(fmt.format(*headers))
    click.echo("-" * (sum(widths) + len(widths)))
    for row in rows:
        click.echo(fmt.format(*row))


@click.group()
@click.version_option(__version__, package_name="mini-passy")
@click.option(
    "--log-level",
    default=lambda: os.environ.get("PASSY_LOG_LEVEL", "INFO"),
    show_default="INFO (or $PASSY_LOG_LEVEL)",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level",
)
def cli(log_level: str) -> None:
    """Mini-Passy - local OpenAI/Anthropic-compatible LLM router.

    Providers and aliases come from the environment:

        PROVIDER_<ID>_URL, PROVIDER_<ID>_KEY

        ALIAS_<NAME>=provider[:model], ALIAS_<NAME>_FALLBACK=p1,p2
    """
    _configure_logging(log_level)


@cli.command()
@click.option("--host", default=None, help="Address to bind (default: $HOST or 127.0.0.1)")
@click.option("--port", type=int, default=None, help="First port to try (default: $PORT or 3333)")
def serve(host: str | None, port: int | None) -> None:
    """Run the gateway until interrupted.

    If the port is taken the next free one (up to $PASSY_PORT_RETRIES) is
    used; check /health for the bound port.
    """
    from minipassy.config import load_config
    from minipassy.errors import PortError
    from minipassy.server import GatewayServer

    config = load_config()
    if host:
        config.host = host
    if port is not None:
        config.port = port

    async def run() -> None:
        server = GatewayServer(config=config)
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, server.request_shutdown)
        await server.serve()

    try:
        asyncio.run(run())
    except PortError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@click.option("--json", "-j", "json_output", is_flag=True, help="Output as JSON")
def check(json_output: bool) -> None:
    """Run capability discovery once and show what each provider answers."""
    from minipassy.config import load_config
    from minipassy.discovery import discover_providers
    from minipassy.providers import ProviderRegistry

    config = load_config()
    registry = ProviderRegistry.from_configs(config.providers.values())
    asyncio.run(discover_providers(registry, timeout=config.discovery_timeout))

    if json_output:
        click.echo(
            json.dumps(
                {
                    "providers": [p.summary() for p in registry],
                    "aliases": {
                        name: [str(t) for t in alias.targets]
                        for name, alias in config.aliases.items()
                    },
                },
                indent=2,
            )
        )
        return

    print_table(
        ["PROVIDER", "OPENAI", "ANTHROPIC", "MODELS"],
        [
            [p.name, "yes" if p.openai else "no", "yes" if p.anthropic else "no", str(len(p.models))]
            for p in registry
        ],
        widths=[20, 8, 10, 6],
    )
    click.echo()
    print_table(
        ["ALIAS", "TARGETS"],
        [[name, " -> ".join(str(t) for t in alias.targets)] for name, alias in config.aliases.items()],
        widths=[20, 40],
    )


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
