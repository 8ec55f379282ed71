"""Command-line interface for the fiberline monitoring server."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .auth import Role, TokenIssuer
from .config import Config
from .errors import MonitorError

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def load_config(config_path: Optional[Path], env_file: Optional[Path] = None) -> Config:
    """YAML file (if given) first, then environment variables on top."""
    base = Config.from_yaml(config_path) if config_path else Config.default()
    return Config.from_env(env_file, base=base)


config_option = click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to a config.yaml file",
)
env_file_option = click.option(
    "--env-file",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to a .env file",
)


@click.group()
@click.version_option(version=__version__)
def main():
    """Fiberline Monitor - real-time telemetry for a carbon-fiber line.

    Synthesizes process, equipment and alert telemetry every tick and fans it
    out to WebSocket subscribers, with a REST API alongside.

    Process types: pan, carbon_fiber, prepreg, composite
    """
    pass


@main.command()
@config_option
@env_file_option
@click.option("--host", default=None, help="Bind address")
@click.option("--port", "-p", type=int, default=None, help="WebSocket port")
@click.option("--api-port", type=int, default=None, help="REST API port")
@click.option("--interval", type=int, default=None, help="Tick interval in milliseconds")
@click.option("--seed", type=int, default=None, help="Random seed for reproducible runs")
@click.option("--mqtt/--no-mqtt", default=None, help="Mirror telemetry to an MQTT broker")
@click.option(
    "--dry-run-mqtt",
    is_flag=True,
    default=False,
    help="Log MQTT mirror traffic instead of connecting to a broker",
)
def run(config_path, env_file, host, port, api_port, interval, seed, mqtt, dry_run_mqtt):
    """Start the monitoring server.

    Command-line options override the config file and environment.
    """
    from .server import run_server

    cfg = load_config(config_path, env_file)
    if host is not None:
        cfg.server.host = host
    if port is not None:
        cfg.server.ws_port = port
    if api_port is not None:
        cfg.server.api_port = api_port
    if interval is not None:
        cfg.simulation.tick_interval_ms = interval
    if seed is not None:
        cfg.simulation.random_seed = seed
    if mqtt is not None:
        cfg.mqtt.enabled = mqtt
    if dry_run_mqtt:
        cfg.mqtt.enabled = True

    run_server(cfg, dry_run_mqtt=dry_run_mqtt)


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    default=Path("config"),
    help="Output directory for config files",
)
def init(output):
    """Generate a sample configuration file."""
    output.mkdir(parents=True, exist_ok=True)

    cfg = Config.default()
    config_path = output / "config.yaml"
    cfg.to_yaml(config_path)

    click.echo(f"Created: {config_path}")
    click.echo()
    click.echo("Edit the config file to customize:")
    click.echo("  - WebSocket and REST ports")
    click.echo("  - Tick interval and history capacities")
    click.echo("  - Optional MQTT mirror")
    click.echo()
    click.echo(f"Run with: fiberline-monitor run --config {config_path}")


@main.command()
@click.argument("username")
@click.option(
    "--role",
    "-r",
    type=click.Choice([role.value for role in Role]),
    default=None,
    help="Role to embed (defaults to the demo user's role, else operator)",
)
@config_option
@env_file_option
def token(username, role, config_path, env_file):
    """Issue a session token for USERNAME."""
    cfg = load_config(config_path, env_file)
    issuer = TokenIssuer(cfg.session.jwt_secret, cfg.session.token_ttl_hours)
    try:
        click.echo(issuer.issue(username, Role(role) if role else None))
    except MonitorError as e:
        raise click.ClickException(e.message)


@main.command()
@click.option("--url", default=None, help="WebSocket URL (default: ws://localhost:<port>)")
@click.option("--username", "-u", default="operator1", help="User to authenticate as")
@click.option(
    "--event",
    "-e",
    "events",
    multiple=True,
    help="Only print these events (repeatable)",
)
@config_option
@env_file_option
def watch(url, username, events, config_path, env_file):
    """Connect as a client and print incoming events."""
    from .client import DISCONNECTED, MAX_RECONNECT_ATTEMPTS_REACHED, MonitorClient
    from .protocol import Event

    cfg = load_config(config_path, env_file)
    issuer = TokenIssuer(cfg.session.jwt_secret, cfg.session.token_ttl_hours)
    client = MonitorClient(
        url or f"ws://localhost:{cfg.server.ws_port}",
        token=issuer.issue(username),
        heartbeat_interval_ms=cfg.session.heartbeat_interval_ms,
        reconnect_delay_ms=cfg.session.reconnect_delay_ms,
        reconnect_attempts=cfg.session.reconnect_attempts,
    )

    names = events or [
        Event.CONNECTED,
        Event.AUTHENTICATED,
        Event.PROCESS_DATA,
        Event.EQUIPMENT_STATUS,
        Event.NEW_ALERT,
        Event.KPI_UPDATE,
        Event.ALERT_ACKNOWLEDGED,
        Event.PERIODIC_REPORT,
        Event.ERROR,
        DISCONNECTED,
        MAX_RECONNECT_ATTEMPTS_REACHED,
    ]

    def printer(name):
        def _print(data):
            click.echo(f"{name}: {json.dumps(data)}")

        return _print

    for name in names:
        client.on(name, printer(name))

    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        click.echo("\nStopped.")


@main.command()
@config_option
@env_file_option
def status(config_path, env_file):
    """Show the effective configuration."""
    cfg = load_config(config_path, env_file)

    click.echo("Fiberline Monitor")
    click.echo("=" * 40)
    click.echo()
    click.echo(f"WebSocket:  ws://{cfg.server.host}:{cfg.server.ws_port}")
    click.echo(f"REST API:   http://{cfg.server.host}:{cfg.server.api_port}")
    click.echo(f"Tick:       {cfg.simulation.tick_interval_ms} ms")
    click.echo(f"Equipment:  {cfg.simulation.equipment_count} units")
    click.echo(
        f"History:    {cfg.history.process_capacity} records / "
        f"{cfg.history.alert_capacity} alerts"
    )
    if cfg.mqtt.enabled:
        click.echo(f"MQTT:       {cfg.mqtt.broker}:{cfg.mqtt.port} ({cfg.mqtt.topic_prefix})")
    else:
        click.echo("MQTT:       disabled")
    click.echo()

    click.echo("Process types:")
    click.echo("  pan, carbon_fiber, prepreg, composite")


if __name__ == "__main__":
    main()
