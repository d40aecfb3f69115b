import json
import logging
import sys

import click

from .client import BrokerClient, BrokerError
from .server.app import run_server
from .server.errors import ConfigError


@click.group()
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
              envvar="PORTBROKER_LOG_LEVEL", help="Log level (can be set via PORTBROKER_LOG_LEVEL)")
def cli(log_level):
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    # Suppress httpx request logs to reduce noise
    logging.getLogger("httpx").setLevel(logging.WARNING)


@cli.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), envvar="PORTBROKER_CONFIG",
              help="JSON configuration file read once at startup (env: PORTBROKER_CONFIG)")
@click.option("--host", envvar="PORTBROKER_HOST",
              help="Host for the control plane to bind (default: 0.0.0.0, env: PORTBROKER_HOST)")
@click.option("--port", type=int, envvar="PORTBROKER_PORT",
              help="Port for the control plane (default: 3000, env: PORTBROKER_PORT)")
@click.option("--db-path", envvar="PORTBROKER_DB_PATH",
              help="Path to SQLite database file (default: portbroker.db, env: PORTBROKER_DB_PATH)")
@click.option("--base-port", type=int, envvar="PORTBROKER_INITIAL_PUBLIC_PORT",
              help="First public port handed to tunnels (default: 9000, env: PORTBROKER_INITIAL_PUBLIC_PORT)")
@click.option("--region", envvar="PORTBROKER_REGION",
              help="Region label reported to clients (env: PORTBROKER_REGION)")
def server(config_path, host, port, db_path, base_port, region):
    """Start the tunnel broker."""
    try:
        run_server(host=host, port=port, db_path=db_path, config_path=config_path,
                   base_port=base_port, region=region)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


def _client_options(f):
    f = click.option("--api-key", envvar="PORTBROKER_API_KEY",
                     help="API key for tunnel operations (env: PORTBROKER_API_KEY)")(f)
    f = click.option("--server-url", default="http://localhost:3000", envvar="PORTBROKER_SERVER_URL",
                     help="Broker control plane URL (default: http://localhost:3000, env: PORTBROKER_SERVER_URL)")(f)
    return f


def _run(call):
    try:
        result = call()
    except BrokerError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(result, indent=2))


@cli.command("generate-key")
@_client_options
@click.argument("user")
def generate_key(server_url, api_key, user):
    """Request a new API key for USER."""
    with BrokerClient(server_url, api_key) as client:
        _run(lambda: {"apiKey": client.generate_api_key(user)})


@cli.command()
@_client_options
@click.argument("local_port", type=click.IntRange(1, 65535))
def register(server_url, api_key, local_port):
    """Expose LOCAL_PORT through the broker."""
    with BrokerClient(server_url, api_key) as client:
        _run(lambda: client.register(local_port))


@cli.command()
@_client_options
@click.argument("tunnel_id")
def stop(server_url, api_key, tunnel_id):
    """Stop tunnel TUNNEL_ID."""
    with BrokerClient(server_url, api_key) as client:
        _run(lambda: client.stop(tunnel_id))


@cli.command()
@_client_options
@click.argument("tunnel_id")
def status(server_url, api_key, tunnel_id):
    """Show the status of tunnel TUNNEL_ID."""
    with BrokerClient(server_url, api_key) as client:
        _run(lambda: client.status(tunnel_id))


if __name__ == "__main__":
    cli()
