"""Barley CLI - Main Entry Point.

Commands:
    serve   - Run the service with uvicorn
    routes  - List registered routes
    config  - Print the resolved configuration
"""

import sys
from typing import Optional

import click
import yaml

from . import __version__
from .config import ConfigError, ConfigLoader


def _load_config(path: Optional[str], env_file: Optional[str]):
    try:
        return ConfigLoader.load(path=path, env_file=env_file)
    except ConfigError as e:
        click.secho(f"✗ Configuration error: {e.message}", fg="red", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="barley")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="YAML config file")
@click.option("--env-file", type=click.Path(dir_okay=False), default=".env", show_default=True,
              help=".env file to read")
@click.pass_context
def cli(ctx, config_path: Optional[str], env_file: Optional[str]):
    """Barley order service."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["env_file"] = env_file


@cli.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind host")
@click.option("--port", type=int, default=8000, show_default=True, help="Bind port")
@click.pass_context
def serve(ctx, host: str, port: int):
    """
    Start the HTTP server.

    Examples:
      barley serve
      barley --config=barley.yaml serve --host=0.0.0.0 --port=8080
    """
    import uvicorn

    from .app import create_app

    config = _load_config(ctx.obj["config_path"], ctx.obj["env_file"])
    app = create_app(config, setup_logging=True)
    click.secho(f"✓ barley {__version__} ({config.env}) on http://{host}:{port}", fg="green")
    try:
        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level=config.logging.level.lower(),
            server_header=False,
        )
    except KeyboardInterrupt:
        click.echo("✓ Server stopped")


@cli.command("routes")
@click.pass_context
def routes(ctx):
    """List registered routes."""
    from .app import create_app

    config = _load_config(ctx.obj["config_path"], ctx.obj["env_file"])
    app = create_app(config)
    table = app.router.get_routes()
    width = max(len(r["path"]) for r in table) + 2
    for route in table:
        line = f"  {route['method']:<7} {route['path']:<{width}} {route['controller']}.{route['name']}"
        click.echo(line)
        if route["summary"]:
            click.secho(f"          {route['summary']}", dim=True)


@cli.command("config")
@click.option("--show-secrets", is_flag=True, help="Print secret values")
@click.pass_context
def show_config(ctx, show_secrets: bool):
    """Print the resolved configuration as YAML."""
    config = _load_config(ctx.obj["config_path"], ctx.obj["env_file"])
    data = config.to_dict()
    if not show_secrets:
        data["csrf"]["secret"] = "********"
    click.echo(yaml.safe_dump(data, sort_keys=False).rstrip())


def main():
    """Main entry point for the barley CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
