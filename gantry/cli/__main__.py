"""Gantry CLI - main entry point.

Commands:
    serve    - Run an app under uvicorn
    migrate  - Create/migrate tables and save seeds
    routes   - List registered routes
    cleanup  - Purge soft-deleted rows of a model
"""

import sys
from typing import Optional, Tuple

import click

from . import __cli_name__, __version__
from .colors import _CHECK, _CROSS, error, info, kv, success, table


def _setup(ctx: click.Context) -> None:
    from gantry.bootstrap import setup

    setup(list(ctx.obj["config"]) or None, env_file=ctx.obj["env_file"])


@click.group()
@click.version_option(version=__version__, prog_name=__cli_name__)
@click.option("--config", "-c", multiple=True, help="Config file (YAML/JSON); repeatable")
@click.option("--env-file", type=click.Path(), default=None, help=".env file with GANTRY_* keys")
@click.pass_context
def cli(ctx, config: Tuple[str, ...], env_file: Optional[str]):
    """Generic CRUD services over registered models.

    \b
    Quick start:
      gantry migrate app:app
      gantry serve app:app --port 9000
    """
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["env_file"] = env_file


# ============================================================================
# Commands
# ============================================================================

@cli.command("serve")
@click.argument("app")
@click.option("--host", type=str, default=None, help="Bind host (default: server.host)")
@click.option("--port", type=int, default=None, help="Bind port (default: server.port)")
@click.option("--reload/--no-reload", default=False, help="Restart on code changes")
@click.option("--log-level", type=click.Choice(["debug", "info", "warning", "error"]), default="info")
@click.pass_context
def serve(ctx, app: str, host: Optional[str], port: Optional[int], reload: bool, log_level: str):
    """Serve APP (module:attribute) with uvicorn."""
    from gantry.config import get_config

    from .commands import serve as _serve

    _setup(ctx)
    server = get_config().server
    host = host or server.host
    port = port or server.port
    info(f"Serving {app} on http://{host}:{port} (mode={server.mode})")
    try:
        _serve(app, host, port, reload, log_level)
    except ValueError as e:
        error(f"  {_CROSS} {e}")
        sys.exit(1)


@cli.command("migrate")
@click.argument("app")
@click.pass_context
def migrate(ctx, app: str):
    """Create or migrate every registered table, then save seeds."""
    from .commands import migrate as _migrate

    _setup(ctx)
    try:
        tables = _migrate(app)
    except ValueError as e:
        error(f"  {_CROSS} {e}")
        sys.exit(1)
    success(f"  {_CHECK} Migrated {len(tables)} table(s)")
    for name in tables:
        kv("table", name)


@cli.command("routes")
@click.argument("app")
@click.pass_context
def routes(ctx, app: str):
    """List the routes of APP."""
    from .commands import routes as _routes

    try:
        rows = _routes(app)
    except ValueError as e:
        error(f"  {_CROSS} {e}")
        sys.exit(1)
    table(["METHOD", "PATH", "NAME"], rows)


@cli.command("cleanup")
@click.argument("app")
@click.argument("model")
@click.pass_context
def cleanup(ctx, app: str, model: str):
    """Permanently remove soft-deleted rows of MODEL."""
    from .commands import cleanup as _cleanup

    _setup(ctx)
    try:
        removed = _cleanup(app, model)
    except ValueError as e:
        error(f"  {_CROSS} {e}")
        sys.exit(1)
    success(f"  {_CHECK} Removed {removed} soft-deleted row(s) from {model}")


def main():
    """Entry point for `gantry` command."""
    cli(obj={})


if __name__ == "__main__":
    main()
