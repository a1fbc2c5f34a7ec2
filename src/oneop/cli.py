"""OpenNebula operator CLI (oneop).

Usage:
    oneop apply -m manifest.yaml          # Create or update declared objects
    oneop apply -m manifest.yaml --prune  # ...and delete undeclared ones
    oneop destroy -m manifest.yaml        # Delete declared objects
    oneop show -m manifest.yaml           # Print observed state as YAML
    oneop import template/web 42          # Adopt an existing object
    oneop check-config                    # Validate connection settings

Connection settings come from OPENNEBULA_* environment variables; the
--endpoint and --username options override them. The password is only
read from the environment.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click

from .config import Config, ConfigurationError
from .main import (
    EXIT_CONFIG_ERROR,
    run_apply,
    run_destroy,
    run_import,
    run_show,
    run_with_signals,
    setup_logging,
)

DEFAULT_MANIFEST = "oneop.yaml"
DEFAULT_STATE_FILE = ".oneop-state.yaml"


def load_config(endpoint: str | None, username: str | None) -> Config:
    """Load configuration, exiting with code 2 if it is invalid."""
    try:
        return Config.from_env(endpoint=endpoint, username=username)
    except ConfigurationError as e:
        click.secho(str(e), fg="red", err=True)
        sys.exit(EXIT_CONFIG_ERROR)


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="oneop")
@click.option("--endpoint", "-e", help="XML-RPC endpoint (default: $OPENNEBULA_ENDPOINT)")
@click.option("--username", "-u", help="OpenNebula user (default: $OPENNEBULA_USERNAME)")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.pass_context
def cli(ctx: click.Context, endpoint: str | None, username: str | None, verbose: bool) -> None:
    """OpenNebula operator CLI (oneop).

    Converges templates, images and virtual networks declared in a YAML
    manifest.

    \b
    Quick Start:
        export OPENNEBULA_ENDPOINT=http://one:2633/RPC2
        export OPENNEBULA_USERNAME=oneadmin OPENNEBULA_PASSWORD=...
        oneop check-config
        oneop apply -m oneop.yaml
    """
    ctx.ensure_object(dict)
    ctx.obj["endpoint"] = endpoint
    ctx.obj["username"] = username
    ctx.obj["log_level"] = logging.DEBUG if verbose else logging.INFO


manifest_option = click.option(
    "--manifest",
    "-m",
    "manifest_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_MANIFEST,
    show_default=True,
    help="Manifest declaring the desired objects",
)

state_option = click.option(
    "--state",
    "-s",
    "state_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_STATE_FILE,
    show_default=True,
    help="State file recording object ids and applied specs",
)


# =============================================================================
# Reconciliation Commands
# =============================================================================


@cli.command()
@manifest_option
@state_option
@click.option("--prune", is_flag=True, help="Delete objects in state that are no longer declared")
@click.pass_context
def apply(ctx: click.Context, manifest_path: Path, state_path: Path, prune: bool) -> None:
    """Create or update every declared object."""
    config = load_config(ctx.obj["endpoint"], ctx.obj["username"])
    setup_logging(ctx.obj["log_level"])

    exit_code = asyncio.run(
        run_with_signals(
            lambda cancel: run_apply(
                config, manifest_path, state_path, prune=prune, cancel=cancel
            )
        )
    )
    ctx.exit(exit_code)


@cli.command()
@manifest_option
@state_option
@click.confirmation_option(prompt="Delete every object declared in the manifest?")
@click.pass_context
def destroy(ctx: click.Context, manifest_path: Path, state_path: Path) -> None:
    """Delete every declared object, in reverse order."""
    config = load_config(ctx.obj["endpoint"], ctx.obj["username"])
    setup_logging(ctx.obj["log_level"])

    exit_code = asyncio.run(run_destroy(config, manifest_path, state_path))
    ctx.exit(exit_code)


@cli.command()
@manifest_option
@state_option
@click.pass_context
def show(ctx: click.Context, manifest_path: Path, state_path: Path) -> None:
    """Print the observed state of every declared object."""
    config = load_config(ctx.obj["endpoint"], ctx.obj["username"])
    setup_logging(ctx.obj["log_level"])

    exit_code = asyncio.run(run_show(config, manifest_path, state_path))
    ctx.exit(exit_code)


@cli.command("import")
@manifest_option
@state_option
@click.argument("address")
@click.argument("object_id", metavar="ID", type=click.IntRange(min=0))
@click.pass_context
def import_object(
    ctx: click.Context, manifest_path: Path, state_path: Path, address: str, object_id: int
) -> None:
    """Adopt an existing object as a declared one.

    ADDRESS is KIND/KEY of a manifest entry (e.g. template/web), ID the
    numeric id of the remote object.
    """
    config = load_config(ctx.obj["endpoint"], ctx.obj["username"])
    setup_logging(ctx.obj["log_level"])

    exit_code = asyncio.run(run_import(config, manifest_path, state_path, address, object_id))
    ctx.exit(exit_code)


@cli.command("check-config")
@click.pass_context
def check_config(ctx: click.Context) -> None:
    """Validate connection settings without contacting the endpoint."""
    config = load_config(ctx.obj["endpoint"], ctx.obj["username"])
    budget = config.poll_budget

    click.secho("✓ Configuration is valid", fg="green")
    click.echo(f"  Endpoint:        {config.endpoint}")
    click.echo(f"  User:            {config.username}")
    click.echo(f"  Request timeout: {config.request_timeout_seconds:.0f}s")
    click.echo(
        f"  Image wait:      {budget.timeout_seconds:.0f}s, "
        f"polling every {budget.spacing_seconds:.0f}s"
    )
    click.echo(f"  Ambiguous names: {'first match wins' if config.allow_ambiguous_names else 'error'}")


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
