"""AzureMachine controller CLI (machine-operator).

Usage:
    machine-operator run                      # Run the controller
    machine-operator run --store memory       # Run against the in-memory store
    machine-operator provider-id encode UUID  # Build a provider ID from a VM ID
    machine-operator provider-id decode ID    # Extract the VM ID from a provider ID
    machine-operator version                  # Print the version
"""

from __future__ import annotations

import asyncio
import os
import sys

import click

from .config import StoreBackend
from .providerid import convert_provider_id_to_uuid, convert_uuid_to_provider_id

VERSION = "0.1.0"
PROG_NAME = "machine-operator"


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=VERSION, prog_name=PROG_NAME)
def cli() -> None:
    """AzureMachine controller CLI (machine-operator).

    Reconciles AzureMachine resources against Azure virtual machines.

    \b
    Quick Start:
        machine-operator run --store memory
        machine-operator provider-id decode azure://<vm-id>
    """
    pass


# =============================================================================
# Run Command
# =============================================================================


@cli.command()
@click.option("--namespace", "-n", help="Namespace to watch (default: all namespaces)")
@click.option(
    "--store",
    "store_backend",
    type=click.Choice([b.value for b in StoreBackend]),
    help="Resource store backend",
)
@click.option("--provider", help="VM service descriptor (default: azure)")
@click.option("--workers", type=int, help="Maximum concurrent reconciles")
def run(
    namespace: str | None,
    store_backend: str | None,
    provider: str | None,
    workers: int | None,
) -> None:
    """Run the controller until SIGTERM or SIGINT.

    Options override the corresponding environment variables.
    """
    overrides = {
        "WATCH_NAMESPACE": namespace,
        "STORE_BACKEND": store_backend,
        "PROVIDER": provider,
        "MAX_CONCURRENT_RECONCILES": str(workers) if workers is not None else None,
    }
    for key, value in overrides.items():
        if value is not None:
            os.environ[key] = value

    from .main import main

    sys.exit(asyncio.run(main()))


# =============================================================================
# Provider ID Commands
# =============================================================================


@cli.group("provider-id")
def provider_id() -> None:
    """Convert between VM IDs and provider IDs."""
    pass


@provider_id.command("encode")
@click.argument("uuid")
def provider_id_encode(uuid: str) -> None:
    """Print the provider ID for a VM ID."""
    result = convert_uuid_to_provider_id(uuid)
    if not result:
        click.secho(f"Invalid VM ID: {uuid}", fg="red", err=True)
        sys.exit(1)
    click.echo(result)


@provider_id.command("decode")
@click.argument("value")
def provider_id_decode(value: str) -> None:
    """Print the VM ID contained in a provider ID."""
    result = convert_provider_id_to_uuid(value)
    if not result:
        click.secho(f"Invalid provider ID: {value}", fg="red", err=True)
        sys.exit(1)
    click.echo(result)


# =============================================================================
# Version Command
# =============================================================================


@cli.command()
def version() -> None:
    """Print the controller version."""
    click.echo(f"{PROG_NAME} {VERSION}")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
