"""NSX policy controller CLI (nsxpc).

Usage:
    nsxpc run                       # Run the controller (config from env)
    nsxpc plan policy.yaml          # Print the NSX patch body for a manifest, offline
    nsxpc inventory                 # Sync from NSX and list owner uids with NSX footprint
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click

from .builder import BuildError, build_security_policy
from .config import DEFAULT_NSX_DOMAIN, Config, ConfigurationError
from .hierarchy import wrap_hierarchy
from .main import main as controller_main
from .nsx_client import NsxClient
from .service import SecurityPolicyService
from .spec_loader import SpecLoadError, load_security_policies_file
from .sync import SyncError


def _load_config() -> Config:
    try:
        return Config.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version="0.1.0", prog_name="nsxpc")
def cli() -> None:
    """NSX security policy controller CLI (nsxpc).

    \b
    Quick Start:
        nsxpc plan specs/web.yaml   # Inspect what a manifest turns into
        nsxpc inventory             # See which owners have NSX objects
        nsxpc run                   # Run the controller
    """
    pass


@cli.command()
def run() -> None:
    """Run the controller until SIGTERM/SIGINT."""
    sys.exit(asyncio.run(controller_main()))


@cli.command()
@click.argument("manifest", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--cluster", default="local", show_default=True, help="Cluster tag value.")
@click.option("--domain", default=DEFAULT_NSX_DOMAIN, show_default=True, help="NSX domain.")
def plan(manifest: Path, cluster: str, domain: str) -> None:
    """Print the hierarchical patch body that creates MANIFEST's objects.

    Offline: nothing is read from or sent to NSX.
    """
    try:
        resources = load_security_policies_file(manifest)
    except SpecLoadError as e:
        raise click.ClickException(str(e)) from e
    if not resources:
        raise click.ClickException(f"No SecurityPolicy documents in {manifest}")

    bodies = []
    for cr in resources:
        try:
            policy, groups = build_security_policy(cr, cluster, domain)
        except BuildError as e:
            raise click.ClickException(
                f"{cr.metadata.namespace}/{cr.metadata.name}: {e}"
            ) from e
        bodies.append(wrap_hierarchy(policy, groups, domain))

    click.echo(json.dumps(bodies[0] if len(bodies) == 1 else bodies, indent=2))


@cli.command()
def inventory() -> None:
    """Sync from NSX and list the owner uids that still have NSX objects."""
    config = _load_config()

    async def _inventory() -> SecurityPolicyService:
        with NsxClient(config) as client:
            return await SecurityPolicyService.initialize(client, config)

    try:
        service = asyncio.run(_inventory())
    except SyncError as e:
        raise click.ClickException(str(e)) from e

    click.echo(
        f"groups={len(service.stores.groups)} "
        f"security_policies={len(service.stores.policies)} "
        f"rules={len(service.stores.rules)}",
        err=True,
    )
    for uid in sorted(service.list_security_policy_ids()):
        click.echo(uid)


if __name__ == "__main__":
    cli()
