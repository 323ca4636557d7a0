"""CLI for gce-machine.

This module provides the command-line interface for creating and managing
a Compute Engine host: create, start, stop, restart, kill, rm, and the
status/ip/url/inspect queries.
"""
import functools
import json
import logging
from typing import Optional

import click
from google.api_core.exceptions import GoogleAPIError
from google.auth.exceptions import GoogleAuthError
from rich.console import Console

from gce_machine import __version__
from gce_machine.config import (
    DEFAULT_DISK_SIZE,
    DEFAULT_DISK_TYPE,
    DEFAULT_IMAGE_NAME,
    DEFAULT_MACHINE_TYPE,
    DEFAULT_NETWORK,
    DEFAULT_SCOPES,
    DEFAULT_SUBNETWORK,
    DEFAULT_USER,
    DEFAULT_ZONE,
    AUTH_ENV_VAR,
    AUTH_FLAG,
    ConfigError,
    config_from_options,
)
from gce_machine.driver import GCEDriver
from gce_machine.errors import DriverError, RemoveError
from gce_machine.store import DEFAULT_STORE_PATH, MachineNotFoundError, MachineStore

console = Console()

HANDLED_ERRORS = (DriverError, ConfigError, MachineNotFoundError, GoogleAPIError, GoogleAuthError)

# (flag, env var, click kwargs), mirroring the driver's create flags.
GOOGLE_OPTIONS = [
    ("--google-zone", "GOOGLE_ZONE", dict(default=DEFAULT_ZONE, show_default=True, help="GCE Zone")),
    ("--google-machine-type", "GOOGLE_MACHINE_TYPE",
     dict(default=DEFAULT_MACHINE_TYPE, show_default=True, help="GCE Machine Type")),
    ("--google-machine-image", "GOOGLE_MACHINE_IMAGE",
     dict(default=DEFAULT_IMAGE_NAME, show_default=True, help="GCE Machine Image Absolute URL")),
    ("--google-username", "GOOGLE_USERNAME",
     dict(default=DEFAULT_USER, show_default=True, help="GCE User Name")),
    ("--google-auth-encoded-json", "GOOGLE_AUTH_ENCODED_JSON",
     dict(default="", help="Base64 encoded GCE auth json")),
    ("--google-project", "GOOGLE_PROJECT", dict(default="", help="GCE Project")),
    ("--google-scopes", "GOOGLE_SCOPES",
     dict(default=",".join(DEFAULT_SCOPES), help="GCE Scopes (comma-separated if multiple scopes)")),
    ("--google-disk-size", "GOOGLE_DISK_SIZE",
     dict(default=DEFAULT_DISK_SIZE, type=int, show_default=True, help="GCE Instance Disk Size (in GB)")),
    ("--google-disk-type", "GOOGLE_DISK_TYPE",
     dict(default=DEFAULT_DISK_TYPE, show_default=True, help="GCE Instance Disk type")),
    ("--google-network", "GOOGLE_NETWORK",
     dict(default=DEFAULT_NETWORK, show_default=True, help="Specify network in which to provision vm")),
    ("--google-subnetwork", "GOOGLE_SUBNETWORK",
     dict(default=DEFAULT_SUBNETWORK, help="Specify subnetwork in which to provision vm")),
    ("--google-address", "GOOGLE_ADDRESS", dict(default="", help="GCE Instance External IP")),
    ("--google-preemptible", "GOOGLE_PREEMPTIBLE", dict(is_flag=True, help="GCE Instance Preemptibility")),
    ("--google-tags", "GOOGLE_TAGS", dict(default="", help="GCE Instance Tags (comma-separated)")),
    ("--google-use-internal-ip", "GOOGLE_USE_INTERNAL_IP",
     dict(is_flag=True, help="Use internal GCE Instance IP rather than public one")),
    ("--google-use-internal-ip-only", "GOOGLE_USE_INTERNAL_IP_ONLY",
     dict(is_flag=True, help="Configure GCE instance to not have an external IP address")),
    ("--google-use-existing", "GOOGLE_USE_EXISTING",
     dict(is_flag=True, help="Don't create a new VM, use an existing one")),
    ("--google-open-port", "GOOGLE_OPEN_PORT",
     dict(multiple=True, help="Make the specified port number accessible from the Internet, e.g, 8080/tcp")),
    ("--google-external-firewall-rule-prefix", "GOOGLE_EXTERNAL_FIREWALL_RULE_PREFIX",
     dict(default="", help="A prefix for the firewall rule created when opening ports publicly")),
    ("--google-internal-firewall-rule-prefix", "GOOGLE_INTERNAL_FIREWALL_RULE_PREFIX",
     dict(default="", help="A prefix for the firewall rule created when exposing ports internally")),
    ("--google-userdata", "GOOGLE_USERDATA", dict(default="", help="A user-data file to be passed to cloud-init")),
    ("--google-vm-labels", "GOOGLE_VM_LABELS",
     dict(default="", help="Labels to add onto the created virtual machine (key=value,...)")),
]


def google_options(func):
    """Attach every --google-* option to a command."""
    for flag, envvar, kwargs in reversed(GOOGLE_OPTIONS):
        func = click.option(flag, envvar=envvar, **kwargs)(func)
    return func


def handle_errors(func):
    """Print driver and provider errors in red and exit 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except HANDLED_ERRORS as e:
            console.print(f"[red]Error:[/red] {e}")
            raise SystemExit(1)
    return wrapper


def auth_option(func):
    """Attach --google-auth-encoded-json to a command acting on a stored host.

    A value given here (or in GOOGLE_AUTH_ENCODED_JSON) replaces the stored
    credentials. Commands that save the host afterwards keep the new value.
    """
    return click.option(
        AUTH_FLAG, "auth", envvar=AUTH_ENV_VAR, default=None,
        help="Base64 encoded GCE auth json, replacing the stored credentials",
    )(func)


def load_driver(ctx: click.Context, name: str, auth: Optional[str] = None) -> GCEDriver:
    store: MachineStore = ctx.obj["store"]
    return store.load(name, live_auth=auth)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--storage-path", "-s",
    envvar="GCE_MACHINE_STORAGE_PATH",
    default=DEFAULT_STORE_PATH,
    show_default=True,
    help="Directory holding machine configs and SSH keys",
)
@click.option("--debug", "-D", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, storage_path, debug):
    """gce-machine - Manage a Docker host on Google Compute Engine."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["store"] = MachineStore(storage_path)


@cli.command()
@click.argument("name")
@google_options
@click.pass_context
@handle_errors
def create(ctx, name, **options):
    """Create a host called NAME.

    Example:
        gce-machine create --google-project my-project web-1
        gce-machine create --google-project my-project --google-open-port 8080/tcp \\
            --google-external-firewall-rule-prefix web web-1
    """
    store: MachineStore = ctx.obj["store"]
    if store.exists(name):
        console.print(f"[red]Error:[/red] Host already exists: {name!r}")
        raise SystemExit(1)

    config = config_from_options(options)

    console.print("[cyan]Creating host...[/cyan]")
    console.print(f"  Project: {config.project}")
    console.print(f"  Zone: {config.zone}")
    if config.use_existing:
        console.print(f"  [yellow]Using existing instance[/yellow] {name}")
    else:
        console.print(f"  Machine type: {config.machine_type}")

    driver = GCEDriver(name, store.root, config)
    driver.pre_create_check()
    store.save(driver)
    try:
        driver.create()
    finally:
        store.save(driver)

    console.print(f"\n[green]Host created successfully![/green]")
    console.print(f"  Name: {name}")
    if driver.ip_address:
        console.print(f"  IP: {driver.ip_address}")
    console.print(f"\nSSH into host:")
    console.print(f"  ssh -i {driver.get_ssh_key_path()} {driver.get_ssh_username()}@<ip>")


@cli.command()
@click.argument("name")
@auth_option
@click.pass_context
@handle_errors
def start(ctx, name, auth):
    """Start host NAME (recreating its instance if only the disk remains)."""
    driver = load_driver(ctx, name, auth)
    driver.start()
    ctx.obj["store"].save(driver)
    console.print(f"[green]Started[/green] {name} ({driver.ip_address})")


@cli.command()
@click.argument("name")
@auth_option
@click.pass_context
@handle_errors
def stop(ctx, name, auth):
    """Stop host NAME."""
    driver = load_driver(ctx, name, auth)
    driver.stop()
    ctx.obj["store"].save(driver)
    console.print(f"[green]Stopped[/green] {name}")


@cli.command()
@click.argument("name")
@auth_option
@click.pass_context
@handle_errors
def restart(ctx, name, auth):
    """Restart host NAME."""
    driver = load_driver(ctx, name, auth)
    try:
        driver.restart()
    finally:
        ctx.obj["store"].save(driver)
    console.print(f"[green]Restarted[/green] {name} ({driver.ip_address})")


@cli.command()
@click.argument("name")
@auth_option
@click.pass_context
@handle_errors
def kill(ctx, name, auth):
    """Kill host NAME (same as stop on Compute Engine)."""
    driver = load_driver(ctx, name, auth)
    driver.kill()
    ctx.obj["store"].save(driver)
    console.print(f"[green]Killed[/green] {name}")


@cli.command()
@click.argument("name")
@click.option("--force", "-f", is_flag=True, help="Remove local config even if remote cleanup fails")
@auth_option
@click.pass_context
@handle_errors
def rm(ctx, name, force, auth):
    """Remove host NAME: instance, disk and firewall rules."""
    store: MachineStore = ctx.obj["store"]
    driver = load_driver(ctx, name, auth)
    try:
        driver.remove()
    except RemoveError as e:
        console.print(f"[red]Failed to remove remote resources:[/red]\n{e}")
        if not force:
            console.print("\nRetry, or pass --force to drop the local reference anyway.")
            raise SystemExit(1)
    store.remove(name)
    console.print(f"[green]Removed[/green] {name}")


@cli.command()
@click.argument("name")
@auth_option
@click.pass_context
@handle_errors
def status(ctx, name, auth):
    """Print the state of host NAME."""
    driver = load_driver(ctx, name, auth)
    click.echo(driver.get_state().value)


@cli.command()
@click.argument("name")
@auth_option
@click.pass_context
@handle_errors
def ip(ctx, name, auth):
    """Print the IP address of host NAME."""
    driver = load_driver(ctx, name, auth)
    click.echo(driver.get_ip())


@cli.command()
@click.argument("name")
@auth_option
@click.pass_context
@handle_errors
def url(ctx, name, auth):
    """Print the Docker URL of host NAME."""
    driver = load_driver(ctx, name, auth)
    click.echo(driver.get_url())


@cli.command()
@click.argument("name")
@auth_option
@click.pass_context
@handle_errors
def inspect(ctx, name, auth):
    """Print the stored driver envelope of host NAME (credentials masked)."""
    driver = load_driver(ctx, name, auth)
    data = driver.to_dict()
    if data["config"].get("auth"):
        data["config"]["auth"] = "********"
    click.echo(json.dumps(data, indent=2, sort_keys=True))


if __name__ == "__main__":
    cli()
