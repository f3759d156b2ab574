#!/usr/bin/env python3
"""
pve-chores - Proxmox VE host administration chores.

    pve-chores proxy generate       # Pi-hole records -> Caddyfile + local DNS
    pve-chores bulk run -- CMD      # run a command in selected containers
    pve-chores cephfs attach        # mount CephFS and bind it into containers
    pve-chores tailscale install    # install Tailscale in a container
    pve-chores template kali        # build the Kali LXC template

Run as root on the Proxmox host.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.prompt import Prompt
from rich.table import Table

from pvechores.bulk_commands import RunCommandAction
from pvechores.cephfs_manager import BindMountAction, CephFSManager, CephMount
from pvechores.config import CephFSSettings, HostSettings, ProxySettings, TemplateSettings
from pvechores.dispatch import dispatch
from pvechores.models import ActionOutcome, ActionResult, DispatchReport, PVEChoresError
from pvechores.proxmox_api import ProxmoxClient
from pvechores.proxy_generator import ProxyConfigGenerator
from pvechores.selection import ContainerSelector, select_by_ids
from pvechores.tailscale_installer import TailscaleInstallAction
from pvechores.template_builder import TemplateBuilder

# Initialize CLI app and console
app = typer.Typer(
    name="pve-chores",
    help="Proxmox VE host administration chores",
    add_completion=False
)
console = Console()

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

proxy_app = typer.Typer(help="Reverse proxy configuration from Pi-hole")
bulk_app = typer.Typer(help="Run commands in LXC containers")
cephfs_app = typer.Typer(help="CephFS host mount and container bind mounts")
tailscale_app = typer.Typer(help="Tailscale inside LXC containers")
template_app = typer.Typer(help="LXC template images")
app.add_typer(proxy_app, name="proxy")
app.add_typer(bulk_app, name="bulk")
app.add_typer(cephfs_app, name="cephfs")
app.add_typer(tailscale_app, name="tailscale")
app.add_typer(template_app, name="template")

OUTCOME_ICONS = {
    ActionOutcome.APPLIED: "✅",
    ActionOutcome.SKIPPED: "⏭️ ",
    ActionOutcome.FAILED: "❌",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")
) -> None:
    """Proxmox VE host administration chores."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def info(message: str) -> None:
    console.print(f"[blue]{message}[/blue]")


def fail(message: str) -> None:
    console.print(f"❌ {message}")
    raise typer.Exit(1)


def require_root() -> None:
    if os.geteuid() != 0:
        fail("This command must be run as root.")


def get_client() -> ProxmoxClient:
    """Get a Proxmox client for the local node."""
    return ProxmoxClient(HostSettings.from_environment())


def choose_containers(
    client: ProxmoxClient,
    ctids: Optional[List[str]],
    prompt: str,
    multiple: bool = True,
    selector: Optional[ContainerSelector] = None,
) -> List[str]:
    """List containers and collect the operator's choice (explicit ids or whiptail)."""
    info("==> Listing available LXC containers...")
    containers = client.list_containers()
    if not containers:
        info("No LXC containers found. Exiting.")
        return []

    if ctids:
        return select_by_ids(containers, ctids)

    selected = (selector or ContainerSelector()).select(containers, prompt, multiple=multiple)
    if not selected:
        info("No container selected. Exiting.")
    return selected


def print_result(result: ActionResult) -> None:
    info("--------------------------------")
    message = f" - {escape(result.message)}" if result.message else ""
    console.print(f"{OUTCOME_ICONS[result.outcome]} Container {result.vmid}: {result.outcome.value}{message}")


def print_report(report: DispatchReport) -> None:
    table = Table(title=f"Results: {report.action}")
    table.add_column("VMID", style="cyan")
    table.add_column("Outcome", style="bold")
    table.add_column("Details", style="yellow")

    for result in report.results:
        table.add_row(
            result.vmid,
            f"{OUTCOME_ICONS[result.outcome]} {result.outcome.value}",
            escape(result.message.splitlines()[0]) if result.message else "-",
        )

    console.print(table)


def pause(enabled: bool) -> None:
    if enabled:
        console.input("Press Enter to finish...")


# === PROXY COMMANDS ===

@proxy_app.command("generate")
def proxy_generate(
    install: bool = typer.Option(True, "--install/--no-install", help="Install Caddy if it is missing"),
    restart: bool = typer.Option(True, "--restart/--no-restart", help="Restart pihole-FTL and Caddy afterwards"),
) -> None:
    """
    Regenerate the Caddyfile and local DNS records from Pi-hole.

    Output files are rewritten from scratch; manual edits are not kept.
    """
    require_root()
    generator = ProxyConfigGenerator(ProxySettings.from_environment())

    try:
        if install:
            generator.ensure_caddy()
        entries = generator.generate()
    except PVEChoresError as e:
        fail(str(e))

    table = Table(title="Reverse Proxy Sites")
    table.add_column("Hostname", style="cyan")
    table.add_column("Upstream", style="green")
    table.add_column("Extra", style="yellow")
    for entry in entries:
        table.add_row(entry.hostname, entry.upstream, "; ".join(entry.extra_directives) or "-")
    console.print(table)

    if restart:
        info("Restarting Pi-hole DNS and Caddy...")
        try:
            generator.restart_services()
        except PVEChoresError as e:
            fail(str(e))

    console.print("✅ Setup complete! Caddy and Pi-hole DNS are now configured.")


# === BULK COMMANDS ===

@bulk_app.command("run")
def bulk_run(
    command: Optional[List[str]] = typer.Argument(None, help="Command and arguments to run in each container"),
    script: Optional[Path] = typer.Option(None, "--script", "-s", help="Script file piped to the shell instead"),
    shell: str = typer.Option("sh", "--shell", help="Shell used to run --script"),
    ctids: Optional[List[str]] = typer.Option(None, "--ctid", help="Container id (repeatable); skips the prompt"),
    timeout: Optional[int] = typer.Option(None, "--timeout", help="Per-container timeout in seconds"),
    no_pause: bool = typer.Option(False, "--no-pause", help="Do not wait for Enter at the end"),
) -> None:
    """Execute a command or script on all selected LXC containers."""
    require_root()

    if bool(command) == (script is not None):
        fail("Provide either a command or --script (but not both).")
    if script is not None and not script.is_file():
        fail(f"Script not found: {script}")

    action = RunCommandAction(
        argv=command,
        script=script.read_text() if script is not None else None,
        shell=shell,
        timeout=timeout,
    )

    try:
        client = get_client()
        selected = choose_containers(client, ctids, "Choose containers to execute the command:")
    except PVEChoresError as e:
        fail(str(e))
    if not selected:
        raise typer.Exit(0)

    info(f"Selected containers: {' '.join(selected)}")
    info(f"Executing: {escape(action.description)}")
    report = dispatch(client, action, selected, on_result=print_result)

    info("--------------------------------")
    print_report(report)
    info("Command execution completed on selected containers.")
    pause(not no_pause)

    if not report.all_succeeded:
        raise typer.Exit(1)


# === CEPHFS COMMANDS ===

@cephfs_app.command("attach")
def cephfs_attach(
    host_mount: Optional[str] = typer.Option(None, "--host-mount", help="Host CephFS mount point"),
    container_mount: Optional[str] = typer.Option(None, "--container-mount", help="Mount point inside containers"),
    ctids: Optional[List[str]] = typer.Option(None, "--ctid", help="Container id (repeatable); skips the prompt"),
    no_pause: bool = typer.Option(False, "--no-pause", help="Do not wait for Enter at the end"),
) -> None:
    """
    Mount CephFS on this host and bind-mount it into selected containers.

    Requires an already configured CephFS with an active MDS.
    """
    require_root()
    settings = CephFSSettings.from_environment()
    manager = CephFSManager(settings)

    info(f"==> Retrieving Ceph monitor addresses from {settings.ceph_conf}...")
    monitors = manager.discover_monitors()
    if not monitors:
        info("Unable to programmatically retrieve Ceph monitors.")
        monitors = Prompt.ask("Please enter a comma-separated list of Ceph monitor addresses")

    info(f"==> Retrieving Ceph client credentials from {settings.keyring}...")
    client_name = "admin"
    secret = manager.read_keyring_secret()
    if not secret:
        client_name = Prompt.ask("Enter Ceph client name", default="admin")
        secret = Prompt.ask(f"Enter Ceph secret for client '{client_name}'", password=True)

    settings.host_mount = host_mount or Prompt.ask("Enter host CephFS mount point", default=settings.host_mount)
    settings.container_mount = container_mount or Prompt.ask(
        "Enter mount point inside containers", default=settings.container_mount
    )
    mount = CephMount(monitors=monitors, client_name=client_name, secret=secret)

    try:
        info("==> Checking for ceph-common package...")
        manager.ensure_ceph_common()
        info("==> Checking for active CephFS Metadata Server (MDS)...")
        manager.check_mds_active()
        info(f"==> Mounting CephFS on {settings.host_mount}...")
        manager.mount_host(mount)
        info("==> Verifying /etc/fstab...")
        manager.ensure_fstab_entry(mount)

        client = get_client()
        selected = choose_containers(client, ctids, "Choose containers to update:")
    except PVEChoresError as e:
        fail(str(e))
    if not selected:
        raise typer.Exit(0)

    info(f"Selected containers: {' '.join(selected)}")
    action = BindMountAction(settings.host_mount, settings.container_mount)
    report = dispatch(client, action, selected, on_result=print_result)

    info("--------------------------------")
    print_report(report)
    info("All selected containers have been processed.")
    info("Note: If any container was running, a restart may be necessary to pick up the new mount.")
    pause(not no_pause)

    if not report.all_succeeded:
        raise typer.Exit(1)


# === TAILSCALE COMMANDS ===

@tailscale_app.command("install")
def tailscale_install(
    ctid: Optional[str] = typer.Option(None, "--ctid", help="Container id; skips the prompt"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Add Tailscale to an existing LXC container."""
    require_root()

    if not yes and not typer.confirm("This will add Tailscale to an existing LXC Container ONLY. Proceed?"):
        raise typer.Exit(0)

    try:
        client = get_client()
        selector = ContainerSelector(title=f"Containers on {client.node}", backtitle="Proxmox VE Helper Scripts")
        selected = choose_containers(
            client,
            [ctid] if ctid else None,
            "Select a container to add Tailscale to:",
            multiple=False,
            selector=selector,
        )
    except PVEChoresError as e:
        fail(str(e))
    if not selected:
        raise typer.Exit(0)

    info("Installing Tailscale...")
    report = dispatch(client, TailscaleInstallAction(), selected, on_result=print_result)

    for vmid in report.applied:
        console.print("[bold green] ✔ Installed Tailscale[/bold green]")
        console.print(
            f"[bold red] Reboot {vmid} LXC to apply the changes, then run tailscale up in the LXC console[/bold red]"
        )

    if not report.all_succeeded:
        raise typer.Exit(1)


# === TEMPLATE COMMANDS ===

@template_app.command("kali")
def template_kali(
    create: bool = typer.Option(False, "--create", help="Create a container from the template"),
    vmid: Optional[int] = typer.Option(None, "--vmid", help="Container id for --create (default: next free)"),
) -> None:
    """
    Build the Kali rootfs template and optionally create a container.

    The image is verified against a fixed SHA-256 before conversion.
    """
    require_root()
    settings = TemplateSettings.from_environment()
    builder = TemplateBuilder(settings)

    try:
        if builder.build():
            console.print(f"✅ Conversion successful: {settings.template_path}")
        else:
            console.print(f"✅ Kali image template already exists at {settings.template_path}")

        if not create:
            return

        new_vmid = builder.create_container(get_client(), vmid)
    except PVEChoresError as e:
        fail(str(e))

    console.print(f"✅ Kali container {new_vmid} created from {settings.volume_id}")
    info("To complete your Kali installation, log into the container and run:")
    console.print("  apt update && apt upgrade -y && apt install -y kali-linux-default kali-desktop-xfce")


if __name__ == "__main__":
    app()
