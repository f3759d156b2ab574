"""Tailscale installation inside LXC containers."""

import logging
from typing import Any, Dict, List, Optional

from .dispatch import ContainerAction
from .models import (
    ActionResult,
    ContainerActionError,
    ContainerStatus,
    PackageManager,
    UnsupportedPackageManagerError,
)

logger = logging.getLogger(__name__)

TAILSCALE_TAG = "tailscale"

TUN_CONFIG_LINES = [
    "lxc.cgroup2.devices.allow: c 10:200 rwm",
    "lxc.mount.entry: /dev/net/tun dev/net/tun none bind,create=file",
]

APT_KEYRING = "/usr/share/keyrings/tailscale-archive-keyring.gpg"
APT_SOURCES_LIST = "/etc/apt/sources.list.d/tailscale.list"
DNF_REPO_URL = "https://pkgs.tailscale.com/stable/fedora/tailscale.repo"
DNF_REPO_FILE = "/etc/yum.repos.d/tailscale.repo"
OPENRC_INIT_PATH = "/etc/init.d/tailscaled"

OPENRC_INIT_SCRIPT = """#!/sbin/openrc-run

name="tailscaled"
description="Tailscale daemon"

command="$(which tailscaled)"
command_args="--state=/var/lib/tailscale/tailscaled.state"
pidfile="/run/${RC_SVCNAME}.pid"

depend() {
    need net
    before firewall
}

start_pre() {
    checkpath --directory --mode 0755 /var/lib/tailscale
}
"""


def parse_os_release(content: str) -> Dict[str, str]:
    """Parse /etc/os-release KEY=value lines, unquoting values."""
    values = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip("\"'")
    return values


def split_tags(current: str) -> List[str]:
    """Split a Proxmox tag string (';', ',' or space separated)."""
    return [t for t in current.replace(",", ";").replace(" ", ";").split(";") if t]


def merge_tags(current: str, tag: str) -> List[str]:
    """Split a Proxmox tag string and add tag once."""
    tags = split_tags(current)
    if tag not in tags:
        tags.append(tag)
    return tags


def detect_package_manager(client: Any, vmid: str) -> PackageManager:
    """
    Find the container's package manager; the first match in priority order wins.

    Raises:
        UnsupportedPackageManagerError: If none is available
    """
    for manager in PackageManager:
        if client.command_exists(vmid, manager.value):
            logger.debug(f"Container {vmid} uses {manager.value}")
            return manager
    raise UnsupportedPackageManagerError("Unsupported package manager. Aborting.")


class TailscaleInstallAction(ContainerAction):
    """Install and start tailscaled in a container, then tag it."""

    name = "install-tailscale"

    def apply(self, client: Any, vmid: str) -> ActionResult:
        # pct exec needs a running container
        status = client.container_status(vmid)
        if status != ContainerStatus.RUNNING:
            raise ContainerActionError(f"Container {vmid} is not running ({status.value}). Start it and retry.")

        added = client.append_raw_config(vmid, TUN_CONFIG_LINES)
        if added:
            logger.info(f"Enabled /dev/net/tun passthrough for container {vmid}")

        if client.command_exists(vmid, "tailscaled"):
            self._ensure_tag(client, vmid)
            return self.skipped(vmid, "Tailscale already installed")

        manager = detect_package_manager(client, vmid)
        logger.info(f"Installing Tailscale in container {vmid} with {manager.value}")

        if manager == PackageManager.APT:
            self._install_apt(client, vmid)
        elif manager == PackageManager.DNF:
            self._install_dnf(client, vmid)
        else:
            self._install_apk(client, vmid)

        self._ensure_tag(client, vmid)
        return self.applied(vmid, f"installed with {manager.value}")

    def _run(self, client: Any, vmid: str, *argv: str, input_text: Optional[str] = None) -> None:
        client.exec_in_container(vmid, list(argv), input_text=input_text, check=True)

    def _install_apt(self, client: Any, vmid: str) -> None:
        result = client.exec_in_container(vmid, ["cat", "/etc/os-release"], check=True)
        os_release = parse_os_release(result.stdout)
        distro = os_release.get("ID")
        codename = os_release.get("VERSION_CODENAME")
        if not distro or not codename:
            raise ContainerActionError("Could not determine ID/VERSION_CODENAME from /etc/os-release")

        base_url = f"https://pkgs.tailscale.com/stable/{distro}"
        self._run(client, vmid, "wget", "-qO", APT_KEYRING, f"{base_url}/{codename}.noarmor.gpg")
        self._run(
            client,
            vmid,
            "tee",
            APT_SOURCES_LIST,
            input_text=f"deb [signed-by={APT_KEYRING}] {base_url} {codename} main\n",
        )
        self._run(client, vmid, "apt-get", "update")
        self._run(client, vmid, "apt-get", "install", "-y", "tailscale")
        self._enable_systemd(client, vmid)

    def _install_dnf(self, client: Any, vmid: str) -> None:
        self._run(client, vmid, "curl", "-fsSL", DNF_REPO_URL, "-o", DNF_REPO_FILE)
        self._run(client, vmid, "dnf", "install", "-y", "tailscale")
        self._enable_systemd(client, vmid)

    def _install_apk(self, client: Any, vmid: str) -> None:
        self._run(client, vmid, "apk", "update")
        self._run(client, vmid, "apk", "add", "tailscale")

        init_check = client.exec_in_container(vmid, ["test", "-f", OPENRC_INIT_PATH], check=False)
        if init_check.returncode != 0:
            logger.info(f"Creating OpenRC init script in container {vmid}")
            self._run(client, vmid, "tee", OPENRC_INIT_PATH, input_text=OPENRC_INIT_SCRIPT)
            self._run(client, vmid, "chmod", "+x", OPENRC_INIT_PATH)

        self._run(client, vmid, "rc-update", "add", "tailscaled", "default")
        self._run(client, vmid, "rc-service", "tailscaled", "start")

    def _enable_systemd(self, client: Any, vmid: str) -> None:
        self._run(client, vmid, "systemctl", "enable", "tailscaled")
        self._run(client, vmid, "systemctl", "start", "tailscaled")

    def _ensure_tag(self, client: Any, vmid: str) -> None:
        current = str(client.get_config(vmid).get("tags", "") or "")
        if TAILSCALE_TAG in split_tags(current):
            return
        client.set_config(vmid, tags=";".join(merge_tags(current, TAILSCALE_TAG)))
        logger.info(f"Tagged container {vmid} with {TAILSCALE_TAG}")
