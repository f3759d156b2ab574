#!/usr/bin/env python3
"""
Host-wide CephFS mount and container bind mounts for Proxmox VE.

Handles:
- Monitor and client secret discovery from the Proxmox Ceph config
- Active metadata server (MDS) validation
- Host mount and /etc/fstab persistence
- Bind-mounting the share into selected LXC containers

Host steps are idempotent and safe to re-run.
"""

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import CephFSSettings
from .dispatch import ContainerAction
from .models import ActionResult, MountSlotExhaustedError, PreconditionError

logger = logging.getLogger(__name__)

MAX_MOUNT_POINTS = 256

_MON_HOST = re.compile(r"^\s*mon[ _]host\s*=\s*(.+?)\s*$")
_KEYRING_KEY = re.compile(r"^\s*key\s*=\s*(\S+)", re.IGNORECASE)
_MOUNT_SLOT = re.compile(r"^mp(\d+)$")


@dataclass(frozen=True)
class CephMount:
    """Connection parameters for mounting CephFS."""

    monitors: str
    client_name: str
    secret: str

    @property
    def source(self) -> str:
        return f"{self.monitors}:/"

    @property
    def options(self) -> str:
        return f"name={self.client_name},secret={self.secret}"

    def fstab_line(self, host_mount: str) -> str:
        return f"{self.source}  {host_mount}  ceph  {self.options}  0  0"


def parse_mount_options(value: str) -> Dict[str, str]:
    """
    Parse a mount point value like ``/mnt/cephfs,mp=/data,backup=0``.

    The leading volume is returned under the ``volume`` key.
    """
    parts = value.split(",")
    options = {"volume": parts[0]}
    for part in parts[1:]:
        key, _, val = part.partition("=")
        options[key.strip()] = val.strip()
    return options


def used_mount_slots(config: Dict[str, Any]) -> List[int]:
    """Return the sorted mpN slot numbers present in a container config."""
    slots = []
    for key in config:
        match = _MOUNT_SLOT.match(key)
        if match:
            slots.append(int(match.group(1)))
    return sorted(slots)


def has_mount_point(config: Dict[str, Any], mount_point: str) -> bool:
    """Check if any mpN entry already targets mount_point inside the container."""
    target = mount_point.rstrip("/") or "/"
    for key, value in config.items():
        if not _MOUNT_SLOT.match(key):
            continue
        mp = parse_mount_options(str(value)).get("mp", "")
        if (mp.rstrip("/") or "/") == target:
            return True
    return False


def next_free_mount_slot(config: Dict[str, Any]) -> int:
    """
    Choose the lowest unused mount slot.

    Raises:
        MountSlotExhaustedError: If mp0 through mp255 are all taken
    """
    used = set(used_mount_slots(config))
    for slot in range(MAX_MOUNT_POINTS):
        if slot not in used:
            return slot
    raise MountSlotExhaustedError(f"All {MAX_MOUNT_POINTS} mount slots are in use")


class BindMountAction(ContainerAction):
    """Expose a host path inside a container through the next free mpN slot."""

    name = "bind-mount"

    def __init__(self, host_path: str, mount_point: str):
        self.host_path = host_path
        self.mount_point = mount_point

    def apply(self, client: Any, vmid: str) -> ActionResult:
        config = client.get_config(vmid)

        if has_mount_point(config, self.mount_point):
            return self.skipped(vmid, f"already has a mount for {self.mount_point}")

        slot = next_free_mount_slot(config)
        logger.info(f"Adding bind mount (slot mp{slot}) to container {vmid}")
        client.set_config(vmid, **{f"mp{slot}": f"{self.host_path},mp={self.mount_point}"})
        return self.applied(vmid, f"mp{slot}: {self.host_path} -> {self.mount_point}")


class CephFSManager:
    """Discovers, validates and mounts CephFS on the host."""

    def __init__(self, settings: CephFSSettings):
        self.settings = settings

    def discover_monitors(self) -> Optional[str]:
        """
        Read monitor addresses from the first mon_host line of ceph.conf.

        Returns:
            Comma-separated monitor list, or None if not found
        """
        conf = self.settings.ceph_conf
        if not conf.exists():
            logger.info(f"{conf} not found")
            return None

        for line in conf.read_text().splitlines():
            match = _MON_HOST.match(line)
            if match:
                monitors = ",".join(m for m in re.split(r"[\s,]+", match.group(1)) if m)
                logger.info(f"Found monitors: {monitors}")
                return monitors

        logger.info(f"No 'mon_host' line found in {conf}")
        return None

    def read_keyring_secret(self) -> Optional[str]:
        """Extract the client secret from the admin keyring."""
        keyring = self.settings.keyring
        if not keyring.exists():
            logger.info(f"{keyring} not found")
            return None

        for line in keyring.read_text().splitlines():
            match = _KEYRING_KEY.match(line)
            if match:
                logger.info("Retrieved Ceph client: admin")
                return match.group(1)

        logger.info(f"Unable to extract secret from {keyring}")
        return None

    def ensure_ceph_common(self) -> bool:
        """
        Install ceph-common when it is missing.

        Returns:
            True if the package was installed, False if already present
        """
        result = subprocess.run(["dpkg", "-s", "ceph-common"], capture_output=True, text=True)
        if result.returncode == 0 and "Status: install ok installed" in result.stdout:
            logger.info("ceph-common is installed")
            return False

        logger.info("ceph-common package not found. Installing...")
        try:
            subprocess.run(["apt-get", "update"], capture_output=True, text=True, check=True)
            subprocess.run(["apt-get", "install", "-y", "ceph-common"], capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            raise PreconditionError(f"Failed to install ceph-common: {e.stderr}") from e
        return True

    def check_mds_active(self) -> str:
        """
        Verify that at least one metadata server is up:active.

        Returns:
            The ``ceph mds stat`` output

        Raises:
            PreconditionError: If the status is unavailable or no MDS is active
        """
        try:
            result = subprocess.run(["ceph", "mds", "stat"], capture_output=True, text=True, timeout=30)
            status = result.stdout.strip()
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to run ceph mds stat: {e}")
            status = ""

        if not status:
            raise PreconditionError("Could not retrieve MDS status. Check your Ceph cluster configuration.")
        if "up:active" not in status:
            raise PreconditionError(
                "No active metadata server (MDS) found. "
                "Please ensure that at least one MDS is up before mounting CephFS."
            )

        logger.info(f"Active MDS found: {status}")
        return status

    def is_mounted(self, path: str) -> bool:
        result = subprocess.run(["mountpoint", "-q", path], capture_output=True)
        return result.returncode == 0

    def mount_host(self, mount: CephMount) -> bool:
        """
        Mount CephFS on the host mount point (idempotent).

        Returns:
            True if mounted now, False if it was already mounted

        Raises:
            PreconditionError: If the mount does not come up
        """
        host_mount = Path(self.settings.host_mount)
        if not host_mount.is_dir():
            logger.info(f"Creating host mount point directory: {host_mount}")
            host_mount.mkdir(parents=True, exist_ok=True)

        if self.is_mounted(str(host_mount)):
            logger.info(f"CephFS already mounted at {host_mount}")
            return False

        logger.info(f"Mounting CephFS at {host_mount}")
        try:
            subprocess.run(
                ["mount", "-t", "ceph", mount.source, str(host_mount), "-o", mount.options],
                capture_output=True,
                text=True,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            raise PreconditionError(f"Failed to mount CephFS at {host_mount}: {e.stderr}") from e

        if not self.is_mounted(str(host_mount)):
            raise PreconditionError(f"Failed to mount CephFS at {host_mount}")

        logger.info(f"CephFS is successfully mounted at {host_mount}")
        return True

    def ensure_fstab_entry(self, mount: CephMount) -> bool:
        """
        Persist the mount in fstab unless the mount point is already listed.

        Returns:
            True if an entry was added
        """
        fstab = self.settings.fstab
        host_mount = self.settings.host_mount
        content = fstab.read_text() if fstab.exists() else ""

        for line in content.splitlines():
            fields = line.split()
            if len(fields) >= 2 and not fields[0].startswith("#") and fields[1] == host_mount:
                logger.info(f"An fstab entry for {host_mount} already exists")
                return False

        logger.info(f"Adding CephFS entry for {host_mount} to {fstab}")
        try:
            with open(fstab, "a") as f:
                if content and not content.endswith("\n"):
                    f.write("\n")
                f.write(mount.fstab_line(host_mount) + "\n")
        except OSError as e:
            raise PreconditionError(f"Failed to update {fstab}: {e}") from e
        return True
