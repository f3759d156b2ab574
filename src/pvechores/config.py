"""
Configuration for the pve-chores commands.

Every chore gets its own settings object, loaded from environment variables
(and an optional .env file) and passed explicitly into the operation.
"""

import os
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _env_path(name: str, default: str) -> Path:
    return Path(os.getenv(name, default))


@dataclass
class HostSettings:
    """Where and how to reach the Proxmox host."""

    node: str
    lxc_config_dir: Path = Path("/etc/pve/lxc")
    api_backend: str = "local"
    api_host: Optional[str] = None
    api_token: Optional[str] = None
    verify_ssl: bool = False

    @classmethod
    def from_environment(cls) -> "HostSettings":
        """Load host settings from environment variables."""
        load_dotenv()

        return cls(
            node=os.getenv("PVE_NODE", socket.gethostname()),
            lxc_config_dir=_env_path("PVE_LXC_CONFIG_DIR", "/etc/pve/lxc"),
            api_backend=os.getenv("PVE_API_BACKEND", "local"),
            api_host=os.getenv("PVE_API_HOST"),
            api_token=os.getenv("API_TOKEN"),
            verify_ssl=os.getenv("PVE_VERIFY_SSL", "false").lower() == "true",
        )

    def lxc_config_path(self, vmid: str) -> Path:
        return self.lxc_config_dir / f"{vmid}.conf"


@dataclass
class ProxySettings:
    """Paths and addresses used by the DNS-to-proxy generator."""

    ftl_db: Path = Path("/etc/pihole/pihole-FTL.db")
    caddyfile: Path = Path("/etc/caddy/Caddyfile")
    dnsmasq_conf: Path = Path("/etc/dnsmasq.d/10-local.conf")
    custom_list: Path = Path("/etc/pihole/custom.list")
    pihole_ip: str = "192.168.5.49"
    pihole_hostname: str = "pihole.local"
    ports_file: Optional[Path] = None

    @classmethod
    def from_environment(cls) -> "ProxySettings":
        """Load proxy generator settings from environment variables."""
        load_dotenv()

        ports_file = os.getenv("PROXY_PORTS_FILE")
        return cls(
            ftl_db=_env_path("PIHOLE_FTL_DB", "/etc/pihole/pihole-FTL.db"),
            caddyfile=_env_path("CADDYFILE", "/etc/caddy/Caddyfile"),
            dnsmasq_conf=_env_path("DNSMASQ_CONF", "/etc/dnsmasq.d/10-local.conf"),
            custom_list=_env_path("PIHOLE_CUSTOM_LIST", "/etc/pihole/custom.list"),
            pihole_ip=os.getenv("PIHOLE_IP", "192.168.5.49"),
            pihole_hostname=os.getenv("PIHOLE_HOSTNAME", "pihole.local"),
            ports_file=Path(ports_file) if ports_file else None,
        )


@dataclass
class CephFSSettings:
    """Ceph discovery paths and mount points."""

    ceph_conf: Path = Path("/etc/pve/ceph.conf")
    keyring: Path = Path("/etc/pve/priv/ceph.client.admin.keyring")
    host_mount: str = "/mnt/cephfs"
    container_mount: str = "/mnt/cephfs"
    fstab: Path = Path("/etc/fstab")

    @classmethod
    def from_environment(cls) -> "CephFSSettings":
        """Load CephFS settings from environment variables."""
        load_dotenv()

        return cls(
            ceph_conf=_env_path("CEPH_CONF", "/etc/pve/ceph.conf"),
            keyring=_env_path("CEPH_KEYRING", "/etc/pve/priv/ceph.client.admin.keyring"),
            host_mount=os.getenv("CEPHFS_HOST_MOUNT", "/mnt/cephfs"),
            container_mount=os.getenv("CEPHFS_CONTAINER_MOUNT", "/mnt/cephfs"),
            fstab=_env_path("FSTAB_PATH", "/etc/fstab"),
        )


KALI_SQUASHFS_URL = "https://images.lxd.canonical.com/images/kali/current/amd64/default/rootfs.squashfs"
KALI_SQUASHFS_SHA256 = "cd5a961fc89ee197e40edb69cad3c8246243339307d20ab130e8a6e5ed5cf424"
KALI_TEMPLATE_PATH = "/var/lib/vz/template/cache/2024-12-25-Kali-rootfs.tar.xz"


@dataclass
class TemplateSettings:
    """Kali template image source and the container created from it."""

    url: str = KALI_SQUASHFS_URL
    sha256: str = KALI_SQUASHFS_SHA256
    template_path: Path = Path(KALI_TEMPLATE_PATH)
    download_dir: Path = Path("/tmp")
    template_storage: str = "local"
    hostname: str = "kali"
    cores: int = 2
    memory_mb: int = 2048
    disk_gb: int = 20
    storage: str = "local-lvm"
    bridge: str = "vmbr0"
    unprivileged: bool = True
    tags: str = "kali"

    @classmethod
    def from_environment(cls) -> "TemplateSettings":
        """Load template builder settings from environment variables."""
        load_dotenv()

        return cls(
            url=os.getenv("KALI_SQUASHFS_URL", KALI_SQUASHFS_URL),
            sha256=os.getenv("KALI_SQUASHFS_SHA256", KALI_SQUASHFS_SHA256).lower(),
            template_path=_env_path("KALI_TEMPLATE_PATH", KALI_TEMPLATE_PATH),
            download_dir=_env_path("TEMPLATE_DOWNLOAD_DIR", "/tmp"),
            template_storage=os.getenv("TEMPLATE_STORAGE", "local"),
            hostname=os.getenv("KALI_HOSTNAME", "kali"),
            cores=int(os.getenv("KALI_CORES", "2")),
            memory_mb=int(os.getenv("KALI_MEMORY_MB", "2048")),
            disk_gb=int(os.getenv("KALI_DISK_GB", "20")),
            storage=os.getenv("KALI_STORAGE", "local-lvm"),
            bridge=os.getenv("KALI_BRIDGE", "vmbr0"),
            unprivileged=os.getenv("KALI_UNPRIVILEGED", "true").lower() == "true",
            tags=os.getenv("KALI_TAGS", "kali"),
        )

    @property
    def volume_id(self) -> str:
        """Proxmox volume id of the template, e.g. local:vztmpl/<file>."""
        return f"{self.template_storage}:vztmpl/{self.template_path.name}"
