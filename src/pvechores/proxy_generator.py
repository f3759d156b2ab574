#!/usr/bin/env python3
"""
Generate reverse proxy and local DNS configuration from Pi-hole.

Handles:
- Reading (ip, hostname) pairs from Pi-hole's FTL database
- Mapping each hostname to a service port
- Writing the Caddyfile, the dnsmasq local records and Pi-hole's custom list
- Installing Caddy and restarting services

Output files are rewritten from scratch on every run; identical input
always produces identical files.
"""

import logging
import os
import re
import shutil
import sqlite3
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml

from .config import ProxySettings
from .models import HostRecord, PreconditionError, ProxyEntry, PVEChoresError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 80

PORT_MAP: Dict[str, int] = {
    "pve1.local": 8006,
    "pve2.local": 8006,
    "pve3.local": 8006,
    "pihole.local": 80,
    "plex.local": 32400,
    "plexlxc.local": 32400,
    "qbittorrent.local": 8090,
    "prowlarr.local": 9696,
    "sabnzbd.local": 7777,
    "radarr.local": 7878,
    "sonarr.local": 8989,
    "requests.local": 7777,
    "petio.local": 7777,
    "wastebin.local": 8088,
    "pastebin.local": 8088,
    "nextcloud.local": 80,
    "docker.local": 2375,
}

MEDIA_HOSTNAMES = ("plex.local", "plexlxc.local")
MEDIA_DIRECTIVES = ("@plex path /web*", "rewrite @plex /web{path}")
ADMIN_REDIRECT = "redir / /admin/"

EXCLUDED_HOSTNAMES = ("localhost",)

CADDY_GLOBAL_OPTIONS = "{\n    auto_https off\n}\n"
DNSMASQ_HEADER = "# Local DNS Configuration for dnsmasq\n"
CUSTOM_LIST_HEADER = "# Custom local DNS records for Pi-hole\n"

_HAS_LETTER = re.compile(r"[a-z]")


def read_host_records(db_path: Path) -> List[HostRecord]:
    """
    Read distinct (ip, hostname) pairs from the FTL client table.

    Rows without a hostname containing a lowercase letter are dropped.

    Raises:
        PreconditionError: If the database is missing or unreadable
    """
    if not db_path.exists():
        raise PreconditionError(f"Pi-hole FTL database not found: {db_path}")

    logger.info(f"Querying Pi-hole FTL database {db_path} for local domains")
    try:
        conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True)
        try:
            rows = conn.execute(
                "SELECT DISTINCT ip, hostname FROM client_by_id ORDER BY hostname, ip"
            ).fetchall()
        finally:
            conn.close()
    except sqlite3.Error as e:
        raise PreconditionError(f"Failed to query {db_path}: {e}") from e

    records = []
    for ip, hostname in rows:
        hostname = (hostname or "").strip()
        if not ip or not _HAS_LETTER.search(hostname):
            continue
        records.append(HostRecord(ip=str(ip).strip(), hostname=hostname))

    logger.debug(f"Read {len(records)} host records")
    return records


def load_port_map(ports_file: Optional[Path] = None) -> Dict[str, int]:
    """
    Return the built-in port table, updated from a YAML mapping if given.

    Raises:
        PreconditionError: If the file is missing, not valid YAML, not a
            mapping or has a non-integer port
    """
    port_map = dict(PORT_MAP)
    if ports_file is None:
        return port_map

    try:
        with open(ports_file) as f:
            overrides = yaml.safe_load(f) or {}
    except OSError as e:
        raise PreconditionError(f"Cannot read port file {ports_file}: {e}") from e
    except yaml.YAMLError as e:
        raise PreconditionError(f"Invalid YAML in {ports_file}: {e}") from e
    if not isinstance(overrides, dict):
        raise PreconditionError(f"{ports_file} must contain a hostname: port mapping")

    for hostname, port in overrides.items():
        try:
            port_map[str(hostname)] = int(port)
        except (TypeError, ValueError) as e:
            raise PreconditionError(f"Invalid port {port!r} for {hostname} in {ports_file}") from e
    logger.info(f"Loaded {len(overrides)} port overrides from {ports_file}")
    return port_map


def map_port(hostname: str, port_map: Optional[Dict[str, int]] = None) -> int:
    """Exact-match port lookup with the default for unknown hostnames."""
    return (PORT_MAP if port_map is None else port_map).get(hostname, DEFAULT_PORT)


def build_entries(
    records: Iterable[HostRecord],
    port_map: Optional[Dict[str, int]] = None,
    pihole_hostname: str = "pihole.local",
) -> List[ProxyEntry]:
    """
    Turn host records into proxy entries.

    Several hostnames on one address each get an entry. A hostname seen on
    several addresses keeps its first address.
    """
    entries: List[ProxyEntry] = []
    seen: Dict[str, str] = {}

    for record in records:
        if record.hostname in EXCLUDED_HOSTNAMES:
            continue
        if record.hostname in seen:
            logger.warning(
                f"{record.hostname} also resolves to {record.ip}; keeping {seen[record.hostname]}"
            )
            continue
        seen[record.hostname] = record.ip

        extra: tuple = ()
        if record.hostname in MEDIA_HOSTNAMES:
            extra = MEDIA_DIRECTIVES
        elif record.hostname == pihole_hostname:
            extra = (ADMIN_REDIRECT,)

        entries.append(
            ProxyEntry(
                hostname=record.hostname,
                ip=record.ip,
                port=map_port(record.hostname, port_map),
                extra_directives=extra,
            )
        )

    return entries


def render_caddyfile(entries: Iterable[ProxyEntry]) -> str:
    blocks = [CADDY_GLOBAL_OPTIONS]
    for entry in entries:
        lines = [f"{entry.hostname} {{", f"    reverse_proxy {entry.upstream}"]
        lines += [f"    {directive}" for directive in entry.extra_directives]
        lines.append("}")
        blocks.append("\n".join(lines) + "\n")
    return "\n".join(blocks)


def render_dnsmasq(entries: Iterable[ProxyEntry]) -> str:
    return DNSMASQ_HEADER + "".join(f"address=/{e.hostname}/{e.ip}\n" for e in entries)


def render_custom_list(pihole_ip: str, pihole_hostname: str = "pihole.local") -> str:
    return CUSTOM_LIST_HEADER + f"{pihole_ip} {pihole_hostname}\n"


def write_file(path: Path, content: str) -> None:
    """Replace a file's content atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(mode="w", dir=path.parent, prefix=f".{path.name}.", delete=False) as tmp:
        tmp.write(content)
        tmp_path = Path(tmp.name)
    tmp_path.chmod(0o644)
    os.replace(tmp_path, path)
    logger.debug(f"Wrote {path}")


class ProxyConfigGenerator:
    """Regenerates Caddy and Pi-hole configuration from the FTL database."""

    def __init__(self, settings: ProxySettings):
        self.settings = settings

    def generate(self) -> List[ProxyEntry]:
        """
        Rewrite the Caddyfile, dnsmasq records and custom list.

        Returns:
            The proxy entries written
        """
        records = read_host_records(self.settings.ftl_db)
        port_map = load_port_map(self.settings.ports_file)
        entries = build_entries(records, port_map, self.settings.pihole_hostname)

        logger.info(f"Generating {self.settings.caddyfile} with {len(entries)} sites")
        write_file(self.settings.caddyfile, render_caddyfile(entries))
        write_file(self.settings.dnsmasq_conf, render_dnsmasq(entries))
        write_file(
            self.settings.custom_list,
            render_custom_list(self.settings.pihole_ip, self.settings.pihole_hostname),
        )
        return entries

    def ensure_caddy(self) -> bool:
        """
        Install Caddy and sqlite3 with apt when Caddy is missing.

        Returns:
            True if packages were installed, False if Caddy was already present
        """
        if shutil.which("caddy"):
            logger.info("Caddy is already installed")
            return False

        logger.info("Installing Caddy")
        try:
            subprocess.run(["apt-get", "update"], capture_output=True, text=True, check=True)
            subprocess.run(
                ["apt-get", "install", "-y", "caddy", "sqlite3"], capture_output=True, text=True, check=True
            )
        except subprocess.CalledProcessError as e:
            raise PreconditionError(f"Failed to install Caddy: {e.stderr}") from e
        return True

    def restart_services(self) -> None:
        """Restart Pi-hole DNS and Caddy to pick up the new files."""
        for service in ("pihole-FTL", "caddy"):
            logger.info(f"Restarting {service}")
            try:
                subprocess.run(["systemctl", "restart", service], capture_output=True, text=True, check=True)
            except subprocess.CalledProcessError as e:
                raise PVEChoresError(f"Failed to restart {service}: {e.stderr}") from e
