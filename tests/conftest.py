"""Shared test fixtures and configuration for pve-chores tests."""

import sqlite3
import subprocess
from typing import Any, Dict, List, Optional
from unittest import mock

import pytest

from pvechores.config import HostSettings
from pvechores.models import Container, ContainerStatus
from pvechores.proxmox_api import ProxmoxClient


@pytest.fixture
def mock_api():
    """Mock proxmoxer API object."""
    api = mock.MagicMock()
    api.nodes.return_value.lxc.get.return_value = [
        {"vmid": 102, "name": "plex", "status": "running", "tags": "media"},
        {"vmid": 100, "name": "pihole", "status": "running"},
        {"vmid": 101, "name": "nextcloud", "status": "stopped", "tags": "cloud;web"},
    ]
    api.nodes.return_value.lxc.return_value.config.get.return_value = {
        "hostname": "plex",
        "rootfs": "local-lvm:vm-102-disk-0,size=8G",
    }
    api.nodes.return_value.lxc.return_value.status.current.get.return_value = {"status": "running"}
    api.cluster.nextid.get.return_value = "105"
    return api


@pytest.fixture
def host_settings(tmp_path):
    """Host settings pointing LXC configs at a temp directory."""
    lxc_dir = tmp_path / "lxc"
    lxc_dir.mkdir()
    return HostSettings(node="pve", lxc_config_dir=lxc_dir)


@pytest.fixture
def client(host_settings, mock_api):
    """ProxmoxClient backed by the mock API."""
    return ProxmoxClient(host_settings, api=mock_api)


@pytest.fixture
def containers() -> List[Container]:
    """Sample inventory, in presentation order."""
    return [
        Container(vmid="100", name="pihole", status=ContainerStatus.RUNNING),
        Container(vmid="101", name="nextcloud", status=ContainerStatus.STOPPED),
        Container(vmid="102", name="plex", status=ContainerStatus.RUNNING),
    ]


@pytest.fixture
def pct_list_output() -> str:
    """Sample `pct list` output with one locked container."""
    return (
        "VMID       Status     Lock         Name                \n"
        "100        running                 pihole              \n"
        "101        stopped    backup       nextcloud           \n"
        "102        running                 plex                \n"
    )


@pytest.fixture
def ftl_db(tmp_path):
    """Create a minimal Pi-hole FTL database with a client_by_id table."""

    def _create(rows):
        db_path = tmp_path / "pihole-FTL.db"
        conn = sqlite3.connect(db_path)
        conn.execute("CREATE TABLE client_by_id (id INTEGER PRIMARY KEY, ip TEXT, hostname TEXT)")
        conn.executemany("INSERT INTO client_by_id (ip, hostname) VALUES (?, ?)", rows)
        conn.commit()
        conn.close()
        return db_path

    return _create


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class FakeClient:
    """In-memory stand-in for ProxmoxClient used by action tests."""

    def __init__(self, configs: Optional[Dict[str, Dict[str, Any]]] = None, commands=()):
        self.configs = configs or {}
        self.commands = set(commands)
        self.exec_calls: List[Dict[str, Any]] = []
        self.set_calls: List[Dict[str, Any]] = []
        self.raw_lines: Dict[str, List[str]] = {}
        self.exec_results: Dict[str, subprocess.CompletedProcess] = {}
        self.statuses: Dict[str, ContainerStatus] = {}

    def get_config(self, vmid):
        return dict(self.configs.get(vmid, {}))

    def set_config(self, vmid, **options):
        self.set_calls.append({"vmid": vmid, **options})
        self.configs.setdefault(vmid, {}).update(options)

    def append_raw_config(self, vmid, lines):
        existing = self.raw_lines.setdefault(vmid, [])
        missing = [line for line in lines if line not in existing]
        existing.extend(missing)
        return missing

    def container_status(self, vmid):
        return self.statuses.get(vmid, ContainerStatus.RUNNING)

    def command_exists(self, vmid, command):
        return command in self.commands

    def exec_in_container(self, vmid, argv, input_text=None, check=True, timeout=None):
        self.exec_calls.append({"vmid": vmid, "argv": list(argv), "input_text": input_text})
        result = self.exec_results.get(argv[0], completed())
        if check and result.returncode != 0:
            raise subprocess.CalledProcessError(result.returncode, argv, result.stdout, result.stderr)
        return result

    def argvs(self):
        return [call["argv"] for call in self.exec_calls]


@pytest.fixture
def fake_client():
    return FakeClient()
