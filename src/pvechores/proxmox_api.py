from typing import Any, Dict, List, Optional, Sequence
import logging
import subprocess

from proxmoxer import ProxmoxAPI
from proxmoxer.core import ResourceException

from pvechores.config import HostSettings
from pvechores.models import (
    Container,
    ContainerActionError,
    ContainerStatus,
    InventoryFormatError,
    PreconditionError,
)

logger = logging.getLogger(__name__)


def parse_pct_list(output: str) -> List[Container]:
    """
    Parse the fixed-column text printed by ``pct list``.

    Column contract, taken from the header line:
        VMID  Status  [Lock]  Name
    Column boundaries are the header word offsets. Lock is optional and
    blank for unlocked containers.

    Raises:
        InventoryFormatError: If the header or a row does not follow the contract
    """
    lines = [line.rstrip() for line in output.splitlines() if line.strip()]
    if not lines:
        return []

    header = lines[0]
    if not header.startswith("VMID") or "Status" not in header or "Name" not in header:
        raise InventoryFormatError(f"Unexpected pct list header: {header!r}")

    status_col = header.index("Status")
    name_col = header.index("Name")
    lock_col = header.find("Lock")
    status_end = lock_col if lock_col != -1 else name_col

    containers = []
    for row in lines[1:]:
        vmid = row[:status_col].strip()
        status = row[status_col:status_end].strip()
        name = row[name_col:].strip()
        if not vmid.isdigit() or not status or not name:
            raise InventoryFormatError(f"Unexpected pct list row: {row!r}")
        containers.append(Container(vmid=vmid, name=name, status=ContainerStatus.parse(status)))

    return containers


def _sort_key(container: Container) -> int:
    return int(container.vmid)


class ProxmoxClient:
    """Wrapper around the Proxmox API with pct for in-container commands."""

    def __init__(self, settings: HostSettings, api: Optional[Any] = None) -> None:
        self.settings = settings
        self.node = settings.node
        self.proxmox = api if api is not None else self._connect(settings)

    @staticmethod
    def _connect(settings: HostSettings) -> ProxmoxAPI:
        if settings.api_backend == "local":
            return ProxmoxAPI(backend="local", service="PVE")

        # Extract API token components
        if settings.api_token is None:
            raise PreconditionError("API_TOKEN environment variable is not set")
        user_token, token_value = settings.api_token.split("=", 1)
        user, token_name = user_token.split("!", 1)

        return ProxmoxAPI(
            settings.api_host or settings.node,
            user=user,
            token_name=token_name,
            token_value=token_value,
            verify_ssl=settings.verify_ssl,
        )

    def list_containers(self) -> List[Container]:
        """List the node's LXC containers, sorted by vmid."""
        try:
            entries = self.proxmox.nodes(self.node).lxc.get()
        except (ResourceException, OSError) as e:
            logger.warning(f"API listing failed ({e}), falling back to pct list")
            result = subprocess.run(
                ["pct", "list"], capture_output=True, encoding="utf-8", errors="replace", check=True, timeout=30
            )
            return sorted(parse_pct_list(result.stdout), key=_sort_key)

        containers = []
        for entry in entries:
            tags = entry.get("tags") or ""
            containers.append(
                Container(
                    vmid=str(entry["vmid"]),
                    name=entry.get("name") or f"CT{entry['vmid']}",
                    status=ContainerStatus.parse(entry.get("status", "")),
                    tags=tuple(t for t in tags.replace(",", ";").split(";") if t),
                )
            )
        logger.debug(f"Found {len(containers)} containers on {self.node}")
        return sorted(containers, key=_sort_key)

    def get_config(self, vmid: str) -> Dict[str, Any]:
        """Retrieve a container's configuration."""
        return self.proxmox.nodes(self.node).lxc(vmid).config.get()  # type: ignore[no-any-return]

    def set_config(self, vmid: str, **options: Any) -> None:
        """Set container configuration properties (mount slots, tags, ...)."""
        logger.debug(f"Setting {sorted(options)} on container {vmid}")
        self.proxmox.nodes(self.node).lxc(vmid).config.put(**options)

    def append_raw_config(self, vmid: str, lines: Sequence[str]) -> List[str]:
        """
        Append raw lxc.* lines to the container config file.

        These keys cannot be set through the API. Lines already present are
        left alone.

        Returns:
            The lines that were added

        Raises:
            ContainerActionError: If the config file cannot be read or appended to
        """
        config_path = self.settings.lxc_config_path(vmid)
        try:
            content = config_path.read_text()
            existing = {line.strip() for line in content.splitlines()}
            missing = [line for line in lines if line not in existing]
            if not missing:
                return []

            # append only, existing content is never rewritten
            with open(config_path, "a") as f:
                if content and not content.endswith("\n"):
                    f.write("\n")
                f.write("\n".join(missing) + "\n")
        except OSError as e:
            raise ContainerActionError(f"Cannot update {config_path}: {e}") from e

        logger.info(f"Added {len(missing)} raw config lines to {config_path}")
        return missing

    def container_status(self, vmid: str) -> ContainerStatus:
        """Current run state of one container."""
        current = self.proxmox.nodes(self.node).lxc(vmid).status.current.get()
        return ContainerStatus.parse(current.get("status", ""))

    def exec_in_container(
        self,
        vmid: str,
        argv: Sequence[str],
        input_text: Optional[str] = None,
        check: bool = True,
        timeout: Optional[int] = None,
    ) -> subprocess.CompletedProcess:
        """Run argv inside a container via pct exec."""
        logger.debug(f"pct exec {vmid} -- {' '.join(argv)}")
        return subprocess.run(
            ["pct", "exec", vmid, "--", *argv],
            input=input_text,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=check,
            timeout=timeout,
        )

    def command_exists(self, vmid: str, command: str) -> bool:
        """Check whether a command is on the container's PATH."""
        result = self.exec_in_container(vmid, ["sh", "-c", 'command -v "$1"', "sh", command], check=False)
        return result.returncode == 0

    def next_vmid(self) -> int:
        """Ask the cluster for the next free vmid."""
        return int(self.proxmox.cluster.nextid.get())

    def create_container(self, vmid: int, ostemplate: str, **options: Any) -> Any:
        """Create a container from a template volume."""
        logger.info(f"Creating container {vmid} from {ostemplate}")
        return self.proxmox.nodes(self.node).lxc.create(vmid=vmid, ostemplate=ostemplate, **options)
