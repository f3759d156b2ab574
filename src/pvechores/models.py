"""Data models and exceptions shared by the pve-chores commands."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple


class ContainerStatus(Enum):
    """LXC container status."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> "ContainerStatus":
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


class PackageManager(Enum):
    """Package manager front ends, in detection priority order."""

    APT = "apt-get"
    DNF = "dnf"
    APK = "apk"


class ActionOutcome(Enum):
    """Outcome of one action on one container."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class Container:
    """An LXC container known to the host."""

    vmid: str
    name: str
    status: ContainerStatus = ContainerStatus.UNKNOWN
    tags: Tuple[str, ...] = ()

    @property
    def is_running(self) -> bool:
        return self.status == ContainerStatus.RUNNING

    @property
    def label(self) -> str:
        """Text shown next to the vmid in selection prompts."""
        return f"{self.name} ({self.status.value})"


@dataclass(frozen=True)
class HostRecord:
    """One (address, hostname) pair from the DNS backend."""

    ip: str
    hostname: str


@dataclass(frozen=True)
class ProxyEntry:
    """A reverse proxy site block for one hostname."""

    hostname: str
    ip: str
    port: int
    extra_directives: Tuple[str, ...] = ()

    @property
    def upstream(self) -> str:
        return f"http://{self.ip}:{self.port}"


@dataclass(frozen=True)
class ActionResult:
    """Result of applying an action to a single container."""

    vmid: str
    action: str
    outcome: ActionOutcome
    message: str = ""


@dataclass
class DispatchReport:
    """Ordered results of a dispatch loop."""

    action: str
    results: List[ActionResult] = field(default_factory=list)

    def add(self, result: ActionResult) -> None:
        self.results.append(result)

    def _vmids(self, outcome: ActionOutcome) -> List[str]:
        return [r.vmid for r in self.results if r.outcome == outcome]

    @property
    def applied(self) -> List[str]:
        return self._vmids(ActionOutcome.APPLIED)

    @property
    def skipped(self) -> List[str]:
        return self._vmids(ActionOutcome.SKIPPED)

    @property
    def failed(self) -> List[str]:
        return self._vmids(ActionOutcome.FAILED)

    @property
    def all_succeeded(self) -> bool:
        """True when no container failed (skips count as success)."""
        return not self.failed


class PVEChoresError(Exception):
    """Base exception for pve-chores errors."""

    pass


class PreconditionError(PVEChoresError):
    """Raised when a command cannot start (privileges, missing tools, cluster state)."""

    pass


class SelectionUnavailableError(PreconditionError):
    """Raised when the interactive selection prompt cannot be shown."""

    pass


class InventoryFormatError(PVEChoresError):
    """Raised when host inventory output does not match the expected columns."""

    pass


class ContainerActionError(PVEChoresError):
    """Raised when an action fails for one container."""

    pass


class UnsupportedPackageManagerError(ContainerActionError):
    """Raised when no supported package manager exists in a container."""

    pass


class MountSlotExhaustedError(ContainerActionError):
    """Raised when every mpN slot of a container is taken."""

    pass


class ChecksumMismatchError(PVEChoresError):
    """Raised when a downloaded artifact does not match its expected checksum."""

    pass


class TemplateBuildError(PVEChoresError):
    """Raised when downloading or converting a template image fails."""

    pass
