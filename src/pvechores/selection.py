"""Interactive container selection with whiptail."""

import logging
import shlex
import shutil
import subprocess
from typing import Iterable, List, Sequence

from .models import Container, PreconditionError, SelectionUnavailableError

logger = logging.getLogger(__name__)

# whiptail exits 1 on Cancel and 255 on Esc
CANCEL_EXIT_CODES = (1, 255)


def _ordered_subset(containers: Sequence[Container], chosen: Iterable[str]) -> List[str]:
    """Return chosen vmids in presentation order, without duplicates or strangers."""
    wanted = set(chosen)
    return [c.vmid for c in containers if c.vmid in wanted]


def select_by_ids(containers: Sequence[Container], ids: Iterable[str]) -> List[str]:
    """
    Non-interactive selection from explicit vmids.

    Raises:
        PreconditionError: If an id is not in the inventory
    """
    ids = [str(i) for i in ids]
    known = {c.vmid for c in containers}
    unknown = sorted(set(ids) - known)
    if unknown:
        raise PreconditionError(f"Unknown container id(s): {', '.join(unknown)}")
    return _ordered_subset(containers, ids)


class ContainerSelector:
    """Presents containers in a whiptail checklist or radiolist."""

    def __init__(self, title: str = "Select Containers", backtitle: str = "", height: int = 20, width: int = 78):
        self.title = title
        self.backtitle = backtitle
        self.height = height
        self.width = width

    def select(self, containers: Sequence[Container], prompt: str, multiple: bool = True) -> List[str]:
        """
        Ask the operator to choose containers.

        Args:
            containers: Inventory to offer
            prompt: Text shown above the list
            multiple: Checklist when True, radiolist (single choice) otherwise

        Returns:
            Chosen vmids in the order presented. Empty when there is nothing
            to choose from or the operator cancelled.

        Raises:
            SelectionUnavailableError: If whiptail is not installed
        """
        if not containers:
            logger.info("No LXC containers found, nothing to select")
            return []

        whiptail = shutil.which("whiptail")
        if whiptail is None:
            raise SelectionUnavailableError("whiptail is not installed. Please install whiptail to continue.")

        cmd = [whiptail]
        if self.backtitle:
            cmd += ["--backtitle", self.backtitle]
        cmd += [
            "--title",
            self.title,
            "--checklist" if multiple else "--radiolist",
            prompt,
            str(self.height),
            str(self.width),
            str(min(len(containers), self.height - 5)),
        ]
        for container in containers:
            cmd += [container.vmid, container.label, "OFF"]

        # whiptail draws on the terminal and prints the choice on stderr
        result = subprocess.run(cmd, stderr=subprocess.PIPE, text=True)
        if result.returncode in CANCEL_EXIT_CODES:
            logger.info("Selection cancelled")
            return []
        if result.returncode != 0:
            raise SelectionUnavailableError(f"whiptail failed with exit code {result.returncode}: {result.stderr}")

        selected = _ordered_subset(containers, shlex.split(result.stderr))
        logger.debug(f"Selected containers: {selected}")
        return selected
