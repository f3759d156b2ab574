"""Run one command or script in many LXC containers."""

import logging
from typing import Any, Optional, Sequence

from .dispatch import ContainerAction
from .models import ActionResult, ContainerActionError

logger = logging.getLogger(__name__)


class RunCommandAction(ContainerAction):
    """
    Execute a command inside a container.

    Either ``argv`` runs as-is through ``pct exec``, or ``script`` is piped on
    stdin to ``<shell> -s``. The command text is never interpolated into a
    shell command line on the host.
    """

    name = "run-command"

    def __init__(
        self,
        argv: Optional[Sequence[str]] = None,
        script: Optional[str] = None,
        shell: str = "sh",
        timeout: Optional[int] = None,
    ):
        if bool(argv) == (script is not None):
            raise ValueError("Provide exactly one of argv or script")
        self.argv = list(argv or [])
        self.script = script
        self.shell = shell
        self.timeout = timeout

    @property
    def description(self) -> str:
        if self.script is not None:
            return f"script via {self.shell} -s"
        return " ".join(self.argv)

    def apply(self, client: Any, vmid: str) -> ActionResult:
        if self.script is not None:
            argv = [self.shell, "-s"]
            input_text = self.script
        else:
            argv = self.argv
            input_text = None

        result = client.exec_in_container(vmid, argv, input_text=input_text, check=False, timeout=self.timeout)

        output = (result.stdout or "").rstrip()
        if output:
            logger.info(f"[{vmid}] {output}")
        if result.returncode != 0:
            error = (result.stderr or "").strip()
            raise ContainerActionError(
                f"exited with status {result.returncode}" + (f": {error}" if error else "")
            )

        return self.applied(vmid, output)
