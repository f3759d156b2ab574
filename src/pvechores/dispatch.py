"""
Per-container dispatch loop.

Applies one action to each selected container, strictly in order. A failure
on one container is recorded and the loop moves on; nothing is rolled back.
"""

import logging
import subprocess
from typing import Any, Callable, Iterable, Optional

from proxmoxer.core import ResourceException

from .models import ActionOutcome, ActionResult, DispatchReport, PVEChoresError

logger = logging.getLogger(__name__)


class ContainerAction:
    """A named operation with structured parameters, applied per container."""

    name = "action"

    def apply(self, client: Any, vmid: str) -> ActionResult:
        """
        Apply the action to one container.

        Returns:
            ActionResult with APPLIED or SKIPPED outcome

        Raises:
            PVEChoresError, subprocess.CalledProcessError, ResourceException, OSError: on failure
        """
        raise NotImplementedError

    def applied(self, vmid: str, message: str = "") -> ActionResult:
        return ActionResult(vmid=vmid, action=self.name, outcome=ActionOutcome.APPLIED, message=message)

    def skipped(self, vmid: str, message: str = "") -> ActionResult:
        return ActionResult(vmid=vmid, action=self.name, outcome=ActionOutcome.SKIPPED, message=message)


def _failure_message(error: Exception) -> str:
    if isinstance(error, subprocess.CalledProcessError):
        detail = (error.stderr or "").strip() if isinstance(error.stderr, str) else ""
        return f"command exited with status {error.returncode}" + (f": {detail}" if detail else "")
    return str(error)


def dispatch(
    client: Any,
    action: ContainerAction,
    vmids: Iterable[str],
    on_result: Optional[Callable[[ActionResult], None]] = None,
) -> DispatchReport:
    """
    Apply an action to each container in turn.

    Args:
        client: ProxmoxClient used by the action
        action: Action to apply
        vmids: Selected container ids, processed in order
        on_result: Optional callback invoked after each container

    Returns:
        DispatchReport with one result per container
    """
    report = DispatchReport(action=action.name)

    for vmid in vmids:
        logger.info(f"Running {action.name} on container {vmid}")
        try:
            result = action.apply(client, vmid)
        except (
            PVEChoresError, subprocess.CalledProcessError, subprocess.TimeoutExpired, ResourceException, OSError
        ) as e:
            logger.error(f"{action.name} failed on container {vmid}: {e}")
            result = ActionResult(
                vmid=vmid, action=action.name, outcome=ActionOutcome.FAILED, message=_failure_message(e)
            )

        if result.outcome == ActionOutcome.SKIPPED:
            logger.info(f"Container {vmid}: skipped ({result.message})")
        report.add(result)
        if on_result is not None:
            on_result(result)

    return report
