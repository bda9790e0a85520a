"""Interactive shell inside the inspection pod."""

from __future__ import annotations

import os
import subprocess
import sys

from pvc_inspect.cluster import Kubectl
from pvc_inspect.exceptions import KubectlNotInstalledError
from pvc_inspect.workload import Workload


class InteractiveSession:
    """Attaches the local terminal to a command in the pod."""

    def __init__(self, kubectl: Kubectl) -> None:
        self._kubectl = kubectl

    def build_command(
        self,
        workload: Workload,
        command: list[str],
        container: str | None = None,
        tty: bool = True,
    ) -> list[str]:
        """Build the kubectl exec command line."""
        args = ["exec", "-it" if tty else "-i", "-n", workload.namespace, workload.name]
        if container:
            args.extend(["-c", container])
        args.append("--")
        args.extend(command)
        return self._kubectl.command(*args)

    def attach_shell(
        self,
        workload: Workload,
        command: list[str],
        container: str | None = None,
    ) -> int:
        """Run command in the pod with the terminal attached, until it exits.

        A dropped connection and a shell that exits on its own both end up
        here; kubectl reports a transport failure as a non-zero status.

        Args:
            workload: Ready pod.
            command: Command to run (usually a shell started in the data path).
            container: Container to exec into (None for the default one).

        Returns:
            Exit code of the remote command.

        Raises:
            KubectlNotInstalledError: If kubectl is not installed.
        """
        tty = sys.stdin.isatty()
        exec_cmd = self.build_command(workload, command, container, tty=tty)

        try:
            exec_result = subprocess.run(exec_cmd)
        except FileNotFoundError as e:
            raise KubectlNotInstalledError(
                f"{self._kubectl.binary} not found. Install kubectl and make sure "
                "it is in your PATH."
            ) from e
        finally:
            if tty:
                # Raw mode can survive a dropped connection
                os.system("stty sane 2>/dev/null")  # noqa: S605

        return exec_result.returncode
