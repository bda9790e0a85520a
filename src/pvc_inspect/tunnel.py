"""Port-forward from localhost into the inspection pod."""

from __future__ import annotations

import socket
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from typing import IO, Any

from pvc_inspect.cluster import Kubectl
from pvc_inspect.exceptions import KubectlNotInstalledError, TunnelError
from pvc_inspect.workload import Workload

LOCALHOST = "127.0.0.1"


def find_free_port() -> int:
    """Ask the OS for an unused local TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((LOCALHOST, 0))
        return sock.getsockname()[1]


@dataclass
class Tunnel:
    """A running ``kubectl port-forward``.

    Attributes:
        pod: Name of the pod the tunnel leads to.
        local_port: Port listening on 127.0.0.1.
        remote_port: Port inside the pod.
        process: The kubectl child process.
        closed: Whether close() has run.
    """

    pod: str
    local_port: int
    remote_port: int
    process: subprocess.Popen[Any] | None = field(default=None, repr=False)
    stderr: IO[bytes] | None = field(default=None, repr=False)
    closed: bool = False

    @property
    def host(self) -> str:
        return LOCALHOST

    @property
    def address(self) -> str:
        """Local endpoint as "host:port"."""
        return f"{LOCALHOST}:{self.local_port}"

    @property
    def alive(self) -> bool:
        return not self.closed and self.process is not None and self.process.poll() is None


def _read_stderr(stderr: IO[bytes] | None) -> str:
    if stderr is None:
        return ""
    stderr.seek(0)
    return stderr.read().decode("utf-8", errors="replace").strip()


class TunnelManager:
    """Opens and closes port-forwards into inspection pods."""

    # Interval between connection probes (seconds)
    PROBE_INTERVAL = 0.5

    def __init__(self, kubectl: Kubectl) -> None:
        self._kubectl = kubectl

    def open(
        self,
        workload: Workload,
        local_port: int | None,
        remote_port: int,
        timeout: float = 30,
    ) -> Tunnel:
        """Start forwarding localhost:local_port to the pod's remote_port.

        Returns once the local port accepts connections.

        Args:
            workload: Ready pod to forward to.
            local_port: Local port (None picks a free one).
            remote_port: Port inside the pod.
            timeout: Seconds to wait for the tunnel to come up.

        Returns:
            The open Tunnel.

        Raises:
            TunnelError: If kubectl exits or the port never accepts connections.
        """
        if local_port is None:
            local_port = find_free_port()

        print(
            f"Forwarding {LOCALHOST}:{local_port} -> Pod/{workload.name}:{remote_port}...",
            file=sys.stderr,
        )

        # A file rather than a pipe: nobody drains it during a long session.
        stderr = tempfile.TemporaryFile()
        try:
            process = self._kubectl.popen(
                "port-forward",
                "-n", workload.namespace,
                "--address", LOCALHOST,
                f"pod/{workload.name}",
                f"{local_port}:{remote_port}",
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=stderr,
            )
        except KubectlNotInstalledError as e:
            stderr.close()
            raise TunnelError(str(e)) from e

        tunnel = Tunnel(
            pod=workload.name,
            local_port=local_port,
            remote_port=remote_port,
            process=process,
            stderr=stderr,
        )

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if process.poll() is not None:
                message = _read_stderr(stderr)
                self.close(tunnel)
                raise TunnelError(
                    f"kubectl port-forward exited with status {process.returncode}: "
                    f"{message or 'no output'}"
                )
            try:
                with socket.create_connection((LOCALHOST, local_port), timeout=1):
                    return tunnel
            except OSError:
                time.sleep(self.PROBE_INTERVAL)

        message = _read_stderr(stderr)
        self.close(tunnel)
        raise TunnelError(
            f"Port-forward to Pod/{workload.name}:{remote_port} not established "
            f"within {timeout} seconds{': ' + message if message else ''}"
        )

    def close(self, tunnel: Tunnel) -> None:
        """Stop the port-forward. Calling it again is a no-op."""
        if tunnel.closed:
            return
        tunnel.closed = True

        process = tunnel.process
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()

        if tunnel.stderr is not None:
            tunnel.stderr.close()
