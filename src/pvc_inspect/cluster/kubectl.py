"""Thin wrapper around the kubectl CLI."""

from __future__ import annotations

import json
import queue
import subprocess
import sys
import threading
import time
from collections.abc import Iterator
from typing import Any

from pvc_inspect.cluster.watch import END_OF_STREAM, WatchEvent, pump_events
from pvc_inspect.exceptions import (
    KubectlError,
    KubectlNotInstalledError,
    KubectlTimeoutError,
    NotFoundError,
    WatchError,
)


def _stop_process(proc: subprocess.Popen[Any], timeout: float = 5) -> None:
    """Terminate a child process, killing it if it does not exit in time."""
    if proc.poll() is not None:
        return
    proc.terminate()
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


class Kubectl:
    """Handle on a cluster, reached through the kubectl binary.

    One instance is created per invocation and passed to every component
    that talks to the cluster.
    """

    # Default timeout for one-shot kubectl commands (seconds)
    DEFAULT_TIMEOUT = 30

    # Pause between watch reconnects (seconds)
    WATCH_BACKOFF = 1.0

    def __init__(
        self,
        context: str | None = None,
        binary: str = "kubectl",
        timeout: int | None = None,
    ) -> None:
        """Initialize the wrapper.

        Args:
            context: Kubeconfig context to use (None for current context).
            binary: Name or path of the kubectl executable.
            timeout: Default timeout for one-shot commands.
        """
        self.context = context
        self.binary = binary
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    def command(self, *args: str) -> list[str]:
        """Build a full kubectl command line.

        Args:
            *args: Command arguments (without 'kubectl').

        Returns:
            Argument vector including the binary and context.
        """
        cmd = [self.binary]
        if self.context:
            cmd.extend(["--context", self.context])
        cmd.extend(args)
        return cmd

    def run(
        self,
        *args: str,
        capture: bool = True,
        check: bool = True,
        input_data: str | None = None,
        timeout: int | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run a kubectl command.

        Args:
            *args: Command arguments (without 'kubectl').
            capture: Capture output (default True).
            check: Raise on non-zero exit (default True).
            input_data: Optional input to pass to stdin.
            timeout: Timeout in seconds. None uses the default, 0 disables it.

        Returns:
            CompletedProcess result.

        Raises:
            KubectlNotInstalledError: If kubectl is not installed.
            KubectlTimeoutError: If the command times out.
            NotFoundError: If the server reports the object as missing.
            KubectlError: If the command fails and check=True.
        """
        cmd = self.command(*args)

        if timeout is None:
            timeout_value: float | None = self.timeout
        elif timeout == 0:
            timeout_value = None
        else:
            timeout_value = timeout

        try:
            result = subprocess.run(
                cmd,
                capture_output=capture,
                text=True,
                input=input_data,
                timeout=timeout_value,
            )
        except subprocess.TimeoutExpired:
            raise KubectlTimeoutError(
                f"kubectl command timed out after {timeout_value}s: "
                f"{' '.join(cmd)}\n"
                "This may indicate network issues connecting to the cluster."
            ) from None
        except FileNotFoundError as e:
            raise KubectlNotInstalledError(
                f"{self.binary} not found. Install kubectl and make sure it is "
                "in your PATH."
            ) from e

        if check and result.returncode != 0:
            stderr = (result.stderr or "").strip() if capture else ""
            if "(NotFound)" in stderr:
                raise NotFoundError(stderr)
            raise KubectlError(f"kubectl {args[0]} failed: {stderr}")

        return result

    def popen(self, *args: str, **kwargs: Any) -> subprocess.Popen[Any]:
        """Start a long-running kubectl command.

        The child gets its own session so that a terminal interrupt reaches
        only this process, which then stops the child in order.

        Raises:
            KubectlNotInstalledError: If kubectl is not installed.
        """
        try:
            return subprocess.Popen(
                self.command(*args),
                start_new_session=True,
                **kwargs,
            )
        except FileNotFoundError as e:
            raise KubectlNotInstalledError(
                f"{self.binary} not found. Install kubectl and make sure it is "
                "in your PATH."
            ) from e

    def get_json(self, kind: str, name: str, namespace: str) -> dict[str, Any]:
        """Fetch a single object.

        Raises:
            NotFoundError: If the object does not exist.
        """
        result = self.run("get", kind, name, "-n", namespace, "-o", "json")
        return json.loads(result.stdout)

    def list_json(
        self,
        kind: str,
        namespace: str | None = None,
        selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind.

        Args:
            kind: Resource kind (e.g. "pods").
            namespace: Namespace to list, or None for all namespaces.
            selector: Optional label selector.

        Returns:
            The list items.
        """
        args = ["get", kind]
        if namespace is None:
            args.append("--all-namespaces")
        else:
            args.extend(["-n", namespace])
        if selector:
            args.extend(["-l", selector])
        args.extend(["-o", "json"])

        result = self.run(*args)
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise KubectlError(f"kubectl get {kind} returned invalid JSON: {e}") from e
        return list(data.get("items", []))

    def create(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Create an object from a manifest and return the stored object."""
        result = self.run(
            "create", "-f", "-", "-o", "json",
            input_data=json.dumps(manifest),
        )
        return json.loads(result.stdout)

    def delete(self, kind: str, name: str, namespace: str) -> None:
        """Request deletion of an object.

        Deleting an object that is already gone is a no-op. The call does not
        wait for finalizers; use watch() for that.
        """
        self.run(
            "delete", kind, name,
            "-n", namespace,
            "--ignore-not-found",
            "--wait=false",
        )

    def label(
        self, kind: str, name: str, namespace: str, key: str, value: str
    ) -> None:
        """Set a label on an object, replacing any existing value."""
        self.run(
            "label", kind, name,
            "-n", namespace,
            f"{key}={value}",
            "--overwrite",
        )

    def watch(
        self,
        kind: str,
        name: str,
        namespace: str,
        timeout: float,
        retries: int = 3,
    ) -> Iterator[WatchEvent]:
        """Watch a single object.

        The generator reconnects when kubectl's stream ends, and returns once
        the deadline has passed. If the object does not exist a synthetic
        DELETED event is produced and the generator returns.

        Args:
            kind: Resource kind.
            name: Object name.
            namespace: Object namespace.
            timeout: Seconds until the generator stops.
            retries: Consecutive failed reconnects tolerated.

        Yields:
            WatchEvent for every change of the object.

        Raises:
            WatchError: If the stream keeps failing.
        """
        deadline = time.monotonic() + timeout
        failures = 0

        while True:
            proc = self.popen(
                "get", kind, name,
                "-n", namespace,
                "--watch",
                "--output-watch-events",
                "-o", "json",
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
            events: queue.Queue[Any] = queue.Queue()
            reader = threading.Thread(
                target=pump_events, args=(proc.stdout, events), daemon=True
            )
            reader.start()

            received = False
            try:
                while True:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return
                    try:
                        item = events.get(timeout=remaining)
                    except queue.Empty:
                        return
                    if item is END_OF_STREAM:
                        break
                    received = True
                    yield WatchEvent.from_json(item)
            finally:
                _stop_process(proc)

            stderr = proc.stderr.read().strip() if proc.stderr else ""
            if "(NotFound)" in stderr:
                yield WatchEvent(type="DELETED")
                return

            failures = 1 if received else failures + 1
            if failures > retries:
                raise WatchError(
                    f"Watch on {kind}/{name} failed {failures} times: "
                    f"{stderr or 'stream closed'}"
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            print(
                f"Watch on {kind}/{name} interrupted, reconnecting...",
                file=sys.stderr,
            )
            time.sleep(min(self.WATCH_BACKOFF, remaining))
