"""One inspection session, from template to teardown."""

from __future__ import annotations

import signal
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from pvc_inspect.claims import ensure_claim
from pvc_inspect.cluster import Kubectl
from pvc_inspect.config import InspectConfig, SessionSpec
from pvc_inspect.controller import SessionController, SessionState
from pvc_inspect.exceptions import (
    DeletionError,
    InspectError,
    MountError,
    TemplateError,
)
from pvc_inspect.keys import SessionKey, generate_session_key
from pvc_inspect.mounts import LocalMountManager, MountHandle
from pvc_inspect.shell import InteractiveSession
from pvc_inspect.templates import Template, get_template, load_override, resolve
from pvc_inspect.tunnel import Tunnel, TunnelManager
from pvc_inspect.workload import Workload


@dataclass
class TeardownReport:
    """What the teardown cascade managed to do.

    Attributes:
        unmounted: The local mount was released (None if there was none).
        tunnel_closed: The tunnel was closed (None if there was none).
        delete_requested: The delete call for the pod succeeded.
        deletion_confirmed: The pod was seen to disappear.
        stranded: The pod could not be deleted and is still in the cluster.
        errors: Messages for every step that failed.
    """

    unmounted: bool | None = None
    tunnel_closed: bool | None = None
    delete_requested: bool = False
    deletion_confirmed: bool = False
    stranded: bool = False
    errors: list[str] = field(default_factory=list)


@contextmanager
def _signals_deferred() -> Iterator[None]:
    """Ignore SIGINT/SIGTERM for the duration of the block."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, signal.SIG_IGN)
    try:
        yield
    finally:
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)


def endpoint_hint(template: Template, tunnel: Tunnel, key: SessionKey | None) -> str:
    """Describe how to reach the forwarded endpoint."""
    if template.endpoint == "sftp" and key is not None:
        return (
            f"SFTP endpoint: sftp -P {tunnel.local_port} -i {key.identity_file} "
            f"-o StrictHostKeyChecking=no ssh@{tunnel.host}"
        )
    if template.endpoint == "http":
        return f"File browser: http://{tunnel.address}/"
    if template.endpoint == "smb":
        return f"SMB share: smb://{tunnel.address}/data"
    return f"Forwarded endpoint: {tunnel.address}"


class InspectionSession:
    """Creates an inspection pod, attaches to it and always removes it.

    Teardown runs exactly once per session, in the order unmount, close
    tunnel, delete pod, wait for deletion. It runs after the shell exits and
    on every error or interrupt raised after the pod was submitted.
    """

    def __init__(
        self,
        kubectl: Kubectl,
        spec: SessionSpec,
        config: InspectConfig | None = None,
        controller: SessionController | None = None,
        tunnels: TunnelManager | None = None,
        shell: InteractiveSession | None = None,
        mounts: LocalMountManager | None = None,
    ) -> None:
        self._kubectl = kubectl
        self._spec = spec
        self._config = config or InspectConfig()
        self.controller = controller or SessionController(kubectl, self._config)
        self._tunnels = tunnels or TunnelManager(kubectl)
        self._shell = shell or InteractiveSession(kubectl)
        self._mounts = mounts or LocalMountManager()

        self.template: Template | None = None
        self.key: SessionKey | None = None
        self.tunnel: Tunnel | None = None
        self.mount: MountHandle | None = None
        self.report: TeardownReport | None = None

    @property
    def workload(self) -> Workload | None:
        return self.controller.workload

    def load_template(self) -> Template:
        """Resolve the requested template and check that it can serve the request.

        Raises:
            TemplateError: If the template is unknown, invalid, or cannot
                serve a local mount when one was requested.
        """
        if self._spec.template_file is not None:
            template = load_override(self._spec.template_file)
        else:
            template = get_template(self._spec.template)

        if self._spec.mountpoint is not None and not template.mountable:
            raise TemplateError(
                f"Template '{template.name}' has no SFTP endpoint; "
                "local mounts need the 'ssh' template"
            )
        return template

    def run(self) -> int:
        """Run the session.

        Returns:
            Exit code of the remote shell.

        Raises:
            InspectError: For any failure; when the pod had been created it
                has already been torn down.
        """
        spec = self._spec
        template = self.load_template()
        self.template = template
        ensure_claim(self._kubectl, spec.claim, spec.namespace)

        if spec.read_write:
            print("Warning: Volume will be mounted in read/write mode", file=sys.stderr)

        try:
            if template.needs_public_key:
                self.key = generate_session_key()
            manifest = resolve(
                template,
                claim=spec.claim,
                namespace=spec.namespace,
                read_only=not spec.read_write,
                public_key=self.key.public_key if self.key else None,
            )
            container = manifest["spec"]["containers"][0]["name"]

            workload = self.controller.create(manifest)
            self.controller.wait_ready(workload, self._config.ready_timeout)
            print(f"Pod/{workload.name} is ready.", file=sys.stderr)

            if template.remote_port is not None:
                self.tunnel = self._tunnels.open(
                    workload,
                    spec.local_port,
                    template.remote_port,
                    timeout=self._config.tunnel_timeout,
                )
                print(endpoint_hint(template, self.tunnel, self.key), file=sys.stderr)

            if spec.mountpoint is not None:
                if self.tunnel is None or self.key is None:
                    raise MountError(
                        f"Template '{template.name}' has no forwarded SFTP port to mount"
                    )
                self.mount = self._mounts.mount(
                    self.tunnel,
                    spec.mountpoint,
                    read_only=not spec.read_write,
                    identity_file=self.key.identity_file,
                    timeout=self._config.mount_timeout,
                )
                print(f"Volume mounted on {self.mount.path}", file=sys.stderr)

            self.controller.state = SessionState.ACTIVE
            print(
                "Connecting to pod. Type Control+D to exit the shell.",
                file=sys.stderr,
            )
            return self._shell.attach_shell(workload, template.shell, container)
        finally:
            self.teardown()

    def teardown(self) -> TeardownReport:
        """Release everything the session acquired. Runs at most once."""
        if self.report is not None:
            return self.report
        report = TeardownReport()
        self.report = report

        with _signals_deferred():
            if self.mount is not None:
                try:
                    self._mounts.unmount(self.mount)
                    report.unmounted = True
                except (MountError, OSError) as e:
                    report.unmounted = False
                    report.errors.append(f"unmount: {e}")
                    print(f"Warning: failed to unmount: {e}", file=sys.stderr)

            if self.tunnel is not None:
                print("Stopping port forwarding...", file=sys.stderr)
                try:
                    self._tunnels.close(self.tunnel)
                    report.tunnel_closed = True
                except OSError as e:
                    report.tunnel_closed = False
                    report.errors.append(f"tunnel: {e}")
                    print(f"Warning: failed to stop port forwarding: {e}", file=sys.stderr)

            try:
                workload = self.controller.workload
                if workload is not None:
                    self._remove_workload(workload, report)
            finally:
                if self.key is not None:
                    self.key.remove()

        return report

    def _remove_workload(self, workload: Workload, report: TeardownReport) -> None:
        try:
            self.controller.delete(workload)
            report.delete_requested = True
            if self._spec.wait_for_deletion:
                self.controller.wait_deleted(workload, self._config.delete_timeout)
                report.deletion_confirmed = True
                print(f"Pod/{workload.name} deleted.", file=sys.stderr)
            else:
                print(
                    f"Deletion of Pod/{workload.name} requested (not waiting).",
                    file=sys.stderr,
                )
        except DeletionError as e:
            report.stranded = True
            report.errors.append(str(e))
            print(
                f"ERROR: {e}\n"
                f"Pod/{workload.name} is still running in namespace "
                f"{workload.namespace}. Remove it with:\n"
                f"  kubectl delete pod {workload.name} -n {workload.namespace}\n"
                "or run 'pvc-inspect --cleanup'.",
                file=sys.stderr,
            )
        except InspectError as e:
            # Deletion was requested; only the confirmation is missing
            report.errors.append(str(e))
            print(f"Warning: {e}", file=sys.stderr)
