"""Lifecycle of the inspection pod: create, wait until ready, delete."""

from __future__ import annotations

import sys
from contextlib import closing
from enum import Enum
from typing import Any

from pvc_inspect.cluster import Kubectl
from pvc_inspect.config import InspectConfig
from pvc_inspect.exceptions import (
    CreationError,
    DeletionError,
    DeletionTimeoutError,
    KubectlError,
    KubectlNotInstalledError,
    KubectlTimeoutError,
    NotFoundError,
    ReadyTimeoutError,
    WatchError,
    WorkloadFailedError,
    WorkloadNotReadyError,
)
from pvc_inspect.workload import (
    CLAIM_LABEL,
    LABEL_DELETE,
    LABEL_KEY,
    Workload,
    is_pod_ready,
)


class SessionState(str, Enum):
    """Where a session's pod is in its lifecycle."""

    PENDING = "pending"
    CREATED = "created"
    WAITING_READY = "waiting-ready"
    READY = "ready"
    ACTIVE = "active"
    TERMINATING = "terminating"
    DELETED = "deleted"
    CREATE_FAILED = "create-failed"
    READY_TIMEOUT = "ready-timeout"
    DELETE_FAILED = "delete-failed"


def _waiting_reason(pod: dict[str, Any]) -> str | None:
    """Return the first container waiting reason, e.g. ImagePullBackOff."""
    status = pod.get("status") or {}
    for cs in status.get("containerStatuses") or []:
        waiting = (cs.get("state") or {}).get("waiting") or {}
        if waiting.get("reason"):
            message = waiting.get("message")
            return f"{waiting['reason']}: {message}" if message else waiting["reason"]
    return None


class SessionController:
    """Owns the inspection pod of one session.

    The controller issues at most one delete call for its pod, so the
    timeout path of wait_ready() and the session teardown can both ask for
    deletion without deleting twice.
    """

    def __init__(self, kubectl: Kubectl, config: InspectConfig | None = None) -> None:
        """Initialize the controller.

        Args:
            kubectl: Cluster handle.
            config: Timeouts and retry limits. Defaults to InspectConfig().
        """
        self._kubectl = kubectl
        self._config = config or InspectConfig()
        self._delete_issued = False
        self._delete_error: DeletionError | None = None
        self.state = SessionState.PENDING
        self.workload: Workload | None = None

    @property
    def delete_issued(self) -> bool:
        """Whether the delete call for the pod has been made."""
        return self._delete_issued

    def create(self, manifest: dict[str, Any]) -> Workload:
        """Submit the pod manifest.

        Args:
            manifest: Resolved pod manifest with name and namespace set.

        Returns:
            The created Workload.

        Raises:
            CreationError: If the cluster rejected the pod.
        """
        metadata = manifest["metadata"]
        name = metadata["name"]
        ns = metadata["namespace"]
        claim = (metadata.get("labels") or {}).get(CLAIM_LABEL, "")

        print(f"Creating Pod/{name} in namespace {ns}...", file=sys.stderr)
        try:
            pod = self._kubectl.create(manifest)
        except KubectlTimeoutError as e:
            self.state = SessionState.CREATE_FAILED
            self._resolve_unknown_creation(Workload(name=name, namespace=ns, claim=claim))
            raise CreationError(f"Timed out creating Pod/{name}: {e}") from e
        except KubectlNotInstalledError:
            self.state = SessionState.CREATE_FAILED
            raise
        except KubectlError as e:
            self.state = SessionState.CREATE_FAILED
            raise CreationError(f"Failed to create Pod/{name}: {e}") from e
        except BaseException:
            # Interrupted mid-request: the pod may exist already
            self.state = SessionState.CREATE_FAILED
            self._resolve_unknown_creation(Workload(name=name, namespace=ns, claim=claim))
            raise

        workload = Workload.from_pod(pod)
        workload.name = workload.name or name
        workload.namespace = workload.namespace or ns
        workload.claim = workload.claim or claim
        self.workload = workload
        self.state = SessionState.CREATED
        return workload

    def _resolve_unknown_creation(self, workload: Workload) -> None:
        """Find out whether a timed-out create went through, and undo it."""
        try:
            self._kubectl.get_json("pod", workload.name, workload.namespace)
        except NotFoundError:
            return
        except KubectlError as e:
            print(
                f"Warning: could not tell whether Pod/{workload.name} was created "
                f"({e}). Run 'pvc-inspect --cleanup' to remove leftovers.",
                file=sys.stderr,
            )
            return

        self.workload = workload
        self.state = SessionState.CREATED
        try:
            self.delete(workload)
        except DeletionError as e:
            print(f"Warning: {e}", file=sys.stderr)

    def wait_ready(self, workload: Workload, timeout: int | None = None) -> Workload:
        """Watch the pod until every container is ready.

        On any failure the pod is deleted before the error is raised.

        Args:
            workload: Pod returned by create().
            timeout: Seconds to wait (default: config.ready_timeout).

        Returns:
            The workload with phase updated.

        Raises:
            ReadyTimeoutError: If the pod was not ready in time or the watch
                could not be kept alive.
            WorkloadFailedError: If the pod terminated or was removed.
        """
        timeout = self._config.ready_timeout if timeout is None else timeout
        self.state = SessionState.WAITING_READY
        print(f"Waiting for Pod/{workload.name} to be ready...", file=sys.stderr)

        failure: WorkloadNotReadyError | None = None
        last_reason: str | None = None
        try:
            with closing(self._kubectl.watch(
                "pod", workload.name, workload.namespace,
                timeout=timeout,
                retries=self._config.watch_retries,
            )) as events:
                for event in events:
                    if event.type == "DELETED":
                        failure = WorkloadFailedError(
                            f"Pod/{workload.name} was deleted before becoming ready"
                        )
                        break
                    if event.type == "ERROR":
                        continue

                    pod = event.object
                    workload.phase = (pod.get("status") or {}).get("phase", workload.phase)
                    if is_pod_ready(pod):
                        self.state = SessionState.READY
                        return workload
                    if workload.phase in ("Failed", "Succeeded"):
                        failure = WorkloadFailedError(
                            f"Pod/{workload.name} terminated with phase "
                            f"{workload.phase} before becoming ready"
                        )
                        break
                    last_reason = _waiting_reason(pod) or last_reason
        except WatchError as e:
            failure = ReadyTimeoutError(f"Lost the watch on Pod/{workload.name}: {e}")

        if failure is None:
            detail = f" (last status: {last_reason})" if last_reason else ""
            failure = ReadyTimeoutError(
                f"Pod/{workload.name} not ready within {timeout} seconds{detail}"
            )

        self.state = SessionState.READY_TIMEOUT
        try:
            self.delete(workload)
        except DeletionError as e:
            raise failure from e
        raise failure

    def delete(self, workload: Workload) -> None:
        """Request deletion of the pod (at most once).

        A failed delete is not retried; later calls raise the same error.

        The pod is first labelled for the sweeper, so a user who may label but
        not delete pods still leaves nothing behind for good.

        Raises:
            DeletionError: If the delete call failed.
        """
        if self._delete_issued:
            if self._delete_error is not None:
                raise self._delete_error
            return

        self.state = SessionState.TERMINATING
        try:
            self._kubectl.label(
                "pod", workload.name, workload.namespace, LABEL_KEY, LABEL_DELETE
            )
        except NotFoundError:
            pass
        except KubectlError as e:
            print(f"Warning: could not mark Pod/{workload.name}: {e}", file=sys.stderr)

        print(f"Deleting Pod/{workload.name}...", file=sys.stderr)
        self._delete_issued = True
        try:
            self._kubectl.delete("pod", workload.name, workload.namespace)
        except KubectlError as e:
            self.state = SessionState.DELETE_FAILED
            self._delete_error = DeletionError(
                f"Failed to delete Pod/{workload.name} in namespace "
                f"{workload.namespace}: {e}"
            )
            raise self._delete_error from e

    def wait_deleted(self, workload: Workload, timeout: int | None = None) -> None:
        """Block until the pod is gone from the cluster.

        Raises:
            DeletionTimeoutError: If the pod is still present after the timeout.
        """
        timeout = self._config.delete_timeout if timeout is None else timeout
        print(f"Waiting for Pod/{workload.name} to be deleted...", file=sys.stderr)
        try:
            with closing(self._kubectl.watch(
                "pod", workload.name, workload.namespace,
                timeout=timeout,
                retries=self._config.watch_retries,
            )) as events:
                for event in events:
                    uid = ((event.object.get("metadata") or {}).get("uid")) or ""
                    if event.type == "DELETED" or (workload.uid and uid and uid != workload.uid):
                        self.state = SessionState.DELETED
                        return
        except WatchError as e:
            raise DeletionTimeoutError(
                f"Lost the watch while waiting for Pod/{workload.name} to be deleted: {e}"
            ) from e

        raise DeletionTimeoutError(
            f"Pod/{workload.name} still present after {timeout} seconds; "
            "the cluster will finish deleting it"
        )

    def teardown(self, workload: Workload, wait_for_deletion: bool = True) -> bool:
        """Delete the pod and optionally wait until it is gone.

        Args:
            workload: Pod to remove.
            wait_for_deletion: Block until the pod has disappeared.

        Returns:
            True if the deletion was confirmed, False if it was fire-and-forget.

        Raises:
            DeletionError: If the delete call failed.
            DeletionTimeoutError: If the pod outlived the deletion timeout.
        """
        self.delete(workload)
        if not wait_for_deletion:
            return False
        self.wait_deleted(workload)
        return True
