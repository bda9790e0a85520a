"""Removal of inspection pods left behind by aborted sessions.

The sweep is stateless: it lists marked pods, deletes the stale ones and
forgets about them. Running it again, or concurrently from a CronJob, is
harmless because deleting a pod that is already gone is a no-op.
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from contextlib import closing
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from pvc_inspect.cluster import Kubectl
from pvc_inspect.exceptions import KubectlError, SweepItemError, WatchError
from pvc_inspect.workload import (
    LABEL_KEY,
    has_marker,
    is_marked_for_deletion,
    parse_timestamp,
)

DEFAULT_MIN_AGE = timedelta(minutes=4 * 60)


@dataclass
class SweepResult:
    """Outcome of a sweep.

    Attributes:
        examined: Marked pods looked at.
        deleted: Pods deleted by this sweep.
        failed: Pods that could not be deleted.
        errors: One SweepItemError per failed pod.
    """

    examined: int = 0
    deleted: int = 0
    failed: int = 0
    errors: list[SweepItemError] = field(default_factory=list)

    def summary(self) -> str:
        return f"examined={self.examined} deleted={self.deleted} failed={self.failed}"


class Sweeper:
    """Deletes stale pvc-inspect pods."""

    def __init__(
        self,
        kubectl: Kubectl,
        clock: Callable[[], datetime] | None = None,
        delete_timeout: int = 120,
        watch_retries: int = 3,
    ) -> None:
        """Initialize the sweeper.

        Args:
            kubectl: Cluster handle.
            clock: Returns the current UTC time (for tests).
            delete_timeout: Seconds to wait per pod when waiting for deletion.
            watch_retries: Watch reconnects tolerated while waiting.
        """
        self._kubectl = kubectl
        self._clock = clock or (lambda: datetime.now(UTC))
        self._delete_timeout = delete_timeout
        self._watch_retries = watch_retries

    def is_stale(self, pod: dict[str, Any], min_age: timedelta, now: datetime) -> bool:
        """A pod is stale when it is older than min_age or flagged for deletion."""
        if is_marked_for_deletion(pod):
            return True
        created = parse_timestamp((pod.get("metadata") or {}).get("creationTimestamp"))
        if created is None:
            return False
        return now - created > min_age

    def sweep(
        self,
        namespace: str | None = None,
        min_age: timedelta = DEFAULT_MIN_AGE,
        wait: bool = False,
    ) -> SweepResult:
        """Delete every marked pod older than min_age.

        Args:
            namespace: Namespace to sweep, or None for the whole cluster.
            min_age: Pods strictly older than this are deleted.
            wait: Wait for each deleted pod to disappear.

        Returns:
            Counts of examined, deleted and failed pods.

        Raises:
            KubectlError: If the pods cannot be listed at all.
        """
        scope = f"namespace {namespace}" if namespace else "all namespaces"
        print(
            f"Looking for pvc-inspect pods older than {int(min_age.total_seconds() // 60)} "
            f"minutes in {scope}...",
            file=sys.stderr,
        )
        pods = self._kubectl.list_json("pods", namespace, selector=LABEL_KEY)
        now = self._clock()
        result = SweepResult()

        for pod in pods:
            if not has_marker(pod):
                continue
            result.examined += 1

            metadata = pod.get("metadata") or {}
            if metadata.get("deletionTimestamp"):
                continue
            if not self.is_stale(pod, min_age, now):
                continue

            name = metadata.get("name", "")
            ns = metadata.get("namespace") or namespace or "default"
            try:
                self._kubectl.delete("pod", name, ns)
                if wait:
                    self._wait_gone(name, ns)
            except (KubectlError, SweepItemError) as e:
                error = e if isinstance(e, SweepItemError) else SweepItemError(ns, name, str(e))
                result.failed += 1
                result.errors.append(error)
                print(f"Warning: failed to delete Pod/{name}: {error.reason}", file=sys.stderr)
                continue

            result.deleted += 1
            print(f"Deleted Pod/{name} in namespace {ns}", file=sys.stderr)

        return result

    def _wait_gone(self, name: str, namespace: str) -> None:
        try:
            with closing(self._kubectl.watch(
                "pod", name, namespace,
                timeout=self._delete_timeout,
                retries=self._watch_retries,
            )) as events:
                for event in events:
                    if event.type == "DELETED":
                        return
        except WatchError as e:
            raise SweepItemError(namespace, name, str(e)) from e
        raise SweepItemError(
            namespace, name, f"still present after {self._delete_timeout} seconds"
        )
