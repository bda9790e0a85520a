"""Tests for the stale pod sweeper."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from pvc_inspect.cluster import WatchEvent
from pvc_inspect.exceptions import KubectlError, WatchError
from pvc_inspect.sweeper import SweepResult, Sweeper

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


def _pod(
    name: str,
    age_minutes: int,
    namespace: str = "my-namespace",
    label: str | None = "1",
    terminating: bool = False,
) -> dict[str, Any]:
    created = (NOW - timedelta(minutes=age_minutes)).strftime("%Y-%m-%dT%H:%M:%SZ")
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "creationTimestamp": created,
        "labels": {} if label is None else {"pvc-inspect": label},
    }
    if terminating:
        metadata["deletionTimestamp"] = created
    return {"metadata": metadata}


class FakeCluster:
    """Just enough of Kubectl for the sweeper."""

    def __init__(self, pods: list[dict[str, Any]]) -> None:
        self.pods = pods
        self.listed: list[tuple[str | None, str | None]] = []
        self.deleted: list[str] = []
        self.forbidden: set[str] = set()
        self.watched: list[str] = []
        self.watch_error = False

    def list_json(
        self, kind: str, namespace: str | None = None, selector: str | None = None
    ) -> list[dict[str, Any]]:
        self.listed.append((namespace, selector))
        return [
            p for p in self.pods
            if namespace is None or p["metadata"]["namespace"] == namespace
        ]

    def delete(self, kind: str, name: str, namespace: str) -> None:
        if name in self.forbidden:
            raise KubectlError(f'pods "{name}" is forbidden')
        self.deleted.append(name)
        self.pods = [p for p in self.pods if p["metadata"]["name"] != name]

    def watch(self, kind: str, name: str, namespace: str, **kwargs: Any) -> Iterator[WatchEvent]:
        self.watched.append(name)
        if self.watch_error:
            raise WatchError("watch broke")
        yield WatchEvent("DELETED")


def _sweeper(cluster: FakeCluster) -> Sweeper:
    return Sweeper(cluster, clock=lambda: NOW)  # type: ignore[arg-type]


class TestSweep:
    """Tests for Sweeper.sweep."""

    def test_deletes_only_old_pods(self) -> None:
        """Pods past the threshold go, younger ones stay."""
        cluster = FakeCluster([
            _pod("pvc-inspect-a-111111", 10),
            _pod("pvc-inspect-b-222222", 300),
            _pod("pvc-inspect-c-333333", 500),
        ])

        result = _sweeper(cluster).sweep(min_age=timedelta(minutes=240))

        assert (result.examined, result.deleted, result.failed) == (3, 2, 0)
        assert sorted(cluster.deleted) == ["pvc-inspect-b-222222", "pvc-inspect-c-333333"]

    def test_second_run_deletes_nothing(self) -> None:
        cluster = FakeCluster([
            _pod("pvc-inspect-a-111111", 10),
            _pod("pvc-inspect-b-222222", 300),
        ])
        sweeper = _sweeper(cluster)

        sweeper.sweep()
        result = sweeper.sweep()

        assert (result.examined, result.deleted) == (1, 0)

    def test_ignores_foreign_pods(self) -> None:
        """Both the label and the name prefix are required."""
        cluster = FakeCluster([
            _pod("unrelated-pod", 500),
            _pod("pvc-inspect-x-444444", 500, label=None),
        ])

        result = _sweeper(cluster).sweep()

        assert result.examined == 0
        assert cluster.deleted == []

    def test_marked_pods_regardless_of_age(self) -> None:
        cluster = FakeCluster([_pod("pvc-inspect-a-111111", 1, label="0")])

        result = _sweeper(cluster).sweep()

        assert result.deleted == 1

    def test_skips_terminating_pods(self) -> None:
        cluster = FakeCluster([_pod("pvc-inspect-a-111111", 500, terminating=True)])

        result = _sweeper(cluster).sweep()

        assert (result.examined, result.deleted) == (1, 0)
        assert cluster.deleted == []

    def test_threshold_is_exclusive(self) -> None:
        cluster = FakeCluster([_pod("pvc-inspect-a-111111", 240)])

        result = _sweeper(cluster).sweep(min_age=timedelta(minutes=240))

        assert result.deleted == 0

    def test_failure_does_not_stop_sweep(self) -> None:
        """A pod that cannot be deleted is reported, the rest are still deleted."""
        cluster = FakeCluster([
            _pod("pvc-inspect-a-111111", 500),
            _pod("pvc-inspect-b-222222", 500),
        ])
        cluster.forbidden.add("pvc-inspect-a-111111")

        result = _sweeper(cluster).sweep()

        assert (result.examined, result.deleted, result.failed) == (2, 1, 1)
        error = result.errors[0]
        assert error.name == "pvc-inspect-a-111111"
        assert error.namespace == "my-namespace"
        assert "forbidden" in error.reason

    def test_scope(self) -> None:
        cluster = FakeCluster([
            _pod("pvc-inspect-a-111111", 500, namespace="one"),
            _pod("pvc-inspect-b-222222", 500, namespace="two"),
        ])

        result = _sweeper(cluster).sweep(namespace="one")

        assert cluster.listed == [("one", "pvc-inspect")]
        assert cluster.deleted == ["pvc-inspect-a-111111"]
        assert result.examined == 1

    def test_all_namespaces(self) -> None:
        cluster = FakeCluster([])

        _sweeper(cluster).sweep()

        assert cluster.listed == [(None, "pvc-inspect")]

    def test_wait_for_deletion(self) -> None:
        cluster = FakeCluster([_pod("pvc-inspect-a-111111", 500)])

        result = _sweeper(cluster).sweep(wait=True)

        assert cluster.watched == ["pvc-inspect-a-111111"]
        assert result.deleted == 1

    def test_wait_failure_is_per_item(self) -> None:
        cluster = FakeCluster([_pod("pvc-inspect-a-111111", 500)])
        cluster.watch_error = True

        result = _sweeper(cluster).sweep(wait=True)

        assert (result.deleted, result.failed) == (0, 1)
        assert "watch broke" in result.errors[0].reason

    def test_listing_failure_propagates(self) -> None:
        cluster = FakeCluster([])

        def broken(*args: Any, **kwargs: Any) -> list[dict[str, Any]]:
            raise KubectlError("connection refused")

        cluster.list_json = broken  # type: ignore[method-assign]

        with pytest.raises(KubectlError):
            _sweeper(cluster).sweep()


def test_summary() -> None:
    assert SweepResult(examined=3, deleted=2, failed=1).summary() == (
        "examined=3 deleted=2 failed=1"
    )
