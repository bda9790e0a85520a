"""Cluster access through the kubectl CLI."""

from pvc_inspect.cluster.kubectl import Kubectl
from pvc_inspect.cluster.watch import WatchEvent

__all__ = [
    "Kubectl",
    "WatchEvent",
]
