"""The inspection pod and the marker that identifies it."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Any

# Every pod created by pvc-inspect carries this label and name prefix.
LABEL_KEY = "pvc-inspect"
LABEL_ACTIVE = "1"
# Set on a pod once its session is over, so the sweeper removes it even if the
# user was not allowed to delete it.
LABEL_DELETE = "0"
CLAIM_LABEL = "pvc-inspect/claim"
NAME_PREFIX = "pvc-inspect-"

DATA_VOLUME = "data"
DATA_PATH = "/data"

MAX_NAME_LENGTH = 63
SUFFIX_BYTES = 3


def _sanitize(value: str) -> str:
    """Lowercase a string and replace anything but [a-z0-9] with dashes."""
    sanitized = "".join(c if c.isalnum() and c.isascii() else "-" for c in value.lower())
    return sanitized.strip("-")


def generate_workload_name(claim: str) -> str:
    """Generate a unique pod name for a claim.

    Args:
        claim: Persistent volume claim name.

    Returns:
        Name in format "pvc-inspect-{claim}-{hex}", at most 63 characters.
    """
    suffix = secrets.token_hex(SUFFIX_BYTES)
    budget = MAX_NAME_LENGTH - len(NAME_PREFIX) - len(suffix) - 1
    stem = _sanitize(claim)[:budget].rstrip("-") or "claim"
    return f"{NAME_PREFIX}{stem}-{suffix}"


def claim_label_value(claim: str) -> str:
    """Fit a claim name into a label value (63 chars, alphanumeric ends)."""
    value = claim[:MAX_NAME_LENGTH]
    return value.strip("-_.")


def has_marker(pod: dict[str, Any]) -> bool:
    """Check whether a pod was created by pvc-inspect.

    Both the label and the name prefix must be present.
    """
    metadata = pod.get("metadata") or {}
    labels = metadata.get("labels") or {}
    name = metadata.get("name") or ""
    return LABEL_KEY in labels and name.startswith(NAME_PREFIX)


def is_marked_for_deletion(pod: dict[str, Any]) -> bool:
    """Check whether a finished session flagged this pod for removal."""
    labels = (pod.get("metadata") or {}).get("labels") or {}
    return labels.get(LABEL_KEY) == LABEL_DELETE


def is_pod_ready(pod: dict[str, Any]) -> bool:
    """A pod is ready when it is Running and every container reports ready."""
    status = pod.get("status") or {}
    if status.get("phase") != "Running":
        return False
    statuses = status.get("containerStatuses") or []
    return bool(statuses) and all(cs.get("ready", False) for cs in statuses)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a Kubernetes RFC 3339 timestamp ("2024-01-01T00:00:00Z")."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class Workload:
    """A pod created to expose a volume claim.

    Attributes:
        name: Pod name.
        namespace: Pod namespace.
        claim: Name of the attached volume claim.
        uid: Server-assigned UID (empty until created).
        phase: Last observed pod phase.
        created_at: Creation timestamp reported by the server.
    """

    name: str
    namespace: str
    claim: str = ""
    uid: str = ""
    phase: str = "Pending"
    created_at: datetime | None = None

    @classmethod
    def from_pod(cls, pod: dict[str, Any]) -> Workload:
        """Build a Workload from a pod object."""
        metadata = pod.get("metadata") or {}
        labels = metadata.get("labels") or {}
        status = pod.get("status") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            claim=labels.get(CLAIM_LABEL, ""),
            uid=metadata.get("uid", ""),
            phase=status.get("phase", "Pending"),
            created_at=parse_timestamp(metadata.get("creationTimestamp")),
        )
