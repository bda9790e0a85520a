"""Persistent volume claim lookup."""

from __future__ import annotations

from dataclasses import dataclass

from pvc_inspect.cluster import Kubectl
from pvc_inspect.exceptions import ClaimNotFoundError, NotFoundError


@dataclass
class Claim:
    """A persistent volume claim as shown in the selection listing.

    Attributes:
        name: Claim name.
        created: Creation timestamp as reported by the server.
        size: Requested storage size (e.g. "10Gi").
        phase: Claim phase ("Bound", "Pending", "Lost").
    """

    name: str
    created: str
    size: str
    phase: str


def list_claims(kubectl: Kubectl, namespace: str) -> list[Claim]:
    """List the claims of a namespace, sorted by name."""
    claims = []
    for item in kubectl.list_json("persistentvolumeclaims", namespace):
        metadata = item.get("metadata") or {}
        spec = item.get("spec") or {}
        requests = (spec.get("resources") or {}).get("requests") or {}
        claims.append(Claim(
            name=metadata.get("name", ""),
            created=metadata.get("creationTimestamp", ""),
            size=requests.get("storage", ""),
            phase=(item.get("status") or {}).get("phase", ""),
        ))
    return sorted(claims, key=lambda c: c.name)


def ensure_claim(kubectl: Kubectl, name: str, namespace: str) -> None:
    """Make sure a claim exists before anything is created for it.

    Raises:
        ClaimNotFoundError: If the claim does not exist.
    """
    try:
        kubectl.get_json("persistentvolumeclaim", name, namespace)
    except NotFoundError:
        raise ClaimNotFoundError(
            f"PVC '{name}' not found in namespace '{namespace}'"
        ) from None


def format_claims(claims: list[Claim]) -> str:
    """Render claims as an aligned table."""
    headers = ("NAME", "SIZE", "STATUS", "CREATED")
    rows = [(c.name, c.size, c.phase, c.created) for c in claims]
    widths = [
        max(len(row[i]) for row in [headers, *rows]) for i in range(len(headers))
    ]
    lines = []
    for row in [headers, *rows]:
        lines.append("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip())
    return "\n".join(lines)
