"""Pod templates for inspection sessions.

A template supplies everything about the inspection pod except the claim:
the resolver attaches the claim as the single ``data`` volume and mounts it at
``/data`` in every container, whatever the template already declared.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from pvc_inspect.exceptions import TemplateError
from pvc_inspect.workload import (
    CLAIM_LABEL,
    DATA_PATH,
    DATA_VOLUME,
    LABEL_ACTIVE,
    LABEL_KEY,
    claim_label_value,
    generate_workload_name,
)

ENDPOINT_ANNOTATION = "pvc-inspect/endpoint"
SHELL_ANNOTATION = "pvc-inspect/shell"

DEFAULT_SHELL = ["/bin/sh", "-c", f"cd {DATA_PATH} && exec /bin/sh"]


@dataclass
class Template:
    """A pod template and how to talk to it.

    Attributes:
        name: Template identifier.
        description: One-line description shown by --list-templates.
        pod: Pod manifest without the data volume.
        remote_port: Port of the file-serving endpoint (None if there is none).
        endpoint: Endpoint protocol ("sftp", "http", "smb", "tcp") or None.
        shell: Command run for the interactive shell.
        needs_public_key: Inject the session public key as PUBLIC_KEY.
    """

    name: str
    description: str
    pod: dict[str, Any]
    remote_port: int | None = None
    endpoint: str | None = None
    shell: list[str] = field(default_factory=lambda: list(DEFAULT_SHELL))
    needs_public_key: bool = False

    @property
    def mountable(self) -> bool:
        """Whether the endpoint can be mounted locally with sshfs."""
        return self.endpoint == "sftp"


def _pod(container: dict[str, Any]) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {},
        "spec": {
            "containers": [container],
            "restartPolicy": "Never",
            "terminationGracePeriodSeconds": 5,
        },
    }


BUILTIN_TEMPLATES: dict[str, Template] = {
    "ssh": Template(
        name="ssh",
        description="OpenSSH server; shell plus SFTP endpoint for local mounts",
        pod=_pod({
            "name": "ssh",
            "image": "lscr.io/linuxserver/openssh-server:latest",
            "env": [
                {"name": "USER_NAME", "value": "ssh"},
                {"name": "PUID", "value": "0"},
                {"name": "PGID", "value": "0"},
            ],
            "ports": [{"containerPort": 2222, "name": "ssh"}],
            "readinessProbe": {
                "tcpSocket": {"port": 2222},
                "periodSeconds": 2,
            },
        }),
        remote_port=2222,
        endpoint="sftp",
        shell=["/bin/bash", "-c", f"cd {DATA_PATH} && exec /bin/bash"],
        needs_public_key=True,
    ),
    "sleep": Template(
        name="sleep",
        description="Minimal sleeping busybox container; shell only",
        pod=_pod({
            "name": "sleep",
            "image": "busybox:stable",
            "command": ["sleep", "infinity"],
        }),
    ),
    "filebrowser": Template(
        name="filebrowser",
        description="Web file browser on the volume, forwarded to localhost",
        pod=_pod({
            "name": "filebrowser",
            "image": "filebrowser/filebrowser:latest",
            "args": [
                "--noauth",
                "--root", DATA_PATH,
                "--address", "0.0.0.0",
                "--port", "8080",
                "--database", "/tmp/filebrowser.db",
            ],
            "ports": [{"containerPort": 8080, "name": "http"}],
            "readinessProbe": {
                "httpGet": {"path": "/health", "port": 8080},
                "periodSeconds": 2,
            },
        }),
        remote_port=8080,
        endpoint="http",
    ),
    "samba": Template(
        name="samba",
        description="SMB network share of the volume, forwarded to localhost",
        pod=_pod({
            "name": "samba",
            "image": "dperson/samba:latest",
            "args": ["-p", "-s", f"data;{DATA_PATH};yes;no;yes"],
            "ports": [{"containerPort": 445, "name": "smb"}],
            "readinessProbe": {
                "tcpSocket": {"port": 445},
                "periodSeconds": 2,
            },
        }),
        remote_port=445,
        endpoint="smb",
    ),
}


def get_template(name: str) -> Template:
    """Look up a built-in template.

    Raises:
        TemplateError: If no template has that name.
    """
    try:
        return BUILTIN_TEMPLATES[name]
    except KeyError:
        known = ", ".join(sorted(BUILTIN_TEMPLATES))
        raise TemplateError(
            f"Unknown template '{name}'. Available templates: {known}"
        ) from None


def _validate_override(data: Any, path: Path) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise TemplateError(f"{path}: expected a Pod manifest mapping")
    kind = data.get("kind", "Pod")
    if kind != "Pod":
        raise TemplateError(f"{path}: expected kind Pod, got {kind}")
    spec = data.get("spec")
    if not isinstance(spec, dict):
        raise TemplateError(f"{path}: missing spec")
    containers = spec.get("containers")
    if not isinstance(containers, list) or not containers:
        raise TemplateError(f"{path}: spec.containers must be a non-empty list")
    for index, container in enumerate(containers):
        if not isinstance(container, dict):
            raise TemplateError(f"{path}: spec.containers[{index}] must be a mapping")
        for key in ("name", "image"):
            if not container.get(key):
                raise TemplateError(
                    f"{path}: spec.containers[{index}] is missing '{key}'"
                )
    return data


def load_override(path: Path) -> Template:
    """Load a user-supplied Pod manifest (YAML or JSON) as a template.

    The endpoint port is the first containerPort declared by any container.
    Its protocol and the shell command may be set with the annotations
    ``pvc-inspect/endpoint`` and ``pvc-inspect/shell``.

    Raises:
        TemplateError: If the file cannot be read or is not a usable Pod.
    """
    try:
        data = yaml.safe_load(path.read_text())
    except OSError as e:
        raise TemplateError(f"Cannot read template file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise TemplateError(f"Invalid YAML in template file {path}: {e}") from e

    pod = _validate_override(data, path)
    annotations = (pod.get("metadata") or {}).get("annotations") or {}

    remote_port = None
    for container in pod["spec"]["containers"]:
        ports = container.get("ports") or []
        if ports and ports[0].get("containerPort"):
            remote_port = int(ports[0]["containerPort"])
            break

    endpoint = annotations.get(ENDPOINT_ANNOTATION)
    if endpoint is None and remote_port is not None:
        endpoint = "tcp"
    if endpoint is not None and remote_port is None:
        raise TemplateError(
            f"{path}: endpoint '{endpoint}' needs a containerPort to forward"
        )

    shell = list(DEFAULT_SHELL)
    if annotations.get(SHELL_ANNOTATION):
        shell = ["/bin/sh", "-c", str(annotations[SHELL_ANNOTATION])]

    return Template(
        name=path.stem,
        description=f"Override from {path}",
        pod=pod,
        remote_port=remote_port,
        endpoint=endpoint,
        shell=shell,
        needs_public_key=endpoint == "sftp",
    )


def resolve(
    template: Template,
    claim: str,
    namespace: str,
    read_only: bool = True,
    public_key: str | None = None,
) -> dict[str, Any]:
    """Produce a ready-to-submit Pod manifest for a claim.

    The result has a generated name, the pvc-inspect marker label, exactly one
    volume referencing the claim and exactly one mount at the data path in
    every container.

    Args:
        template: Template to start from (left unmodified).
        claim: Persistent volume claim to attach.
        namespace: Namespace to create the pod in.
        read_only: Attach the claim read-only.
        public_key: OpenSSH public key for templates that need one.

    Returns:
        Pod manifest as a dictionary.

    Raises:
        TemplateError: If the template needs a public key and none is given.
    """
    if template.needs_public_key and not public_key:
        raise TemplateError(f"Template '{template.name}' requires a public key")

    pod = copy.deepcopy(template.pod)
    metadata = pod.get("metadata") or {}
    labels = dict(metadata.get("labels") or {})
    labels[LABEL_KEY] = LABEL_ACTIVE
    labels[CLAIM_LABEL] = claim_label_value(claim)
    pod["metadata"] = {
        "name": generate_workload_name(claim),
        "namespace": namespace,
        "labels": labels,
    }
    if metadata.get("annotations"):
        pod["metadata"]["annotations"] = dict(metadata["annotations"])

    spec = pod["spec"]
    volumes = []
    dropped = {DATA_VOLUME}
    for volume in spec.get("volumes") or []:
        claim_ref = (volume.get("persistentVolumeClaim") or {}).get("claimName")
        if volume.get("name") == DATA_VOLUME or claim_ref == claim:
            dropped.add(volume.get("name"))
        else:
            volumes.append(volume)
    volumes.append({
        "name": DATA_VOLUME,
        "persistentVolumeClaim": {"claimName": claim, "readOnly": read_only},
    })
    spec["volumes"] = volumes

    for container in spec["containers"]:
        mounts = [
            m for m in container.get("volumeMounts") or []
            if m.get("name") not in dropped and m.get("mountPath") != DATA_PATH
        ]
        mounts.append({
            "name": DATA_VOLUME,
            "mountPath": DATA_PATH,
            "readOnly": read_only,
        })
        container["volumeMounts"] = mounts

        if template.needs_public_key:
            env = [e for e in container.get("env") or [] if e.get("name") != "PUBLIC_KEY"]
            env.append({"name": "PUBLIC_KEY", "value": public_key})
            container["env"] = env

    return pod
