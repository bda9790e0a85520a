"""Configuration for pvc-inspect."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path

from pvc_inspect.exceptions import ConfigError

ENV_PREFIX = "PVC_INSPECT_"

DEFAULT_NAMESPACE = "default"
DEFAULT_TEMPLATE = "ssh"


@dataclass
class InspectConfig:
    """Tunables shared by all pvc-inspect components.

    Attributes:
        context: Kubeconfig context to use (None for current context).
        kubectl: Name or path of the kubectl binary.
        ready_timeout: Seconds to wait for the pod to become ready.
        delete_timeout: Seconds to wait for the pod to disappear.
        tunnel_timeout: Seconds to wait for the port-forward to accept connections.
        mount_timeout: Seconds to wait for the local mount to appear.
        watch_retries: Consecutive watch reconnects before giving up.
        command_timeout: Default timeout for one-shot kubectl commands.
    """

    context: str | None = None
    kubectl: str = "kubectl"
    ready_timeout: int = 300
    delete_timeout: int = 120
    tunnel_timeout: int = 30
    mount_timeout: int = 30
    watch_retries: int = 3
    command_timeout: int = 30

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> InspectConfig:
        """Build a config from PVC_INSPECT_* environment variables.

        Args:
            environ: Mapping to read from (defaults to os.environ).

        Returns:
            Config with environment overrides applied.

        Raises:
            ConfigError: If a numeric variable is not a positive integer.
        """
        env = os.environ if environ is None else environ
        values: dict[str, str | int | None] = {}
        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.type == "int":
                try:
                    number = int(raw)
                except ValueError:
                    raise ConfigError(
                        f"{ENV_PREFIX}{f.name.upper()} must be an integer, got {raw!r}"
                    ) from None
                if number < 0:
                    raise ConfigError(
                        f"{ENV_PREFIX}{f.name.upper()} must not be negative"
                    )
                values[f.name] = number
            else:
                values[f.name] = raw
        return cls(**values)  # type: ignore[arg-type]


@dataclass(frozen=True)
class SessionSpec:
    """What a single inspection session should do.

    Attributes:
        claim: Name of the persistent volume claim to inspect.
        namespace: Namespace of the claim.
        template: Built-in template name.
        template_file: Path to an override Pod manifest (wins over template).
        mountpoint: Local directory to mount the volume on (optional).
        read_write: Attach the claim read/write instead of read-only.
        wait_for_deletion: Block until the pod is gone during teardown.
        local_port: Local port for the tunnel (None picks a free one).
    """

    claim: str
    namespace: str = DEFAULT_NAMESPACE
    template: str = DEFAULT_TEMPLATE
    template_file: Path | None = None
    mountpoint: Path | None = None
    read_write: bool = False
    wait_for_deletion: bool = True
    local_port: int | None = None
