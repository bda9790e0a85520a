"""Exceptions raised by pvc-inspect."""

from __future__ import annotations


class InspectError(Exception):
    """Base exception for pvc-inspect errors."""

    pass


class ConfigError(InspectError):
    """Invalid configuration value."""

    pass


class KubectlError(InspectError):
    """A kubectl command failed."""

    pass


class KubectlNotInstalledError(KubectlError):
    """The kubectl CLI is not installed."""

    pass


class KubectlTimeoutError(KubectlError):
    """The kubectl CLI command timed out."""

    pass


class NotFoundError(KubectlError):
    """The requested object does not exist."""

    pass


class WatchError(KubectlError):
    """A watch stream could not be re-established."""

    pass


class ClaimNotFoundError(InspectError):
    """The persistent volume claim does not exist."""

    pass


class TemplateError(InspectError):
    """Unknown template or invalid override descriptor."""

    pass


class CreationError(InspectError):
    """The cluster rejected the inspection pod."""

    pass


class WorkloadNotReadyError(InspectError):
    """The inspection pod did not become ready.

    The pod has already been deleted when this is raised.
    """

    pass


class ReadyTimeoutError(WorkloadNotReadyError):
    """The inspection pod was not ready within the timeout."""

    pass


class WorkloadFailedError(WorkloadNotReadyError):
    """The inspection pod terminated or vanished before becoming ready."""

    pass


class TunnelError(InspectError):
    """The port-forward into the inspection pod failed."""

    pass


class MountError(InspectError):
    """The local filesystem mount failed."""

    pass


class DeletionError(InspectError):
    """The inspection pod could not be deleted."""

    pass


class DeletionTimeoutError(InspectError):
    """The inspection pod was not gone within the timeout."""

    pass


class SweepItemError(InspectError):
    """A single stale pod could not be deleted by the sweeper."""

    def __init__(self, namespace: str, name: str, reason: str) -> None:
        super().__init__(f"{namespace}/{name}: {reason}")
        self.namespace = namespace
        self.name = name
        self.reason = reason
