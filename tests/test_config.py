"""Tests for configuration."""

from __future__ import annotations

import pytest

from pvc_inspect.config import InspectConfig, SessionSpec
from pvc_inspect.exceptions import ConfigError


class TestInspectConfig:
    """Tests for InspectConfig.from_env."""

    def test_defaults(self) -> None:
        config = InspectConfig.from_env({})

        assert config == InspectConfig()
        assert config.ready_timeout == 300
        assert config.kubectl == "kubectl"

    def test_overrides(self) -> None:
        config = InspectConfig.from_env({
            "PVC_INSPECT_READY_TIMEOUT": "60",
            "PVC_INSPECT_CONTEXT": "prod",
            "PVC_INSPECT_KUBECTL": "/opt/bin/kubectl",
            "PVC_INSPECT_WATCH_RETRIES": "",
        })

        assert config.ready_timeout == 60
        assert config.context == "prod"
        assert config.kubectl == "/opt/bin/kubectl"
        assert config.watch_retries == 3

    def test_not_a_number(self) -> None:
        with pytest.raises(ConfigError, match="PVC_INSPECT_DELETE_TIMEOUT"):
            InspectConfig.from_env({"PVC_INSPECT_DELETE_TIMEOUT": "soon"})

    def test_negative(self) -> None:
        with pytest.raises(ConfigError, match="negative"):
            InspectConfig.from_env({"PVC_INSPECT_MOUNT_TIMEOUT": "-1"})


def test_session_spec_defaults() -> None:
    spec = SessionSpec(claim="my-pvc")

    assert spec.namespace == "default"
    assert spec.template == "ssh"
    assert not spec.read_write
    assert spec.wait_for_deletion
