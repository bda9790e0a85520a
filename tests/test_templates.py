"""Tests for template resolution."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from pvc_inspect.exceptions import TemplateError
from pvc_inspect.templates import (
    BUILTIN_TEMPLATES,
    get_template,
    load_override,
    resolve,
)
from pvc_inspect.workload import CLAIM_LABEL, DATA_PATH, LABEL_KEY, NAME_PREFIX

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIExample pvc-inspect"


def _claim_refs(pod: dict, claim: str) -> list[dict]:
    return [
        v for v in pod["spec"]["volumes"]
        if (v.get("persistentVolumeClaim") or {}).get("claimName") == claim
    ]


def _data_mounts(container: dict) -> list[dict]:
    return [m for m in container["volumeMounts"] if m["mountPath"] == DATA_PATH]


class TestBuiltinTemplates:
    """Resolution of every built-in template."""

    @pytest.mark.parametrize("name", sorted(BUILTIN_TEMPLATES))
    @pytest.mark.parametrize("claim", ["my-pvc", "Data.Store", "x" * 80])
    def test_exactly_one_claim_and_mount(self, name: str, claim: str) -> None:
        """One volume references the claim and each container mounts it once."""
        pod = resolve(get_template(name), claim, "ns", public_key=PUBLIC_KEY)

        assert len(_claim_refs(pod, claim)) == 1
        for container in pod["spec"]["containers"]:
            assert len(_data_mounts(container)) == 1

    def test_marker_and_name(self) -> None:
        """The pod carries the marker label and prefix."""
        pod = resolve(get_template("sleep"), "my-pvc", "my-namespace")

        metadata = pod["metadata"]
        assert metadata["name"].startswith(NAME_PREFIX + "my-pvc-")
        assert metadata["namespace"] == "my-namespace"
        assert metadata["labels"][LABEL_KEY] == "1"
        assert metadata["labels"][CLAIM_LABEL] == "my-pvc"

    def test_read_only_by_default(self) -> None:
        """Claim and mount are read-only unless asked otherwise."""
        pod = resolve(get_template("sleep"), "my-pvc", "ns")

        assert _claim_refs(pod, "my-pvc")[0]["persistentVolumeClaim"]["readOnly"] is True
        assert _data_mounts(pod["spec"]["containers"][0])[0]["readOnly"] is True

    def test_read_write(self) -> None:
        pod = resolve(get_template("sleep"), "my-pvc", "ns", read_only=False)

        assert _claim_refs(pod, "my-pvc")[0]["persistentVolumeClaim"]["readOnly"] is False

    def test_public_key_injected(self) -> None:
        """The SSH template gets the session key."""
        pod = resolve(get_template("ssh"), "my-pvc", "ns", public_key=PUBLIC_KEY)

        env = pod["spec"]["containers"][0]["env"]
        assert {"name": "PUBLIC_KEY", "value": PUBLIC_KEY} in env

    def test_public_key_required(self) -> None:
        with pytest.raises(TemplateError, match="public key"):
            resolve(get_template("ssh"), "my-pvc", "ns")

    def test_template_not_modified(self) -> None:
        """Resolving leaves the shared template untouched."""
        template = get_template("sleep")
        before = json.dumps(template.pod, sort_keys=True)

        resolve(template, "my-pvc", "ns")

        assert json.dumps(template.pod, sort_keys=True) == before

    def test_unknown_template(self) -> None:
        with pytest.raises(TemplateError, match="Available templates"):
            get_template("nope")

    def test_only_ssh_is_mountable(self) -> None:
        mountable = {name for name, t in BUILTIN_TEMPLATES.items() if t.mountable}
        assert mountable == {"ssh"}


class TestOverride:
    """Tests for user-supplied Pod manifests."""

    def test_loads_yaml(self, tmp_path: Path) -> None:
        """A YAML manifest becomes a template with its first port."""
        path = tmp_path / "debug.yaml"
        path.write_text(
            "apiVersion: v1\n"
            "kind: Pod\n"
            "metadata:\n"
            "  name: ignored\n"
            "  annotations:\n"
            "    pvc-inspect/shell: cd /data && exec bash\n"
            "spec:\n"
            "  containers:\n"
            "    - name: main\n"
            "      image: debian:bookworm\n"
            "      command: [sleep, infinity]\n"
            "      ports:\n"
            "        - containerPort: 9000\n"
        )

        template = load_override(path)

        assert template.name == "debug"
        assert template.remote_port == 9000
        assert template.endpoint == "tcp"
        assert template.shell == ["/bin/sh", "-c", "cd /data && exec bash"]
        assert not template.needs_public_key

    def test_sftp_endpoint_without_port(self, tmp_path: Path) -> None:
        """An endpoint annotation is useless without a port to forward."""
        path = tmp_path / "sftp.yaml"
        path.write_text(
            "kind: Pod\n"
            "metadata:\n"
            "  annotations:\n"
            "    pvc-inspect/endpoint: sftp\n"
            "spec:\n"
            "  containers:\n"
            "    - name: main\n"
            "      image: debian:bookworm\n"
        )

        with pytest.raises(TemplateError, match="containerPort"):
            load_override(path)

    def test_existing_data_volume_replaced(self, tmp_path: Path) -> None:
        """Volumes and mounts already using the data slot are dropped."""
        path = tmp_path / "pod.json"
        path.write_text(json.dumps({
            "kind": "Pod",
            "spec": {
                "containers": [
                    {
                        "name": "a",
                        "image": "busybox",
                        "volumeMounts": [
                            {"name": "old", "mountPath": "/data"},
                            {"name": "claim-again", "mountPath": "/other"},
                            {"name": "scratch", "mountPath": "/scratch"},
                        ],
                    },
                    {"name": "b", "image": "busybox"},
                ],
                "volumes": [
                    {"name": "data", "emptyDir": {}},
                    {"name": "claim-again", "persistentVolumeClaim": {"claimName": "my-pvc"}},
                    {"name": "scratch", "emptyDir": {}},
                ],
            },
        }))

        pod = resolve(load_override(path), "my-pvc", "ns")

        assert len(_claim_refs(pod, "my-pvc")) == 1
        names = [v["name"] for v in pod["spec"]["volumes"]]
        assert names == ["scratch", "data"]
        for container in pod["spec"]["containers"]:
            assert len(_data_mounts(container)) == 1
        first_mounts = [m["name"] for m in pod["spec"]["containers"][0]["volumeMounts"]]
        assert first_mounts == ["scratch", "data"]

    def test_sftp_annotation_needs_key(self, tmp_path: Path) -> None:
        path = tmp_path / "sftp.yaml"
        path.write_text(
            "metadata:\n"
            "  annotations:\n"
            "    pvc-inspect/endpoint: sftp\n"
            "spec:\n"
            "  containers:\n"
            "    - {name: s, image: atmoz/sftp, ports: [{containerPort: 22}]}\n"
        )

        template = load_override(path)

        assert template.mountable
        assert template.needs_public_key

    @pytest.mark.parametrize(
        "content, message",
        [
            ("- just\n- a list\n", "mapping"),
            ("kind: Service\nspec: {}\n", "kind Pod"),
            ("kind: Pod\n", "missing spec"),
            ("spec:\n  containers: []\n", "non-empty"),
            ("spec:\n  containers:\n    - name: a\n", "image"),
            ("spec: [unclosed\n", "Invalid YAML"),
        ],
    )
    def test_invalid_override(self, tmp_path: Path, content: str, message: str) -> None:
        """Structural problems are reported as TemplateError."""
        path = tmp_path / "bad.yaml"
        path.write_text(content)

        with pytest.raises(TemplateError, match=message):
            load_override(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(TemplateError, match="Cannot read"):
            load_override(tmp_path / "missing.yaml")
