"""Local sshfs mount of the inspection pod's SFTP endpoint."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from pvc_inspect.exceptions import MountError
from pvc_inspect.tunnel import Tunnel
from pvc_inspect.workload import DATA_PATH

SSH_USER = "ssh"


@dataclass
class MountHandle:
    """A live sshfs mount.

    Attributes:
        path: Local mount point.
        process: The sshfs process (runs in the foreground, -f).
        mounted: False once unmount() has run.
    """

    path: Path
    process: subprocess.Popen[Any] | None = field(default=None, repr=False)
    stderr: IO[bytes] | None = field(default=None, repr=False)
    mounted: bool = True


def _unmount_command(path: Path) -> list[str]:
    """Platform-specific command that detaches a FUSE mount."""
    if sys.platform == "darwin":
        return ["umount", str(path)]
    return ["fusermount", "-u", str(path)]


def prepare_mountpoint(path: Path) -> None:
    """Create the mount point if needed and check that it is empty.

    Raises:
        MountError: If the path is not an empty directory or cannot be created.
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise MountError(f"Cannot create mount point {path}: {e}") from e
    if not path.is_dir():
        raise MountError(f"Mount point {path} is not a directory")
    if os.path.ismount(path):
        raise MountError(f"{path} is already a mount point")
    try:
        if any(path.iterdir()):
            raise MountError(f"Mount point {path} is not empty")
    except PermissionError as e:
        raise MountError(f"Cannot access mount point {path}: {e}") from e


class LocalMountManager:
    """Mounts the pod's data directory locally through the tunnel."""

    POLL_INTERVAL = 0.2
    UNMOUNT_TIMEOUT = 10

    def build_command(
        self,
        tunnel: Tunnel,
        path: Path,
        read_only: bool,
        identity_file: Path,
    ) -> list[str]:
        """Build the sshfs command line."""
        cmd = [
            "sshfs",
            f"{SSH_USER}@{tunnel.host}:{DATA_PATH}",
            str(path),
            "-f",
            "-p", str(tunnel.local_port),
            "-o", "auto_unmount",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "StrictHostKeyChecking=no",
            "-o", "LogLevel=ERROR",
            "-o", f"IdentityFile={identity_file}",
        ]
        if read_only:
            cmd.extend(["-o", "ro"])
        return cmd

    def mount(
        self,
        tunnel: Tunnel,
        path: Path,
        read_only: bool,
        identity_file: Path,
        timeout: float = 30,
    ) -> MountHandle:
        """Mount the pod's data directory at path.

        Args:
            tunnel: Open tunnel to the pod's SFTP endpoint.
            path: Local mount point (created if missing, must be empty).
            read_only: Mount read-only.
            identity_file: Private key accepted by the pod.
            timeout: Seconds to wait for the mount to appear.

        Returns:
            MountHandle; release it with unmount().

        Raises:
            MountError: If the mount point is unusable, sshfs is missing or
                the mount does not appear in time.
        """
        path = path.expanduser().absolute()
        prepare_mountpoint(path)

        if shutil.which("sshfs") is None:
            raise MountError("`sshfs` not found in PATH.")

        print(f"Mounting on {path}...", file=sys.stderr)
        stderr = tempfile.TemporaryFile()
        try:
            process = subprocess.Popen(
                self.build_command(tunnel, path, read_only, identity_file),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=stderr,
                start_new_session=True,
            )
        except OSError as e:
            stderr.close()
            raise MountError(f"Failed to start sshfs: {e}") from e

        handle = MountHandle(path=path, process=process, stderr=stderr)

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if os.path.ismount(path):
                return handle
            if process.poll() is not None:
                stderr.seek(0)
                message = stderr.read().decode("utf-8", errors="replace").strip()
                self.unmount(handle)
                raise MountError(
                    f"sshfs exited with status {process.returncode}: "
                    f"{message or 'no output'}"
                )
            time.sleep(self.POLL_INTERVAL)

        self.unmount(handle)
        raise MountError(f"{path} was not mounted within {timeout} seconds")

    def unmount(self, handle: MountHandle) -> None:
        """Release the mount. Calling it again is a no-op."""
        if not handle.mounted:
            return
        handle.mounted = False

        if os.path.ismount(handle.path):
            print(f"Unmounting {handle.path}...", file=sys.stderr)
            try:
                result = subprocess.run(
                    _unmount_command(handle.path),
                    capture_output=True,
                    text=True,
                    timeout=self.UNMOUNT_TIMEOUT,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                # Stopping sshfs below still unmounts thanks to auto_unmount
                print(f"Warning: unmount of {handle.path} failed: {e}", file=sys.stderr)
            else:
                if result.returncode != 0:
                    print(
                        f"Warning: unmount of {handle.path} failed: "
                        f"{result.stderr.strip()}",
                        file=sys.stderr,
                    )

        process = handle.process
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()

        if handle.stderr is not None:
            handle.stderr.close()
