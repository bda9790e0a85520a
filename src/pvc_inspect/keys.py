"""Throwaway SSH key pair for the SFTP endpoint."""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey


@dataclass
class SessionKey:
    """An Ed25519 key pair whose private half lives in a temporary file.

    Attributes:
        public_key: Public key in OpenSSH format ("ssh-ed25519 AAAA...").
        identity_file: Path of the private key file.
    """

    public_key: str
    identity_file: Path

    def remove(self) -> None:
        """Delete the private key file. Safe to call more than once."""
        try:
            self.identity_file.unlink()
        except FileNotFoundError:
            pass


def generate_session_key(comment: str = "pvc-inspect") -> SessionKey:
    """Generate a key pair and write the private key with mode 0600.

    Args:
        comment: Comment appended to the public key.

    Returns:
        SessionKey; call remove() when the session ends.
    """
    private_key = Ed25519PrivateKey.generate()
    private_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    )

    fd, path = tempfile.mkstemp(prefix="pvc-inspect-", suffix=".key")
    try:
        os.fchmod(fd, 0o600)
        os.write(fd, private_bytes)
    finally:
        os.close(fd)

    return SessionKey(
        public_key=f"{public_bytes.decode()} {comment}",
        identity_file=Path(path),
    )
