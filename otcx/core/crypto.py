"""
otcx/core/crypto.py

Operator signing key for JSON audit reports.

A signed report carries the signer's public key as 64 lowercase hex
characters and an Ed25519 signature as unpadded base64url. Anyone holding
only the report can check it with verify_signature().
"""

import base64
from pathlib import Path

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
    load_pem_private_key,
)

from otcx.core.exceptions import ConfigError


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _unb64url(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


class ReportSigningKey:
    """An Ed25519 private key kept as PKCS8 PEM on the operator's disk."""

    def __init__(self, private_key: Ed25519PrivateKey) -> None:
        self._private_key = private_key
        self.public_key_hex: str = (
            private_key.public_key()
            .public_bytes(Encoding.Raw, PublicFormat.Raw)
            .hex()
        )

    @classmethod
    def generate(cls) -> "ReportSigningKey":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def load(cls, path: Path) -> "ReportSigningKey":
        """
        Raises:
            ConfigError: the file is missing or holds no Ed25519 private key
        """
        path = Path(path)
        try:
            private_key = load_pem_private_key(path.read_bytes(), password=None)
        except (OSError, ValueError, TypeError) as e:
            raise ConfigError("signing key is unreadable", {"path": str(path), "error": str(e)}) from e
        if not isinstance(private_key, Ed25519PrivateKey):
            raise ConfigError("signing key is not an Ed25519 key", {"path": str(path)})
        return cls(private_key)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(self._private_key.private_bytes(
            encoding             = Encoding.PEM,
            format               = PrivateFormat.PKCS8,
            encryption_algorithm = NoEncryption(),
        ))

    def sign(self, data: bytes) -> str:
        """Signature over already-canonical bytes, unpadded base64url."""
        return _b64url(self._private_key.sign(data))

    def __repr__(self) -> str:
        return f"ReportSigningKey(public_key_hex={self.public_key_hex[:16]}...)"


def verify_signature(data: bytes, signature: str, public_key_hex: str) -> bool:
    """True iff `signature` is a valid Ed25519 signature over `data` by that key."""
    try:
        public_key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key_hex))
        public_key.verify(_unb64url(signature), data)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True
