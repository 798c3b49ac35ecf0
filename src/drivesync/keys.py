"""OpenSSH public keys: authorized_keys parsing, signature checks, random nonces.

A client proves possession of a key by signing the UTF-8 bytes of a challenge
and sending the signature base64-encoded:

    ssh-ed25519                 raw 64-byte Ed25519 signature
    ssh-rsa                     PKCS#1 v1.5 over SHA-256
    ecdsa-sha2-nistp256/384/521 DER-encoded ECDSA over SHA-256/384/512
"""

from __future__ import annotations

import base64
import binascii
import secrets
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa

from drivesync.errors import KeyFormatError, StorageError

if TYPE_CHECKING:
    from pathlib import Path

    PublicKey = ed25519.Ed25519PublicKey | rsa.RSAPublicKey | ec.EllipticCurvePublicKey

KEY_TYPES = frozenset({
    "ssh-ed25519",
    "ssh-rsa",
    "ecdsa-sha2-nistp256",
    "ecdsa-sha2-nistp384",
    "ecdsa-sha2-nistp521",
})

_EC_HASHES = {
    "secp256r1": hashes.SHA256,
    "secp384r1": hashes.SHA384,
    "secp521r1": hashes.SHA512,
}


def normalize_key(text: str) -> str | None:
    """Reduce an authorized_keys line or client key to "<type> <base64>".

    Leading options (``from="..."``, ``no-pty``) and the trailing comment are
    dropped. Returns None for blank lines, comments and unknown key types.
    """
    text = text.strip()
    if not text or text.startswith("#"):
        return None
    fields = text.split()
    for i, f in enumerate(fields):
        if f in KEY_TYPES and i + 1 < len(fields):
            return f"{f} {fields[i + 1]}"
    return None


def load_authorized_keys(path: Path) -> frozenset[str]:
    """Read an OpenSSH authorized_keys file into a set of normalized keys."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"cannot read authorized keys {path}: {exc}") from exc
    keys = (normalize_key(line) for line in text.splitlines())
    return frozenset(k for k in keys if k)


def parse_public_key(text: str) -> PublicKey:
    normalized = normalize_key(text)
    if normalized is None:
        raise KeyFormatError("invalid key format")
    try:
        key = serialization.load_ssh_public_key(normalized.encode("ascii"))
    except (ValueError, UnsupportedAlgorithm, UnicodeEncodeError) as exc:
        raise KeyFormatError(f"invalid key format: {exc}") from exc
    if not isinstance(key, (ed25519.Ed25519PublicKey, rsa.RSAPublicKey, ec.EllipticCurvePublicKey)):
        raise KeyFormatError("invalid key format: unsupported key type")
    return key


def verify_signature(key: PublicKey, message: str, signature_b64: str) -> bool:
    """True iff signature_b64 is a valid signature of message under key."""
    try:
        signature = base64.b64decode(signature_b64, validate=True)
    except (binascii.Error, ValueError):
        return False
    data = message.encode("utf-8")
    try:
        if isinstance(key, ed25519.Ed25519PublicKey):
            key.verify(signature, data)
        elif isinstance(key, rsa.RSAPublicKey):
            key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
        else:
            algorithm = _EC_HASHES.get(key.curve.name, hashes.SHA256)
            key.verify(signature, data, ec.ECDSA(algorithm()))
    except (InvalidSignature, ValueError):  # ValueError: malformed signature bytes
        return False
    return True


def generate_challenge() -> str:
    return secrets.token_hex(32)


def generate_token() -> str:
    return secrets.token_urlsafe(32)
