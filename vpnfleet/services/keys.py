"""
Key material and credential helpers
"""

import base64
import hashlib
import secrets
import uuid
from typing import Tuple

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import x25519


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def generate_reality_keypair() -> Tuple[str, str]:
    """Return (private, public) x25519 keys as unpadded URL-safe base64"""
    private_key = x25519.X25519PrivateKey.generate()
    private_raw = private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_raw = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return _b64url(private_raw), _b64url(public_raw)


def generate_short_id() -> str:
    return secrets.token_hex(8)


def generate_join_token() -> str:
    return secrets.token_urlsafe(32)


def generate_client_id() -> str:
    return str(uuid.uuid4())


def generate_secret(nbytes: int = 16) -> str:
    return base64.b64encode(secrets.token_bytes(nbytes)).decode()


def hash_token(token: str) -> str:
    return hashlib.sha256(token.strip().encode()).hexdigest()


def derive_relay_password(token: str, target_id: int) -> str:
    """Deterministic relay credential bound to the target node"""
    material = f"{token.strip()}:relay:{target_id}"
    return hashlib.sha256(material.encode()).hexdigest()
