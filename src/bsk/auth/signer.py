"""Signature generation over canonical request bytes.

The payload is treated as an opaque blob. All three schemes are
deterministic: the same credential and payload always give the same token.
"""

from __future__ import annotations

import base64
import hashlib
import hmac

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from bsk.auth.credentials import Credential, Ed25519Key, RsaKey, SharedSecret


def sign_hmac(secret: str, payload: bytes) -> str:
    """HMAC-SHA256, lowercase hex."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def sign_rsa(credential: RsaKey, payload: bytes) -> str:
    """RSASSA-PKCS1-v1_5 with SHA-256, base64."""
    signature = credential.private_key.sign(payload, padding.PKCS1v15(), hashes.SHA256())
    return base64.b64encode(signature).decode("ascii")


def sign_ed25519(credential: Ed25519Key, payload: bytes) -> str:
    """Ed25519, base64."""
    return base64.b64encode(credential.private_key.sign(payload)).decode("ascii")


def sign(credential: Credential, payload: bytes) -> str:
    """Sign ``payload`` with the scheme the credential was built for.

    Args:
        credential: SharedSecret, RsaKey or Ed25519Key
        payload: Canonical request bytes

    Returns:
        Signature token ready for transport (before URL escaping)
    """
    if isinstance(credential, SharedSecret):
        return sign_hmac(credential.secret, payload)
    if isinstance(credential, RsaKey):
        return sign_rsa(credential, payload)
    if isinstance(credential, Ed25519Key):
        return sign_ed25519(credential, payload)
    raise TypeError(f"Unsupported credential type: {type(credential).__name__}")
