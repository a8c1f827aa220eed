"""API credentials: a closed set of signing schemes.

A credential is either absent (public data only) or exactly one of:

    SharedSecret(key_id, secret)      HMAC-SHA256, hex signature
    RsaKey(key_id, private_key)       RSASSA-PKCS1-v1_5 / SHA-256, base64
    Ed25519Key(key_id, private_key)   Ed25519, base64

Key material is parsed when the credential is built, so malformed keys
fail with SigningError up front and never during steady-state signing.
Secrets never appear in repr().

USAGE:
    creds = SharedSecret("my-key", "my-secret")
    creds = RsaKey.from_pem("my-key", pem_text)
    creds = Ed25519Key.from_bytes("my-key", seed_or_pkcs8_der)

    # Environment-driven loading
    creds = credential_from_env()
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from bsk.auth.redact import mask_string
from bsk.errors import SigningError
from bsk.logging import get_logger

logger = get_logger("auth.credentials")

# Smallest RSA modulus the venue accepts
MIN_RSA_KEY_BITS = 2048
ED25519_SEED_LENGTH = 32


class SignatureScheme(str, Enum):
    """Signing scheme of a credential."""

    HMAC_SHA256 = "HMAC_SHA256"
    RSA_SHA256 = "RSA_SHA256"
    ED25519 = "ED25519"


@dataclass(frozen=True)
class SharedSecret:
    """API key with an HMAC shared secret."""

    key_id: str
    secret: str = field(repr=False)

    def __post_init__(self) -> None:
        if not self.key_id:
            raise SigningError("API key id must not be empty")
        if not self.secret:
            raise SigningError("HMAC secret must not be empty")

    @property
    def scheme(self) -> SignatureScheme:
        return SignatureScheme.HMAC_SHA256

    def __repr__(self) -> str:
        return f"SharedSecret(key_id={mask_string(self.key_id)!r}, secret='[REDACTED]')"


@dataclass(frozen=True)
class RsaKey:
    """API key with an RSA private key."""

    key_id: str
    private_key: rsa.RSAPrivateKey = field(repr=False)

    def __post_init__(self) -> None:
        if not self.key_id:
            raise SigningError("API key id must not be empty")
        if not isinstance(self.private_key, rsa.RSAPrivateKey):
            raise SigningError("RsaKey requires an RSA private key")
        if self.private_key.key_size < MIN_RSA_KEY_BITS:
            raise SigningError(
                f"Unsupported RSA key size {self.private_key.key_size} "
                f"(minimum {MIN_RSA_KEY_BITS})"
            )

    @property
    def scheme(self) -> SignatureScheme:
        return SignatureScheme.RSA_SHA256

    @classmethod
    def from_pem(cls, key_id: str, pem: str | bytes, password: bytes | None = None) -> RsaKey:
        """Parse a PKCS#8 or PKCS#1 PEM private key.

        Raises:
            SigningError: If the PEM cannot be parsed or is not RSA
        """
        key = _load_pem(pem, password)
        if not isinstance(key, rsa.RSAPrivateKey):
            raise SigningError(f"Expected an RSA private key, got {type(key).__name__}")
        return cls(key_id=key_id, private_key=key)

    def __repr__(self) -> str:
        return (
            f"RsaKey(key_id={mask_string(self.key_id)!r}, "
            f"bits={self.private_key.key_size}, private_key='[REDACTED]')"
        )


@dataclass(frozen=True)
class Ed25519Key:
    """API key with an Ed25519 private key."""

    key_id: str
    private_key: ed25519.Ed25519PrivateKey = field(repr=False)

    def __post_init__(self) -> None:
        if not self.key_id:
            raise SigningError("API key id must not be empty")
        if not isinstance(self.private_key, ed25519.Ed25519PrivateKey):
            raise SigningError("Ed25519Key requires an Ed25519 private key")

    @property
    def scheme(self) -> SignatureScheme:
        return SignatureScheme.ED25519

    @classmethod
    def from_bytes(cls, key_id: str, key_bytes: bytes) -> Ed25519Key:
        """Build from a raw 32-byte seed or a PKCS#8 DER blob.

        Raises:
            SigningError: On malformed key bytes
        """
        try:
            if len(key_bytes) == ED25519_SEED_LENGTH:
                key = ed25519.Ed25519PrivateKey.from_private_bytes(key_bytes)
            else:
                key = serialization.load_der_private_key(key_bytes, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise SigningError(f"Invalid Ed25519 key: {exc}") from exc
        if not isinstance(key, ed25519.Ed25519PrivateKey):
            raise SigningError(f"Expected an Ed25519 private key, got {type(key).__name__}")
        return cls(key_id=key_id, private_key=key)

    @classmethod
    def from_pem(
        cls, key_id: str, pem: str | bytes, password: bytes | None = None
    ) -> Ed25519Key:
        """Parse a PKCS#8 PEM private key.

        Raises:
            SigningError: If the PEM cannot be parsed or is not Ed25519
        """
        key = _load_pem(pem, password)
        if not isinstance(key, ed25519.Ed25519PrivateKey):
            raise SigningError(f"Expected an Ed25519 private key, got {type(key).__name__}")
        return cls(key_id=key_id, private_key=key)

    def __repr__(self) -> str:
        return f"Ed25519Key(key_id={mask_string(self.key_id)!r}, private_key='[REDACTED]')"


Credential = SharedSecret | RsaKey | Ed25519Key


def _load_pem(pem: str | bytes, password: bytes | None) -> object:
    data = pem.encode() if isinstance(pem, str) else pem
    try:
        return serialization.load_pem_private_key(data, password=password)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise SigningError(f"Failed to load private key: {exc}") from exc


def credential_from_pem(
    key_id: str, pem: str | bytes, password: bytes | None = None
) -> Credential:
    """Build an RsaKey or Ed25519Key depending on the PEM's key type.

    Raises:
        SigningError: If the key is neither RSA nor Ed25519
    """
    key = _load_pem(pem, password)
    if isinstance(key, rsa.RSAPrivateKey):
        return RsaKey(key_id=key_id, private_key=key)
    if isinstance(key, ed25519.Ed25519PrivateKey):
        return Ed25519Key(key_id=key_id, private_key=key)
    raise SigningError(f"Unsupported private key type: {type(key).__name__}")


def credential_from_env(prefix: str = "BINANCE") -> Credential | None:
    """Load credentials from environment variables.

    Environment variables:
        {prefix}_API_KEY: API key id
        {prefix}_SECRET_KEY: HMAC secret
        {prefix}_PRIVATE_KEY: PEM text or path to a PEM file (RSA or Ed25519),
            used when no secret key is set

    Returns:
        Credential if the required variables are set, None otherwise

    Raises:
        SigningError: If a private key is configured but malformed
    """
    api_key = os.environ.get(f"{prefix}_API_KEY")
    if not api_key:
        return None

    secret = os.environ.get(f"{prefix}_SECRET_KEY")
    if secret:
        return SharedSecret(key_id=api_key, secret=secret)

    private_key = os.environ.get(f"{prefix}_PRIVATE_KEY")
    if not private_key:
        logger.debug(f"{prefix}_API_KEY set without a secret or private key")
        return None

    # Either inline PEM or a path to one
    if "-----BEGIN" not in private_key and os.path.isfile(private_key):
        try:
            with open(private_key, encoding="utf-8") as f:
                private_key = f.read()
        except OSError as e:
            logger.warning(f"Failed to read private key from file {private_key}: {e}")
            return None

    return credential_from_pem(api_key, private_key)
