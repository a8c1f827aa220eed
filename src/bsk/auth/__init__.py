"""Request signing: credentials, canonical encoding, signers, builder."""

from bsk.auth.credentials import (
    Credential,
    Ed25519Key,
    RsaKey,
    SharedSecret,
    SignatureScheme,
    credential_from_env,
    credential_from_pem,
)
from bsk.auth.encoder import CanonicalRequest, encode_params
from bsk.auth.redact import REDACTED, mask_string, redact_secrets, safe_dict_for_logging
from bsk.auth.request_builder import (
    API_KEY_HEADER,
    AuthenticatedRequestBuilder,
    KeyPlacement,
    RestRequest,
    SecurityType,
    SignedRequest,
)
from bsk.auth.signer import sign

__all__ = [
    # Credentials
    "Credential",
    "Ed25519Key",
    "RsaKey",
    "SharedSecret",
    "SignatureScheme",
    "credential_from_env",
    "credential_from_pem",
    # Encoding and signing
    "CanonicalRequest",
    "encode_params",
    "sign",
    # Builder
    "API_KEY_HEADER",
    "AuthenticatedRequestBuilder",
    "KeyPlacement",
    "RestRequest",
    "SecurityType",
    "SignedRequest",
    # Redaction
    "REDACTED",
    "mask_string",
    "redact_secrets",
    "safe_dict_for_logging",
]
