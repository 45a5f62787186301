"""Coneko — cryptographic identity and intent-based access control for agent messaging."""

from .encryption import EncryptedPayload, decrypt, decrypt_text, encrypt
from .envelope import MessageEnvelope, build_envelope, open_sealed, parse_and_verify, seal
from .errors import (
    ConekoError,
    DecryptionError,
    IntentError,
    KeyGenerationError,
    MalformedInputError,
    RelayUnavailableError,
    StorageError,
    VerificationError,
)
from .intents import (
    DEFAULT_INTENT,
    AuthorizationResult,
    Intent,
    IntentDirectory,
    IntentSource,
    PermissionGrant,
    authorize,
    precheck_send,
)
from .keys import KeyMaterial, fingerprint, generate_key_material
from .signing import canonicalize, sign, verify

try:
    from importlib.metadata import version as _pkg_version
    __version__ = _pkg_version("coneko-identity")
except Exception:
    __version__ = "0.0.0"  # fallback for editable/dev installs

__all__ = [
    # Keys
    "KeyMaterial",
    "generate_key_material",
    "fingerprint",
    # Signing
    "canonicalize",
    "sign",
    "verify",
    # Encryption
    "EncryptedPayload",
    "encrypt",
    "decrypt",
    "decrypt_text",
    # Intents
    "DEFAULT_INTENT",
    "Intent",
    "IntentDirectory",
    "IntentSource",
    "PermissionGrant",
    "AuthorizationResult",
    "authorize",
    "precheck_send",
    # Envelope
    "MessageEnvelope",
    "build_envelope",
    "parse_and_verify",
    "seal",
    "open_sealed",
    # Errors
    "ConekoError",
    "KeyGenerationError",
    "MalformedInputError",
    "IntentError",
    "DecryptionError",
    "VerificationError",
    "RelayUnavailableError",
    "StorageError",
]
