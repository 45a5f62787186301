"""
Coneko - Key Material

Each agent identity owns two keypairs:
- An Ed25519 keypair for signing envelopes
- An X25519 keypair for receiving encrypted messages

The fingerprint of the X25519 public key is the agent's stable identity label
(contacts, permission grants and registry entries all refer to it).
"""

import base64
import binascii
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Dict, Union

import nacl.exceptions
from nacl.public import PrivateKey
from nacl.signing import SigningKey

from .errors import KeyGenerationError, MalformedInputError

logger = logging.getLogger("coneko.keys")

KEY_LENGTH = 32
FINGERPRINT_BYTES = 16

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def b64encode(data: bytes) -> str:
    """Standard base64 of raw bytes, as stored at rest and sent on the wire."""
    return base64.b64encode(data).decode("ascii")


def decode_key(value: Union[str, bytes], label: str = "key", length: int = KEY_LENGTH) -> bytes:
    """
    Return raw key bytes from raw bytes or a base64 string.

    Raises MalformedInputError if the value does not decode to `length` bytes.
    """
    if isinstance(value, str):
        try:
            raw = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedInputError(f"{label} is not valid base64") from e
    elif isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        raise MalformedInputError(f"{label} must be bytes or a base64 string")

    if len(raw) != length:
        raise MalformedInputError(f"{label} must be {length} bytes, got {len(raw)}")
    return raw


def fingerprint(agreement_public_key: Union[str, bytes]) -> str:
    """
    Stable identity label for an agreement public key.

    base64url(sha256(key)[:16]) with the padding stripped.
    """
    key_bytes = decode_key(agreement_public_key, "agreement public key")
    digest = hashlib.sha256(key_bytes).digest()[:FINGERPRINT_BYTES]
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class KeyMaterial:
    """Signing and key-agreement keypairs for one identity."""
    signing_private_key: bytes
    signing_public_key: bytes
    agreement_private_key: bytes
    agreement_public_key: bytes

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.agreement_public_key)

    @property
    def signing_key(self) -> SigningKey:
        return SigningKey(self.signing_private_key)

    def to_dict(self) -> Dict[str, str]:
        """Base64 form, using the field names of keys.json."""
        return {
            "signingPrivate": b64encode(self.signing_private_key),
            "signingPublic": b64encode(self.signing_public_key),
            "encryptionPrivate": b64encode(self.agreement_private_key),
            "encryptionPublic": b64encode(self.agreement_public_key),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'KeyMaterial':
        """Restore key material saved with to_dict()."""
        try:
            return cls(
                signing_private_key=decode_key(data["signingPrivate"], "signingPrivate"),
                signing_public_key=decode_key(data["signingPublic"], "signingPublic"),
                agreement_private_key=decode_key(data["encryptionPrivate"], "encryptionPrivate"),
                agreement_public_key=decode_key(data["encryptionPublic"], "encryptionPublic"),
            )
        except KeyError as e:
            raise MalformedInputError(f"Key material is missing {e.args[0]}") from e

    def __repr__(self) -> str:
        return f"KeyMaterial(fingerprint={self.fingerprint!r})"


def generate_key_material() -> KeyMaterial:
    """
    Generate a fresh Ed25519 signing keypair and X25519 agreement keypair.

    Raises KeyGenerationError if the system random source fails.
    """
    try:
        signing = SigningKey.generate()
        agreement = PrivateKey.generate()
    except (nacl.exceptions.CryptoError, OSError) as e:
        raise KeyGenerationError(f"Could not generate key material: {e}") from e

    keys = KeyMaterial(
        signing_private_key=bytes(signing),
        signing_public_key=bytes(signing.verify_key),
        agreement_private_key=bytes(agreement),
        agreement_public_key=bytes(agreement.public_key),
    )

    for field_name, value in vars(keys).items():
        if not any(value):
            raise KeyGenerationError(f"Generated {field_name} is all zero")

    logger.debug("Generated key material %s", keys.fingerprint)
    return keys


def new_agent_id() -> str:
    """Agent id of the form agent_<base36 millis>_<6 random base36 chars>."""
    millis = int(time.time() * 1000)
    stamp = ""
    while millis:
        millis, rem = divmod(millis, 36)
        stamp = _BASE36[rem] + stamp
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"agent_{stamp or '0'}_{suffix}"
