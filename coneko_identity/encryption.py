"""
Coneko - Message Encryption

Each message is encrypted to the recipient's X25519 key with a fresh
ephemeral keypair:

    shared  = X25519(ephemeral_private, recipient_public)
    okm     = HKDF-SHA256(shared, salt=ephemeral_public || recipient_public,
                          info="coneko-message-v2", length=44)
    key     = okm[:32], nonce = okm[32:]
    ct      = ChaCha20-Poly1305(key).encrypt(nonce, plaintext, aad=ephemeral_public)

The key and nonce are unique per message because the ephemeral key is, so
only {ephemeralPublicKey, ciphertext} travel on the wire.
"""

import base64
import binascii
from dataclasses import dataclass
from typing import Dict, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import x25519
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import DecryptionError, MalformedInputError
from .keys import b64encode, decode_key

HKDF_INFO = b"coneko-message-v2"
KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


@dataclass(frozen=True)
class EncryptedPayload:
    """The only object that crosses the network."""
    ephemeral_public_key: bytes
    ciphertext: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            "ephemeralPublicKey": b64encode(self.ephemeral_public_key),
            "ciphertext": b64encode(self.ciphertext),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> 'EncryptedPayload':
        """Parse the wire form. Raises MalformedInputError on bad fields."""
        if not isinstance(data, dict):
            raise MalformedInputError("Encrypted payload must be an object")
        missing = {"ephemeralPublicKey", "ciphertext"} - data.keys()
        if missing:
            raise MalformedInputError(f"Encrypted payload is missing {', '.join(sorted(missing))}")
        try:
            ciphertext = base64.b64decode(data["ciphertext"], validate=True)
        except (binascii.Error, TypeError, ValueError) as e:
            raise MalformedInputError("ciphertext is not valid base64") from e
        return cls(
            ephemeral_public_key=decode_key(data["ephemeralPublicKey"], "ephemeralPublicKey"),
            ciphertext=ciphertext,
        )


def _public_bytes(public_key: x25519.X25519PublicKey) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def _derive(shared_secret: bytes, ephemeral_public: bytes, recipient_public: bytes):
    okm = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES + NONCE_BYTES,
        salt=ephemeral_public + recipient_public,
        info=HKDF_INFO,
    ).derive(shared_secret)
    return okm[:KEY_BYTES], okm[KEY_BYTES:]


def encrypt(plaintext: Union[bytes, str], recipient_agreement_public_key: Union[str, bytes]) -> EncryptedPayload:
    """Encrypt plaintext for a recipient's X25519 public key."""
    if isinstance(plaintext, str):
        plaintext = plaintext.encode('utf-8')

    recipient_bytes = decode_key(recipient_agreement_public_key, "recipient public key")
    recipient_public = x25519.X25519PublicKey.from_public_bytes(recipient_bytes)

    ephemeral = x25519.X25519PrivateKey.generate()
    ephemeral_public = _public_bytes(ephemeral.public_key())

    try:
        shared = ephemeral.exchange(recipient_public)
    except ValueError as e:
        raise MalformedInputError("Recipient public key is not usable for key agreement") from e

    key, nonce = _derive(shared, ephemeral_public, recipient_bytes)
    ciphertext = ChaCha20Poly1305(key).encrypt(nonce, plaintext, ephemeral_public)
    return EncryptedPayload(ephemeral_public_key=ephemeral_public, ciphertext=ciphertext)


def decrypt(payload: Union[EncryptedPayload, Dict[str, str]], recipient_agreement_private_key: Union[str, bytes]) -> bytes:
    """
    Decrypt a payload with the recipient's X25519 private key.

    Raises DecryptionError when the payload is malformed or fails
    authentication. Never returns partial plaintext.
    """
    try:
        if not isinstance(payload, EncryptedPayload):
            payload = EncryptedPayload.from_dict(payload)
        private_bytes = decode_key(recipient_agreement_private_key, "recipient private key")
    except MalformedInputError as e:
        raise DecryptionError(str(e)) from e

    if len(payload.ciphertext) < TAG_BYTES:
        raise DecryptionError("Ciphertext is too short")

    recipient = x25519.X25519PrivateKey.from_private_bytes(private_bytes)
    try:
        ephemeral_public = x25519.X25519PublicKey.from_public_bytes(payload.ephemeral_public_key)
        shared = recipient.exchange(ephemeral_public)
    except ValueError as e:
        raise DecryptionError("Ephemeral public key is not usable for key agreement") from e

    recipient_public = _public_bytes(recipient.public_key())
    key, nonce = _derive(shared, payload.ephemeral_public_key, recipient_public)
    try:
        return ChaCha20Poly1305(key).decrypt(nonce, payload.ciphertext, payload.ephemeral_public_key)
    except InvalidTag as e:
        raise DecryptionError("Ciphertext failed authentication") from e


def decrypt_text(payload: Union[EncryptedPayload, Dict[str, str]], recipient_agreement_private_key: Union[str, bytes]) -> str:
    """Decrypt and decode UTF-8 plaintext."""
    plaintext = decrypt(payload, recipient_agreement_private_key)
    try:
        return plaintext.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecryptionError("Plaintext is not valid UTF-8") from e
