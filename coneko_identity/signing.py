"""
Coneko - Canonical Signing

Envelopes are signed over a canonical JSON form so that any implementation
given the same logical message produces the same bytes:
- keys sorted at every nesting level
- compact separators, no whitespace
- non-ASCII text emitted as UTF-8
- the top-level "signature" field is never part of the signed bytes
"""

import base64
import binascii
import json
from typing import Any, Dict, Mapping, Union

import nacl.exceptions
from nacl.signing import SigningKey, VerifyKey

from .errors import MalformedInputError
from .keys import decode_key

SIGNATURE_FIELD = "signature"
SIGNATURE_LENGTH = 64


def _without_signature(message: Mapping[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in message.items() if k != SIGNATURE_FIELD}


def canonicalize(message: Mapping[str, Any]) -> bytes:
    """Get the canonical bytes to sign for a message."""
    if not isinstance(message, Mapping):
        raise MalformedInputError("Only JSON objects can be canonicalized")
    try:
        payload = json.dumps(
            _without_signature(message),
            sort_keys=True,
            separators=(',', ':'),
            ensure_ascii=False,
            allow_nan=False,
        )
    except (TypeError, ValueError) as e:
        raise MalformedInputError(f"Message is not canonical JSON: {e}") from e
    return payload.encode('utf-8')


def sign(message: Mapping[str, Any], signing_private_key: Union[str, bytes, SigningKey]) -> str:
    """Sign a message with an Ed25519 key. Returns base64 signature."""
    if isinstance(signing_private_key, SigningKey):
        key = signing_private_key
    else:
        key = SigningKey(decode_key(signing_private_key, "signing private key"))
    signed = key.sign(canonicalize(message))
    return base64.b64encode(signed.signature).decode('utf-8')


def verify(message: Mapping[str, Any], signature: str, signing_public_key: Union[str, bytes]) -> bool:
    """
    Verify a signature over a message.

    Returns False for any failure: bad signature, malformed base64,
    wrong-length key or signature, or a message that cannot be canonicalized.
    """
    try:
        public_key = decode_key(signing_public_key, "signing public key")
        signature_bytes = base64.b64decode(signature, validate=True)
        if len(signature_bytes) != SIGNATURE_LENGTH:
            return False
        VerifyKey(public_key).verify(canonicalize(message), signature_bytes)
        return True
    except (MalformedInputError, nacl.exceptions.CryptoError, binascii.Error,
            TypeError, ValueError):
        return False
