"""
Coneko - Message Envelope

The envelope binds sender identity, intents and content under one signature:

    {version, messageId, timestamp, intents, sender, content, signature}

It is signed before encryption and verified after decryption. The schema is
closed: unknown fields are rejected, not ignored.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .encryption import EncryptedPayload, decrypt, encrypt
from .errors import MalformedInputError, VerificationError
from .intents import (
    CUSTOM_INTENT_DESCRIPTION,
    DEFAULT_INTENT,
    DEFAULT_INTENT_NAME,
    Intent,
    validate_intent_name,
)
from .keys import KeyMaterial, fingerprint
from .signing import SIGNATURE_FIELD, sign, verify

logger = logging.getLogger("coneko.envelope")

ENVELOPE_VERSION = "1.2"
SUPPORTED_VERSIONS = frozenset({ENVELOPE_VERSION})


class _Closed(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)


class IntentSnapshot(_Closed):
    """Intent name plus the description the sender saw, kept for audit."""
    name: str = Field(..., description="Intent name")
    description: str = Field(..., description="Intent description at send time")

    @field_validator("name")
    @classmethod
    def _valid_name(cls, value: str) -> str:
        return validate_intent_name(value)


class Sender(_Closed):
    """Who sent the envelope."""
    agent_id: str = Field(..., alias="agentId")
    fingerprint: str = Field(..., description="Fingerprint of the sender's agreement key")
    display_name: str = Field(..., alias="displayName")


class Content(_Closed):
    """Message body."""
    format: str = Field(..., description="Format of `data`")
    data: Any = Field(..., description="Message payload")
    human_message: Optional[str] = Field(None, alias="humanMessage")


class MessageEnvelope(_Closed):
    """A signed, versioned message."""
    version: str
    message_id: str = Field(..., alias="messageId")
    timestamp: str
    intents: List[IntentSnapshot] = Field(..., min_length=1)
    sender: Sender
    content: Content
    signature: str = ""

    @field_validator("version")
    @classmethod
    def _supported_version(cls, value: str) -> str:
        if value not in SUPPORTED_VERSIONS:
            raise ValueError(f"Unsupported envelope version {value!r}")
        return value

    @property
    def intent_names(self) -> List[str]:
        return [intent.name for intent in self.intents]

    def to_dict(self, include_signature: bool = True) -> Dict[str, Any]:
        """Wire form with camelCase keys. An absent humanMessage is omitted."""
        data = self.model_dump(by_alias=True)
        if data["content"].get("humanMessage") is None:
            data["content"].pop("humanMessage", None)
        if not include_signature:
            data.pop(SIGNATURE_FIELD, None)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(',', ':'), ensure_ascii=False)

    def signable(self) -> Dict[str, Any]:
        """Everything the signature covers."""
        return self.to_dict(include_signature=False)


def _timestamp() -> str:
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def _snapshot(value: Union[str, Intent, Mapping[str, Any]]) -> IntentSnapshot:
    if isinstance(value, IntentSnapshot):
        return value
    if isinstance(value, Intent):
        return IntentSnapshot(name=value.name, description=value.description)
    if isinstance(value, str):
        if value == DEFAULT_INTENT_NAME:
            return IntentSnapshot(name=value, description=DEFAULT_INTENT.description)
        return IntentSnapshot(name=value, description=CUSTOM_INTENT_DESCRIPTION)
    if isinstance(value, Mapping):
        return IntentSnapshot(name=value.get("name"), description=value.get("description", ""))
    raise MalformedInputError(f"Cannot use {value!r} as an intent")


def build_envelope(
    sender_keys: KeyMaterial,
    sender_fingerprint: str,
    intents: Iterable[Union[str, Intent, Mapping[str, Any]]],
    content: Any,
    *,
    agent_id: str,
    display_name: str,
    human_message: Optional[str] = None,
    content_format: str = "json",
    message_id: Optional[str] = None,
    timestamp: Optional[str] = None,
) -> MessageEnvelope:
    """
    Build and sign an envelope, ready to seal for a recipient.

    Args:
        sender_keys: Sender's key material (the signing key is used)
        sender_fingerprint: Must match the fingerprint of sender_keys
        intents: Intent names, Intent objects or {name, description} dicts
        content: Message payload
        agent_id: Sender's agent id
        display_name: Sender's display name
        human_message: Optional note for the recipient's human

    Raises:
        MalformedInputError: If any field is invalid
    """
    if sender_fingerprint != sender_keys.fingerprint:
        raise MalformedInputError("Sender fingerprint does not match sender key material")

    try:
        snapshots = [_snapshot(value) for value in intents]
        unsigned = MessageEnvelope(
            version=ENVELOPE_VERSION,
            message_id=message_id or str(uuid.uuid4()),
            timestamp=timestamp or _timestamp(),
            intents=snapshots,
            sender=Sender(agent_id=agent_id, fingerprint=sender_fingerprint, display_name=display_name),
            content=Content(format=content_format, data=content, human_message=human_message),
        )
    except ValidationError as e:
        raise MalformedInputError(f"Invalid envelope: {e}") from e

    signature = sign(unsigned.signable(), sender_keys.signing_key)
    return unsigned.model_copy(update={"signature": signature})


def parse_and_verify(decrypted: Union[bytes, str], known_sender_public_key: Union[str, bytes]) -> MessageEnvelope:
    """
    Parse a decrypted envelope and check its signature.

    The signature is checked over the received object itself (minus the
    signature field), so fields are compared exactly as the sender signed them.
    Only camelCase wire keys are accepted, and every field except the
    optional humanMessage must be present.

    Raises:
        MalformedInputError: Not JSON, or not a valid envelope
        VerificationError: Signature missing or not valid for the known key
    """
    try:
        raw = json.loads(decrypted)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedInputError("Envelope is not valid JSON") from e
    if not isinstance(raw, dict):
        raise MalformedInputError("Envelope must be a JSON object")

    try:
        envelope = MessageEnvelope.model_validate(raw)
    except ValidationError as e:
        raise MalformedInputError(f"Invalid envelope: {e}") from e

    # Field-name keys and filled-in defaults would give a model the sender never signed.
    received = {key: value for key, value in raw.items() if key != SIGNATURE_FIELD}
    if envelope.signable() != received:
        raise MalformedInputError("Envelope fields do not match the wire schema")

    if not envelope.signature or not verify(raw, envelope.signature, known_sender_public_key):
        logger.warning("Signature check failed for message %s from %s",
                       envelope.message_id, envelope.sender.fingerprint)
        raise VerificationError("Envelope signature is not valid for the sender's key")
    return envelope


def seal(envelope: MessageEnvelope, recipient_agreement_public_key: Union[str, bytes]) -> EncryptedPayload:
    """Encrypt a signed envelope for its recipient."""
    if not envelope.signature:
        raise MalformedInputError("Envelope must be signed before it is sealed")
    return encrypt(envelope.to_json().encode('utf-8'), recipient_agreement_public_key)


def open_sealed(payload: Union[EncryptedPayload, Dict[str, str]], recipient_keys: KeyMaterial,
                known_sender_public_key: Union[str, bytes]) -> MessageEnvelope:
    """Decrypt a sealed envelope and verify it against the sender's signing key."""
    plaintext = decrypt(payload, recipient_keys.agreement_private_key)
    return parse_and_verify(plaintext, known_sender_public_key)


def sender_matches(envelope: MessageEnvelope, agreement_public_key: Union[str, bytes]) -> bool:
    """True if the envelope's claimed fingerprint belongs to this agreement key."""
    return envelope.sender.fingerprint == fingerprint(agreement_public_key)
