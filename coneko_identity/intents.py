"""
Coneko - Intents and Permissions

Discretionary access control for inter-agent messages.

Key concepts:
- Intent: a named purpose a recipient declares it is willing to receive
- Privileged intent: usable only by senders holding an explicit grant
- Permission grant: (owner, grantee, intent) - "grantee may address owner
  with this privileged intent"
- Authorization: every requested intent must be allowed, or nothing is sent

The sender runs authorize() before building an envelope to fail fast; the
relay runs the same algorithm as the authoritative gate.
"""

import copy
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Protocol, Tuple, Union

from .errors import IntentError, MalformedInputError, RelayUnavailableError

logger = logging.getLogger("coneko.intents")

INTENT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")

DEFAULT_INTENT_NAME = "chat"
DEFAULT_INTENT_DESCRIPTION = (
    "Pure agent-to-agent conversation. SHOULD NOT: Request human's personal info, "
    "system commands, or attempt to alter human's computer."
)
CUSTOM_INTENT_DESCRIPTION = "Custom intent"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def validate_intent_name(name: str) -> str:
    """Return name if it is a valid intent token, else raise MalformedInputError."""
    if not isinstance(name, str) or not INTENT_NAME_PATTERN.match(name):
        raise MalformedInputError(
            f"Invalid intent name {name!r}. Use letters, digits, hyphens or underscores"
        )
    return name


@dataclass(frozen=True)
class Intent:
    """An intent declared by a recipient about itself."""
    name: str
    description: str = ""
    privileged: bool = False
    registered_at: Optional[str] = None

    def __post_init__(self):
        validate_intent_name(self.name)

    @property
    def is_default(self) -> bool:
        return self.name == DEFAULT_INTENT_NAME

    def to_dict(self) -> Dict[str, Any]:
        data = {"description": self.description, "privileged": self.privileged}
        if self.registered_at:
            data["registeredAt"] = self.registered_at
        return data

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> 'Intent':
        """Create from the {description, privileged} shape used on disk and by the relay."""
        if not isinstance(data, Mapping):
            raise MalformedInputError(f"Intent {name!r} must be an object")
        return cls(
            name=name,
            description=data.get("description") or "",
            privileged=bool(data.get("privileged", False)),
            registered_at=data.get("registeredAt"),
        )


DEFAULT_INTENT = Intent(DEFAULT_INTENT_NAME, DEFAULT_INTENT_DESCRIPTION, privileged=False)


@dataclass(frozen=True)
class PermissionGrant:
    """A directed edge: grantee may use owner's privileged intent."""
    owner: str
    grantee: str
    intent: str
    granted_at: str = field(default_factory=_now)
    grantee_fingerprint: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationResult:
    """Outcome of an intent check. A denial is a value, not an error."""
    allowed: bool
    blocked: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "blocked", tuple(self.blocked))

    def __bool__(self) -> bool:
        return self.allowed

    def to_dict(self) -> Dict[str, Any]:
        return {"allowed": self.allowed, "blocked": list(self.blocked)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> 'AuthorizationResult':
        """Parse a relay response. Accepts `blocked` or the relay's `blocked_intents`."""
        blocked = data.get("blocked", data.get("blocked_intents")) or []
        return cls(allowed=bool(data.get("allowed", False)), blocked=list(blocked))


def _as_intent(name: str, value: Union[Intent, Mapping[str, Any]]) -> Intent:
    if isinstance(value, Intent):
        return value
    return Intent.from_dict(name, value)


def _requested_names(requested: Iterable[str]) -> List[str]:
    if isinstance(requested, str):
        requested = [requested]
    names = []
    for name in requested:
        validate_intent_name(name)
        if name not in names:
            names.append(name)
    if not names:
        raise MalformedInputError("At least one intent is required")
    return names


def authorize(
    sender: str,
    recipient_intents: Mapping[str, Union[Intent, Mapping[str, Any]]],
    requested: Iterable[str],
    granted: Iterable[str] = (),
) -> AuthorizationResult:
    """
    Decide whether `sender` may address `requested` intents to a recipient.

    Args:
        sender: Sender handle (fingerprint or username) - used for logging only,
            grants are passed in already resolved for this sender
        recipient_intents: Recipient's declared intents, name -> Intent or
            {description, privileged}
        requested: Intent names the message carries
        granted: Intent names the recipient has granted to this sender

    Returns:
        AuthorizationResult, allowed only if every requested intent is allowed
    """
    names = _requested_names(requested)
    granted = frozenset(granted)

    blocked = []
    for name in names:
        value = recipient_intents.get(name)
        if value is None:
            if name == DEFAULT_INTENT_NAME:
                continue
            blocked.append(name)
            continue

        intent = _as_intent(name, value)
        if intent.privileged and name not in granted:
            blocked.append(name)

    if blocked:
        logger.info("Intents blocked for %s: %s", sender, ", ".join(blocked))
    return AuthorizationResult(allowed=not blocked, blocked=blocked)


class IntentDirectory:
    """
    One identity's declared intents and the permission grants it has issued.

    All reads and writes go through a single lock, so a grant or revoke is
    never observed half-applied and authorize() sees a consistent snapshot.
    """

    def __init__(self, owner: str, intents: Optional[Iterable[Intent]] = None,
                 grants: Optional[Iterable[PermissionGrant]] = None):
        self.owner = owner
        self._lock = threading.RLock()
        self._intents: Dict[str, Intent] = {DEFAULT_INTENT_NAME: DEFAULT_INTENT}
        self._grants: Dict[str, Dict[str, PermissionGrant]] = {}

        for intent in intents or ():
            if intent.is_default:
                continue
            self._intents[intent.name] = intent
        for grant in grants or ():
            self._grants.setdefault(grant.grantee, {})[grant.intent] = grant

    # ── Intents ──────────────────────────────────────────────────────

    def declare_intent(self, name: str, description: str = "", privileged: bool = False) -> Intent:
        """Register or update an intent. Returns the stored intent."""
        validate_intent_name(name)
        if name == DEFAULT_INTENT_NAME:
            if privileged:
                raise IntentError(f"The default '{DEFAULT_INTENT_NAME}' intent cannot be privileged")
            return DEFAULT_INTENT

        with self._lock:
            existing = self._intents.get(name)
            intent = Intent(
                name=name,
                description=description,
                privileged=privileged,
                registered_at=existing.registered_at if existing else _now(),
            )
            self._intents[name] = intent

        logger.info("Intent declared for %s: %s (privileged=%s)", self.owner, name, privileged)
        return intent

    def remove_intent(self, name: str) -> Intent:
        """Remove a declared intent. The default intent is permanent."""
        if name == DEFAULT_INTENT_NAME:
            raise IntentError("Cannot remove default intent")
        with self._lock:
            if name not in self._intents:
                raise IntentError(f"Intent not found: {name}")
            removed = self._intents.pop(name)

        logger.info("Intent removed for %s: %s", self.owner, name)
        return removed

    def get_intent(self, name: str) -> Optional[Intent]:
        with self._lock:
            return self._intents.get(name)

    def intents(self) -> Dict[str, Intent]:
        """Snapshot of declared intents, default first."""
        with self._lock:
            return dict(self._intents)

    def public_view(self) -> Dict[str, Dict[str, Any]]:
        """The {name: {description, privileged}} mapping a relay publishes."""
        return {
            name: {"description": intent.description, "privileged": intent.privileged}
            for name, intent in self.intents().items()
        }

    # ── Grants ───────────────────────────────────────────────────────

    def grant(self, grantee: str, intent_name: str,
              grantee_fingerprint: Optional[str] = None) -> PermissionGrant:
        """
        Allow grantee to use intent_name.

        Grants for undeclared or public intents are recorded anyway so that
        privileging the intent later activates them.
        """
        validate_intent_name(intent_name)
        if not grantee:
            raise MalformedInputError("Grantee is required")

        with self._lock:
            held = self._grants.setdefault(grantee, {})
            if intent_name in held:
                return held[intent_name]
            intent = self._intents.get(intent_name)
            grant = PermissionGrant(
                owner=self.owner,
                grantee=grantee,
                intent=intent_name,
                grantee_fingerprint=grantee_fingerprint,
            )
            held[intent_name] = grant

        if intent is None:
            logger.warning("Granted %s undeclared intent '%s'; it has no effect until declared privileged",
                           grantee, intent_name)
        elif not intent.privileged:
            logger.warning("Granted %s public intent '%s'; it has no effect until privileged",
                           grantee, intent_name)
        else:
            logger.info("Granted %s intent '%s' on %s", grantee, intent_name, self.owner)
        return grant

    def revoke(self, grantee: str, intent_name: str) -> bool:
        """Remove a grant. Returns False if there was nothing to revoke."""
        with self._lock:
            held = self._grants.get(grantee)
            if not held or intent_name not in held:
                return False
            del held[intent_name]
            if not held:
                del self._grants[grantee]

        logger.info("Revoked %s intent '%s' on %s", grantee, intent_name, self.owner)
        return True

    def _granted_to(self, sender: str) -> FrozenSet[str]:
        # Grants match on the grantee handle or on the recorded fingerprint.
        names = set(self._grants.get(sender, ()))
        for held in self._grants.values():
            names.update(name for name, grant in held.items() if grant.grantee_fingerprint == sender)
        return frozenset(names)

    def granted_intents(self, grantee: str) -> FrozenSet[str]:
        """Intents granted to a handle or to a grantee fingerprint."""
        with self._lock:
            return self._granted_to(grantee)

    def grants(self) -> Dict[str, List[str]]:
        """grantee -> sorted intent names, the shape the relay lists."""
        with self._lock:
            return {grantee: sorted(held) for grantee, held in self._grants.items()}

    def grant_records(self) -> List[PermissionGrant]:
        with self._lock:
            return [grant for held in self._grants.values() for grant in held.values()]

    # ── Checks ───────────────────────────────────────────────────────

    def snapshot(self):
        """Consistent (intents, grants) copy taken under the lock."""
        with self._lock:
            return dict(self._intents), copy.deepcopy(self._grants)

    def authorize(self, sender: str, requested: Iterable[str]) -> AuthorizationResult:
        """Check a sender's requested intents against this directory."""
        with self._lock:
            intents = dict(self._intents)
            granted = self._granted_to(sender)
        return authorize(sender, intents, requested, granted)


class IntentSource(Protocol):
    """Read access to a relay's intent and permission directory."""

    def fetch_recipient_intents(self, recipient: str) -> Mapping[str, Mapping[str, Any]]:
        ...

    def fetch_granted_intents(self, recipient: str, sender: str) -> Iterable[str]:
        ...


def precheck_send(source: IntentSource, sender: str, recipient: str,
                  requested: Iterable[str]) -> Optional[AuthorizationResult]:
    """
    Client-side check before building and encrypting an envelope.

    Returns None when the relay cannot be reached; the relay still enforces
    the same check on delivery.
    """
    names = _requested_names(requested)
    try:
        recipient_intents = source.fetch_recipient_intents(recipient)
        granted = source.fetch_granted_intents(recipient, sender)
    except RelayUnavailableError as e:
        logger.warning("Could not verify intents for %s, relay will enforce: %s", recipient, e)
        return None
    return authorize(sender, recipient_intents, names, granted)
