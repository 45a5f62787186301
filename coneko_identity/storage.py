"""
Coneko - Local Storage

Per-agent files under ~/.coneko/<agent>/ (override the base with CONEKO_HOME):

    keys.json         identity and private keys (mode 0600)
    config.json       relay, polling state, declared intents
    permissions.json  grants this agent has issued
    contacts.json     known agents and their public keys
    polled/           incoming messages
    read/             processed archive
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import MalformedInputError, StorageError
from .intents import Intent, IntentDirectory, PermissionGrant
from .keys import KeyMaterial, decode_key, fingerprint, generate_key_material, new_agent_id

logger = logging.getLogger("coneko.storage")

DEFAULT_RELAY = "https://api.coneko.ai"
DEFAULT_AGENT = "default"


def base_dir() -> Path:
    return Path(os.environ.get("CONEKO_HOME") or Path.home() / ".coneko")


def default_relay() -> str:
    return os.environ.get("CONEKO_RELAY_URL", DEFAULT_RELAY)


def agent_dir_name(agent_name: Optional[str] = None) -> str:
    """Filesystem-safe directory name for an agent."""
    if not agent_name:
        agent_name = os.environ.get("CONEKO_AGENT") or DEFAULT_AGENT
    return re.sub(r"[^a-z0-9_-]", "-", agent_name.lower())


@dataclass
class AgentPaths:
    base_dir: Path
    agent_dir: Path
    keys_file: Path
    config_file: Path
    contacts_file: Path
    permissions_file: Path
    polled_dir: Path
    read_dir: Path


def get_agent_paths(agent_name: Optional[str] = None) -> AgentPaths:
    base = base_dir()
    agent_dir = base / agent_dir_name(agent_name)
    return AgentPaths(
        base_dir=base,
        agent_dir=agent_dir,
        keys_file=agent_dir / "keys.json",
        config_file=agent_dir / "config.json",
        contacts_file=agent_dir / "contacts.json",
        permissions_file=agent_dir / "permissions.json",
        polled_dir=agent_dir / "polled",
        read_dir=agent_dir / "read",
    )


def ensure_agent_dirs(agent_name: Optional[str] = None) -> AgentPaths:
    paths = get_agent_paths(agent_name)
    for directory in (paths.agent_dir, paths.polled_dir, paths.read_dir):
        directory.mkdir(parents=True, exist_ok=True)
    return paths


def list_agents() -> List[str]:
    base = base_dir()
    if not base.exists():
        return []
    return sorted(entry.name for entry in base.iterdir() if entry.is_dir())


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    if not path.exists():
        return None
    try:
        with open(path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise StorageError(f"Could not read {path}: {e}") from e
    if not isinstance(data, dict):
        raise StorageError(f"{path} does not contain a JSON object")
    return data


def _write_json(path: Path, data: Dict[str, Any], private: bool = False) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(data, f, indent=2)
    if private:
        os.chmod(path, 0o600)


# ── Identity ─────────────────────────────────────────────────────────

@dataclass
class AgentRecord:
    """Contents of keys.json."""
    agent_id: str
    name: str
    relay: str
    keys: KeyMaterial
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def fingerprint(self) -> str:
        return self.keys.fingerprint

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "name": self.name,
            "relay": self.relay,
            "keys": self.keys.to_dict(),
            "fingerprint": self.fingerprint,
            "created": self.created,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentRecord':
        try:
            record = cls(
                agent_id=data["agentId"],
                name=data["name"],
                relay=data.get("relay") or default_relay(),
                keys=KeyMaterial.from_dict(data["keys"]),
                created=data.get("created", ""),
            )
        except KeyError as e:
            raise StorageError(f"keys.json is missing {e.args[0]}") from e
        except MalformedInputError as e:
            raise StorageError(f"keys.json holds invalid keys: {e}") from e

        stored = data.get("fingerprint")
        if stored and stored != record.fingerprint:
            raise StorageError("keys.json fingerprint does not match its encryption key")
        return record


def create_agent(name: str, relay: Optional[str] = None) -> AgentRecord:
    """Generate a new identity and write its workspace. Does not overwrite."""
    paths = ensure_agent_dirs(name)
    if paths.keys_file.exists():
        raise StorageError(f"Agent already initialized at {paths.agent_dir}")

    record = AgentRecord(
        agent_id=new_agent_id(),
        name=name,
        relay=relay or default_relay(),
        keys=generate_key_material(),
    )
    save_agent(record)
    _write_json(paths.contacts_file, {"contacts": {}})
    _write_json(paths.permissions_file, {"contacts": {}})
    save_config(name, AgentConfig(relay=record.relay))
    logger.info("Initialized agent %s (%s)", name, record.fingerprint)
    return record


def save_agent(record: AgentRecord) -> None:
    paths = get_agent_paths(record.name)
    _write_json(paths.keys_file, record.to_dict(), private=True)


def load_agent(agent_name: Optional[str] = None) -> Optional[AgentRecord]:
    data = _read_json(get_agent_paths(agent_name).keys_file)
    if data is None:
        return None
    return AgentRecord.from_dict(data)


def load_key_material(agent_name: Optional[str] = None) -> Optional[KeyMaterial]:
    record = load_agent(agent_name)
    return record.keys if record else None


def save_key_material(agent_name: str, keys: KeyMaterial) -> None:
    """Replace the keys of an existing agent, or create a minimal keys.json."""
    record = load_agent(agent_name)
    if record is None:
        record = AgentRecord(agent_id=new_agent_id(), name=agent_name, relay=default_relay(), keys=keys)
    else:
        record.keys = keys
    save_agent(record)


# ── Config ───────────────────────────────────────────────────────────

@dataclass
class AgentConfig:
    """Contents of config.json (intents are handled by the intent directory)."""
    relay: str = DEFAULT_RELAY
    last_poll: Optional[str] = None
    discoverable: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        data.update({"relay": self.relay, "lastPoll": self.last_poll, "discoverable": self.discoverable})
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AgentConfig':
        extra = {k: v for k, v in data.items() if k not in ("relay", "lastPoll", "discoverable")}
        return cls(
            relay=data.get("relay") or default_relay(),
            last_poll=data.get("lastPoll"),
            discoverable=bool(data.get("discoverable", False)),
            extra=extra,
        )


def load_config(agent_name: Optional[str] = None) -> AgentConfig:
    data = _read_json(get_agent_paths(agent_name).config_file)
    if data is None:
        return AgentConfig(relay=default_relay())
    return AgentConfig.from_dict(data)


def save_config(agent_name: Optional[str], config: AgentConfig) -> None:
    _write_json(get_agent_paths(agent_name).config_file, config.to_dict())


# ── Intents and permissions ──────────────────────────────────────────

def load_intent_directory(agent_name: Optional[str] = None) -> IntentDirectory:
    """Build an agent's intent directory from config.json and permissions.json."""
    paths = get_agent_paths(agent_name)
    record = load_agent(agent_name)
    owner = record.fingerprint if record else agent_dir_name(agent_name)

    config = _read_json(paths.config_file) or {}
    permissions = _read_json(paths.permissions_file) or {}

    try:
        intents = [Intent.from_dict(name, info) for name, info in (config.get("intents") or {}).items()]
        grants = [
            PermissionGrant(
                owner=owner,
                grantee=grantee,
                intent=intent_name,
                granted_at=info.get("grantedAt", ""),
                grantee_fingerprint=info.get("granteeFingerprint"),
            )
            for grantee, entry in (permissions.get("contacts") or {}).items()
            for intent_name, info in (entry.get("permissions") or {}).items()
        ]
    except (AttributeError, MalformedInputError) as e:
        raise StorageError(f"Intent data for {agent_dir_name(agent_name)} is invalid: {e}") from e

    return IntentDirectory(owner, intents=intents, grants=grants)


def save_intent_directory(agent_name: Optional[str], directory: IntentDirectory) -> None:
    """Write declared intents into config.json and grants into permissions.json."""
    paths = get_agent_paths(agent_name)
    intents, grants = directory.snapshot()

    config = _read_json(paths.config_file) or AgentConfig(relay=default_relay()).to_dict()
    config["intents"] = {
        name: intent.to_dict() for name, intent in intents.items() if not intent.is_default
    }
    _write_json(paths.config_file, config)

    contacts = {}
    for grantee, held in grants.items():
        contacts[grantee] = {
            "permissions": {
                name: {"grantedAt": grant.granted_at, "granteeFingerprint": grant.grantee_fingerprint}
                for name, grant in held.items()
            }
        }
    _write_json(paths.permissions_file, {"contacts": contacts})


# ── Contacts ─────────────────────────────────────────────────────────

def load_contacts(agent_name: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
    data = _read_json(get_agent_paths(agent_name).contacts_file) or {}
    return data.get("contacts") or {}


def save_contacts(agent_name: Optional[str], contacts: Dict[str, Dict[str, Any]]) -> None:
    _write_json(get_agent_paths(agent_name).contacts_file, {"contacts": contacts})


def add_contact(
    agent_name: Optional[str],
    address: str,
    public_key: str,
    signing_public_key: str,
    display_name: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Store a contact's public keys. The fingerprint is derived, never trusted from input."""
    decode_key(public_key, "public key")
    decode_key(signing_public_key, "signing public key")

    contacts = load_contacts(agent_name)
    contact = {
        "address": address,
        "publicKey": public_key,
        "signingPublicKey": signing_public_key,
        "fingerprint": fingerprint(public_key),
        "addedAt": datetime.now(timezone.utc).isoformat(),
    }
    if display_name:
        contact["displayName"] = display_name
    if notes:
        contact["notes"] = notes
    contacts[address] = contact
    save_contacts(agent_name, contacts)
    return contact
