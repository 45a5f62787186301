#!/usr/bin/env python3
"""
coneko — local identity, intent and permission management for agents.

Commands:
  init            Create a new agent identity
  whoami          Show the current identity and its public keys
  list-agents     List agents on this machine
  intent-register Declare an intent other agents may use
  intent-list     List declared intents
  intent-remove   Remove a declared intent
  permit          Grant a sender a privileged intent
  revoke          Revoke a granted intent
  permissions     List granted permissions
  contact-add     Store a contact's public keys
  contact-remove  Forget a contact
  contacts        List contacts
  check           Check whether a sender may use intents with you
  seal            Build, sign and encrypt a message for a contact
  open            Decrypt and verify a sealed message
"""

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from coneko_identity import storage
from coneko_identity.envelope import build_envelope, open_sealed, seal, sender_matches
from coneko_identity.errors import ConekoError, DecryptionError, VerificationError
from coneko_identity.intents import DEFAULT_INTENT, IntentDirectory
from coneko_identity.keys import b64encode


# ── Helpers ──────────────────────────────────────────────────────────

def require_agent(args):
    """Return the agent record or exit with an error."""
    agent = storage.load_agent(args.agent)
    if not agent:
        name = args.agent or storage.agent_dir_name()
        print(f"No agent \"{name}\" found. Run: coneko init -n <name>")
        sys.exit(1)
    return agent


def require_contact(args, address):
    contacts = storage.load_contacts(args.agent)
    contact = contacts.get(address)
    if not contact:
        print(f"❌ Contact not found: {address}")
        print("Run: coneko contact-add <address> --public-key <key> --signing-key <key>")
        sys.exit(1)
    return contact


def parse_intents(value):
    """Split a comma-separated intent list."""
    return [name.strip() for name in value.split(",") if name.strip()]


def load_directory(args) -> IntentDirectory:
    return storage.load_intent_directory(args.agent)


# ── Commands ─────────────────────────────────────────────────────────

def cmd_init(args):
    """Create a new agent identity."""
    existing = storage.load_agent(args.name)
    if existing:
        print(f"Agent already initialized: {existing.name}")
        print(f"Fingerprint: {existing.fingerprint}")
        return

    agent = storage.create_agent(args.name, relay=args.relay)
    paths = storage.get_agent_paths(agent.name)
    print(f"✅ Agent \"{agent.name}\" initialized")
    print(f"Agent ID: {agent.agent_id}")
    print(f"Fingerprint: {agent.fingerprint}")
    print(f"Relay: {agent.relay}")
    print(f"Workspace: {paths.agent_dir}")
    print("⚠️  Keep keys.json secure — it contains your private keys!")


def cmd_whoami(args):
    """Show the current identity."""
    agent = require_agent(args)
    print(f"Name: {agent.name}")
    print(f"ID: {agent.agent_id}")
    print(f"Fingerprint: {agent.fingerprint}")
    print(f"Relay: {agent.relay}")
    print(f"Created: {agent.created}")
    print(f"Public key: {b64encode(agent.keys.agreement_public_key)}")
    print(f"Signing key: {b64encode(agent.keys.signing_public_key)}")

    others = [a for a in storage.list_agents() if a != storage.agent_dir_name(agent.name)]
    if others:
        print(f"Other agents: {', '.join(others)}")


def cmd_list_agents(args):
    """List agents on this machine."""
    agents = storage.list_agents()
    if not agents:
        print("No agents found. Run: coneko init -n <name>")
        return
    for name in agents:
        record = storage.load_agent(name)
        print(f"{name:<24} {record.fingerprint if record else '(no keys)'}")


def cmd_intent_register(args):
    """Declare an intent."""
    require_agent(args)
    directory = load_directory(args)
    intent = directory.declare_intent(args.name, args.description or "", privileged=args.privileged)
    storage.save_intent_directory(args.agent, directory)
    kind = "privileged" if intent.privileged else "public"
    print(f"✅ Intent registered: {intent.name} ({kind})")
    if intent.description:
        print(f"   Description: {intent.description}")
    if intent.privileged:
        print(f"   Senders need a grant: coneko permit <user> --intent {intent.name}")


def cmd_intent_list(args):
    """List declared intents."""
    agent = require_agent(args)
    directory = load_directory(args)
    print(f"Registered intents for {agent.name}:")
    print("(These are intents OTHER agents can use when messaging you)\n")
    for name, intent in directory.intents().items():
        marker = "🔒" if intent.privileged else "•"
        suffix = " (default)" if intent.is_default else ""
        print(f"  {marker} {name}{suffix}")
        if intent.description:
            print(f"    {intent.description}")


def cmd_intent_remove(args):
    """Remove a declared intent."""
    require_agent(args)
    directory = load_directory(args)
    directory.remove_intent(args.name)
    storage.save_intent_directory(args.agent, directory)
    print(f"✅ Intent removed: {args.name}")


def cmd_permit(args):
    """Grant a sender a privileged intent."""
    require_agent(args)
    directory = load_directory(args)
    contact = storage.load_contacts(args.agent).get(args.grantee, {})
    grantee_fp = args.fingerprint or contact.get("fingerprint")
    directory.grant(args.grantee, args.intent, grantee_fingerprint=grantee_fp)
    storage.save_intent_directory(args.agent, directory)
    print(f"✅ Granted permission: {args.grantee} can use '{args.intent}' intent")

    intent = directory.get_intent(args.intent)
    if intent is None:
        print(f"⚠️  '{args.intent}' is not declared yet; the grant applies once it is declared privileged")
    elif not intent.privileged:
        print(f"⚠️  '{args.intent}' is public; the grant applies if it becomes privileged")


def cmd_revoke(args):
    """Revoke a granted intent."""
    require_agent(args)
    directory = load_directory(args)
    if directory.revoke(args.grantee, args.intent):
        storage.save_intent_directory(args.agent, directory)
        print(f"✅ Revoked permission: {args.grantee} can no longer use '{args.intent}'")
    else:
        print(f"No '{args.intent}' grant found for {args.grantee}")


def cmd_permissions(args):
    """List granted permissions."""
    agent = require_agent(args)
    grants = load_directory(args).grants()
    print(f"Permissions granted by {agent.name}:")
    if not grants:
        print("No permissions granted yet")
        print("Use: coneko permit <user> --intent <name>")
        return
    for grantee, intents in sorted(grants.items()):
        print(f"\n{grantee}:")
        for name in intents:
            print(f"  • {name}")


def cmd_contact_add(args):
    """Store a contact's public keys."""
    require_agent(args)
    contact = storage.add_contact(
        args.agent,
        args.address,
        public_key=args.public_key,
        signing_public_key=args.signing_key,
        display_name=args.name,
        notes=args.notes,
    )
    print(f"✅ Contact added: {args.address}")
    print(f"   Fingerprint: {contact['fingerprint']}")


def cmd_contact_remove(args):
    """Forget a contact (permissions are kept)."""
    require_agent(args)
    contacts = storage.load_contacts(args.agent)
    if contacts.pop(args.address, None) is None:
        print(f"❌ Contact not found: {args.address}")
        sys.exit(1)
    storage.save_contacts(args.agent, contacts)
    print(f"✅ Contact removed: {args.address}")
    print("(Note: This only removes metadata, not permissions)")


def cmd_contacts(args):
    """List contacts."""
    require_agent(args)
    contacts = storage.load_contacts(args.agent)
    if not contacts:
        print("No contacts yet")
        return
    for address, contact in sorted(contacts.items()):
        name = contact.get("displayName", "")
        print(f"{address:<32} {contact.get('fingerprint', '?'):<24} {name}")


def cmd_check(args):
    """Run the delivery check a relay would run for a sender."""
    require_agent(args)
    result = load_directory(args).authorize(args.sender, parse_intents(args.intent))
    if args.json:
        print(json.dumps(result.to_dict()))
    elif result.allowed:
        print(f"✅ {args.sender} may send: {args.intent}")
    else:
        print(f"❌ Blocked for {args.sender}: {', '.join(result.blocked)}")
    if not result.allowed:
        sys.exit(2)


def cmd_seal(args):
    """Build, sign and encrypt a message for a contact."""
    agent = require_agent(args)
    contact = require_contact(args, args.to)

    try:
        data = json.loads(args.content)
    except json.JSONDecodeError:
        data = args.content
        content_format = "text"
    else:
        content_format = "json"

    envelope = build_envelope(
        agent.keys,
        agent.fingerprint,
        parse_intents(args.intent),
        data,
        agent_id=agent.agent_id,
        display_name=agent.name,
        human_message=args.message,
        content_format=content_format,
    )
    wire = {"to": args.to, "payload": seal(envelope, contact["publicKey"]).to_dict()}

    text = json.dumps(wire, indent=2)
    if args.output:
        Path(args.output).write_text(text)
        print(f"✅ Sealed message {envelope.message_id} for {args.to} -> {args.output}")
    else:
        print(text)


def cmd_open(args):
    """Decrypt and verify a sealed message."""
    agent = require_agent(args)
    contact = require_contact(args, args.sender)

    try:
        wire = json.loads(Path(args.path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        print(f"❌ Could not read {args.path}: {e}")
        sys.exit(1)
    payload = wire.get("payload", wire) if isinstance(wire, dict) else wire

    try:
        envelope = open_sealed(payload, agent.keys, contact["signingPublicKey"])
    except DecryptionError as e:
        print(f"❌ Message corrupted or not for this agent: {e}")
        sys.exit(1)
    except VerificationError:
        print(f"❌ Signature does not match {args.sender}; message not trusted")
        sys.exit(1)

    if not sender_matches(envelope, contact["publicKey"]):
        print(f"❌ Sender fingerprint {envelope.sender.fingerprint} does not match contact {args.sender}; "
              "message not trusted")
        sys.exit(1)

    print(f"From:    {envelope.sender.display_name} ({envelope.sender.fingerprint})")
    print(f"Date:    {envelope.timestamp}")
    print(f"ID:      {envelope.message_id}")
    print(f"Intents: {', '.join(envelope.intent_names)}")
    if envelope.content.human_message:
        print(f"Note:    {envelope.content.human_message}")
    data = envelope.content.data
    print(f"Content: {data if isinstance(data, str) else json.dumps(data)}")
    print("🔓 (decrypted, signature verified)")


# ── Main ─────────────────────────────────────────────────────────────

def build_parser():
    parser = argparse.ArgumentParser(
        prog="coneko",
        description="Coneko — agent identity, intents and permissions",
    )
    parser.add_argument("--agent", default=None, help="Agent name (default: $CONEKO_AGENT or 'default')")
    sub = parser.add_subparsers(dest="command")

    p_init = sub.add_parser("init", help="Create a new agent identity")
    p_init.add_argument("-n", "--name", required=True, help="Agent name")
    p_init.add_argument("--relay", default=None, help=f"Relay URL (default: {storage.DEFAULT_RELAY})")

    sub.add_parser("whoami", help="Show the current identity")
    sub.add_parser("list-agents", help="List agents on this machine")

    p_ireg = sub.add_parser("intent-register", help="Declare an intent")
    p_ireg.add_argument("name", help="Intent name (letters, digits, - and _)")
    p_ireg.add_argument("description", nargs="?", default="", help="Description")
    p_ireg.add_argument("--privileged", action="store_true", help="Require an explicit grant")

    sub.add_parser("intent-list", help="List declared intents")

    p_irem = sub.add_parser("intent-remove", help="Remove a declared intent")
    p_irem.add_argument("name", help="Intent name")

    p_permit = sub.add_parser("permit", help="Grant a sender a privileged intent")
    p_permit.add_argument("grantee", help="Sender handle or fingerprint")
    p_permit.add_argument("--intent", required=True, help="Intent name")
    p_permit.add_argument("--fingerprint", default=None, help="Grantee fingerprint")

    p_revoke = sub.add_parser("revoke", help="Revoke a granted intent")
    p_revoke.add_argument("grantee", help="Sender handle or fingerprint")
    p_revoke.add_argument("--intent", required=True, help="Intent name")

    sub.add_parser("permissions", help="List granted permissions")

    p_cadd = sub.add_parser("contact-add", help="Store a contact's public keys")
    p_cadd.add_argument("address", help="Contact address (username@domain or fingerprint)")
    p_cadd.add_argument("--public-key", required=True, help="Contact's encryption public key (base64)")
    p_cadd.add_argument("--signing-key", required=True, help="Contact's signing public key (base64)")
    p_cadd.add_argument("--name", default=None, help="Display name")
    p_cadd.add_argument("--notes", default=None, help="Notes")

    p_crem = sub.add_parser("contact-remove", help="Forget a contact")
    p_crem.add_argument("address", help="Contact address")

    sub.add_parser("contacts", help="List contacts")

    p_check = sub.add_parser("check", help="Check whether a sender may use intents with you")
    p_check.add_argument("sender", help="Sender handle or fingerprint")
    p_check.add_argument("--intent", default=DEFAULT_INTENT.name, help="Comma-separated intent names")
    p_check.add_argument("--json", action="store_true", help="Print {allowed, blocked} as JSON")

    p_seal = sub.add_parser("seal", help="Build, sign and encrypt a message")
    p_seal.add_argument("to", help="Contact address")
    p_seal.add_argument("--intent", default=DEFAULT_INTENT.name, help="Comma-separated intent names")
    p_seal.add_argument("--content", required=True, help="JSON (or plain text) content")
    p_seal.add_argument("--message", default=None, help="Note for the recipient's human")
    p_seal.add_argument("--output", "-o", default=None, help="Write the sealed message to this file")

    p_open = sub.add_parser("open", help="Decrypt and verify a sealed message")
    p_open.add_argument("path", help="Sealed message file")
    p_open.add_argument("--from", dest="sender", required=True, help="Sender's contact address")

    return parser


COMMANDS = {
    "init": cmd_init,
    "whoami": cmd_whoami,
    "list-agents": cmd_list_agents,
    "intent-register": cmd_intent_register,
    "intent-list": cmd_intent_list,
    "intent-remove": cmd_intent_remove,
    "permit": cmd_permit,
    "revoke": cmd_revoke,
    "permissions": cmd_permissions,
    "contact-add": cmd_contact_add,
    "contact-remove": cmd_contact_remove,
    "contacts": cmd_contacts,
    "check": cmd_check,
    "seal": cmd_seal,
    "open": cmd_open,
}


def main(argv=None):
    logging.basicConfig(level=os.environ.get("CONEKO_LOG_LEVEL", "WARNING").upper())
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command not in COMMANDS:
        parser.print_help()
        return

    try:
        COMMANDS[args.command](args)
    except ConekoError as e:
        print(f"❌ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
