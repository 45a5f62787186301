#!/usr/bin/env python3
"""
Coneko Demo: Two Agents Exchanging an Intent-Gated Message

This demonstrates the core protocol:
1. Creating agent identities and fingerprints
2. Declaring public and privileged intents
3. Checking intents before sending (and bouncing a blocked one)
4. Granting a privileged intent
5. Signing, encrypting, decrypting and verifying an envelope
"""

import json

from coneko_identity import (
    IntentDirectory,
    VerificationError,
    build_envelope,
    generate_key_material,
    open_sealed,
    seal,
)


def print_section(title):
    print(f"\n{'='*60}")
    print(f" {title}")
    print('='*60)


def main():
    print_section("Coneko Demo: Intent-Gated Agent Messaging")

    print_section("Step 1: Creating Agent Identities")
    alice = generate_key_material()
    bob = generate_key_material()
    print(f"\nAlice fingerprint: {alice.fingerprint}")
    print(f"Bob fingerprint:   {bob.fingerprint}")

    print_section("Step 2: Bob Declares Intents")
    bob_inbox = IntentDirectory(bob.fingerprint)
    bob_inbox.declare_intent("task", "Delegate a small task")
    bob_inbox.declare_intent("calendar", "Read or change Bob's calendar", privileged=True)
    for name, intent in bob_inbox.intents().items():
        kind = "privileged" if intent.privileged else "public"
        print(f"  • {name} ({kind})")

    print_section("Step 3: Alice Checks Before Sending")
    result = bob_inbox.authorize(alice.fingerprint, ["chat", "calendar"])
    print(f"\nchat + calendar -> {json.dumps(result.to_dict())}")
    if not result.allowed:
        print("  Message NOT sent. Ask Bob's human to grant access.")

    print_section("Step 4: Bob Grants 'calendar' to Alice")
    bob_inbox.grant(alice.fingerprint, "calendar")
    result = bob_inbox.authorize(alice.fingerprint, ["chat", "calendar"])
    print(f"\nchat + calendar -> {json.dumps(result.to_dict())}")

    print_section("Step 5: Sign, Seal, Open")
    envelope = build_envelope(
        alice,
        alice.fingerprint,
        ["chat", "calendar"],
        {"action": "book", "when": "2026-11-02T10:00:00Z"},
        agent_id="agent_demo_alice",
        display_name="Alice",
        human_message="Booking our sync",
    )
    wire = seal(envelope, bob.agreement_public_key).to_dict()
    print(f"\nOn the wire: ephemeralPublicKey={wire['ephemeralPublicKey'][:16]}... "
          f"ciphertext={len(wire['ciphertext'])} chars")

    received = open_sealed(wire, bob, alice.signing_public_key)
    print(f"Bob reads: {received.content.data} (intents: {', '.join(received.intent_names)})")

    try:
        open_sealed(wire, bob, bob.signing_public_key)
    except VerificationError:
        print("Same message checked against the wrong sender key: rejected")

    print_section("Demo Complete")


if __name__ == "__main__":
    main()
