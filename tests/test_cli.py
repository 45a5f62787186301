"""Tests for the coneko CLI (local commands only)."""

import json
from unittest.mock import MagicMock

import pytest

from coneko_identity import storage
from coneko_identity.cli import build_parser, cmd_check, cmd_intent_remove, main
from coneko_identity.errors import IntentError
from coneko_identity.keys import b64encode


def run(capsys, *argv):
    main(list(argv))
    return capsys.readouterr().out


def init_agent(capsys, name):
    run(capsys, "init", "-n", name)
    return storage.load_agent(name)


def befriend(capsys, me, other):
    run(capsys, "--agent", me.name, "contact-add", other.name,
        "--public-key", b64encode(other.keys.agreement_public_key),
        "--signing-key", b64encode(other.keys.signing_public_key),
        "--name", other.name.title())


class TestIdentityCommands:
    def test_init(self, capsys, coneko_home):
        """init creates keys and prints the fingerprint."""
        out = run(capsys, "init", "-n", "alice", "--relay", "http://relay.test")
        agent = storage.load_agent("alice")
        assert "initialized" in out
        assert agent.fingerprint in out
        assert agent.relay == "http://relay.test"

    def test_init_existing(self, capsys, coneko_home):
        """A second init leaves the existing identity alone."""
        agent = init_agent(capsys, "alice")
        out = run(capsys, "init", "-n", "alice")
        assert "already initialized" in out
        assert storage.load_agent("alice").keys == agent.keys

    def test_whoami(self, capsys, coneko_home):
        agent = init_agent(capsys, "alice")
        init_agent(capsys, "bob")
        out = run(capsys, "--agent", "alice", "whoami")
        assert agent.fingerprint in out
        assert b64encode(agent.keys.agreement_public_key) in out
        assert "Other agents: bob" in out

    def test_whoami_without_agent(self, capsys, coneko_home):
        with pytest.raises(SystemExit):
            main(["--agent", "ghost", "whoami"])
        assert "No agent \"ghost\" found" in capsys.readouterr().out

    def test_list_agents(self, capsys, coneko_home):
        assert "No agents found" in run(capsys, "list-agents")
        agent = init_agent(capsys, "alice")
        assert agent.fingerprint in run(capsys, "list-agents")


class TestIntentCommands:
    def test_register_list_remove(self, capsys, coneko_home):
        init_agent(capsys, "alice")
        out = run(capsys, "--agent", "alice", "intent-register", "admin", "Admin tasks", "--privileged")
        assert "Intent registered: admin (privileged)" in out

        out = run(capsys, "--agent", "alice", "intent-list")
        assert "chat (default)" in out
        assert "🔒 admin" in out

        out = run(capsys, "--agent", "alice", "intent-remove", "admin")
        assert "Intent removed: admin" in out
        assert "admin" not in storage.load_intent_directory("alice").intents()

    def test_invalid_intent_name(self, capsys, coneko_home):
        init_agent(capsys, "alice")
        with pytest.raises(SystemExit):
            main(["--agent", "alice", "intent-register", "bad/name", "x"])
        assert "Invalid intent name" in capsys.readouterr().out

    def test_remove_default_intent(self, capsys, coneko_home):
        """chat cannot be removed from the CLI either."""
        init_agent(capsys, "alice")
        args = MagicMock()
        args.agent = "alice"
        args.name = "chat"
        with pytest.raises(IntentError, match="Cannot remove default intent"):
            cmd_intent_remove(args)


class TestPermissionCommands:
    def test_permit_check_revoke(self, capsys, coneko_home):
        """check follows grants and revocations."""
        init_agent(capsys, "alice")
        run(capsys, "--agent", "alice", "intent-register", "admin", "Admin", "--privileged")

        with pytest.raises(SystemExit) as exc:
            main(["--agent", "alice", "check", "bob", "--intent", "chat,admin"])
        assert exc.value.code == 2
        assert "Blocked for bob: admin" in capsys.readouterr().out

        out = run(capsys, "--agent", "alice", "permit", "bob", "--intent", "admin")
        assert "bob can use 'admin'" in out
        assert "✅ bob may send" in run(capsys, "--agent", "alice", "check", "bob", "--intent", "chat,admin")
        assert "admin" in run(capsys, "--agent", "alice", "permissions")

        out = run(capsys, "--agent", "alice", "revoke", "bob", "--intent", "admin")
        assert "can no longer use 'admin'" in out
        with pytest.raises(SystemExit):
            main(["--agent", "alice", "check", "bob", "--intent", "admin"])

    def test_permit_undeclared_warns(self, capsys, coneko_home):
        init_agent(capsys, "alice")
        out = run(capsys, "--agent", "alice", "permit", "bob", "--intent", "calendar")
        assert "not declared yet" in out
        assert storage.load_intent_directory("alice").grants() == {"bob": ["calendar"]}

    def test_revoke_missing(self, capsys, coneko_home):
        init_agent(capsys, "alice")
        assert "No 'admin' grant found" in run(capsys, "--agent", "alice", "revoke", "bob", "--intent", "admin")

    def test_check_json(self, capsys, coneko_home):
        """--json prints the relay's {allowed, blocked} shape."""
        init_agent(capsys, "alice")
        args = MagicMock()
        args.agent = "alice"
        args.sender = "bob"
        args.intent = "chat"
        args.json = True
        cmd_check(args)
        assert json.loads(capsys.readouterr().out) == {"allowed": True, "blocked": []}


class TestMessageCommands:
    def test_seal_and_open(self, capsys, coneko_home, tmp_path):
        """A message sealed by alice opens for bob with a verified signature."""
        alice = init_agent(capsys, "alice")
        bob = init_agent(capsys, "bob")
        befriend(capsys, alice, bob)
        befriend(capsys, bob, alice)

        sealed = tmp_path / "msg.json"
        out = run(capsys, "--agent", "alice", "seal", "bob", "--intent", "chat",
                  "--content", '{"text": "hi bob"}', "--message", "from alice", "-o", str(sealed))
        assert "Sealed message" in out
        wire = json.loads(sealed.read_text())
        assert set(wire["payload"]) == {"ephemeralPublicKey", "ciphertext"}
        assert "hi bob" not in sealed.read_text()

        out = run(capsys, "--agent", "bob", "open", str(sealed), "--from", "alice")
        assert '{"text": "hi bob"}' in out
        assert "Intents: chat" in out
        assert "Note:    from alice" in out
        assert "signature verified" in out

    def test_open_wrong_sender(self, capsys, coneko_home, tmp_path):
        """A message checked against the wrong contact is not trusted."""
        alice = init_agent(capsys, "alice")
        bob = init_agent(capsys, "bob")
        carol = init_agent(capsys, "carol")
        befriend(capsys, alice, bob)
        befriend(capsys, bob, carol)

        sealed = tmp_path / "msg.json"
        run(capsys, "--agent", "alice", "seal", "bob", "--content", "plain text", "-o", str(sealed))
        with pytest.raises(SystemExit):
            main(["--agent", "bob", "open", str(sealed), "--from", "carol"])
        assert "message not trusted" in capsys.readouterr().out

    def test_open_fingerprint_mismatch(self, capsys, coneko_home, tmp_path):
        """A valid signature with a fingerprint that is not the contact's is refused."""
        alice = init_agent(capsys, "alice")
        bob = init_agent(capsys, "bob")
        carol = init_agent(capsys, "carol")
        befriend(capsys, alice, bob)
        storage.add_contact(
            "bob", "alice",
            public_key=b64encode(carol.keys.agreement_public_key),
            signing_public_key=b64encode(alice.keys.signing_public_key),
        )

        sealed = tmp_path / "msg.json"
        run(capsys, "--agent", "alice", "seal", "bob", "--content", '{"secret": "top secret!"}', "-o", str(sealed))
        with pytest.raises(SystemExit) as exc:
            main(["--agent", "bob", "open", str(sealed), "--from", "alice"])
        assert exc.value.code == 1
        out = capsys.readouterr().out
        assert "does not match contact alice" in out
        assert "top secret!" not in out

    def test_open_tampered(self, capsys, coneko_home, tmp_path):
        alice = init_agent(capsys, "alice")
        bob = init_agent(capsys, "bob")
        befriend(capsys, alice, bob)
        befriend(capsys, bob, alice)

        sealed = tmp_path / "msg.json"
        run(capsys, "--agent", "alice", "seal", "bob", "--content", "{}", "-o", str(sealed))
        wire = json.loads(sealed.read_text())
        ct = wire["payload"]["ciphertext"]
        wire["payload"]["ciphertext"] = ("B" if ct[0] == "A" else "A") + ct[1:]
        sealed.write_text(json.dumps(wire))

        with pytest.raises(SystemExit):
            main(["--agent", "bob", "open", str(sealed), "--from", "alice"])
        assert "Message corrupted" in capsys.readouterr().out

    def test_seal_unknown_contact(self, capsys, coneko_home):
        init_agent(capsys, "alice")
        with pytest.raises(SystemExit):
            main(["--agent", "alice", "seal", "nobody", "--content", "{}"])
        assert "Contact not found" in capsys.readouterr().out

    def test_contacts(self, capsys, coneko_home):
        alice = init_agent(capsys, "alice")
        bob = init_agent(capsys, "bob")
        befriend(capsys, alice, bob)
        assert bob.fingerprint in run(capsys, "--agent", "alice", "contacts")
        assert "Contact removed" in run(capsys, "--agent", "alice", "contact-remove", "bob")
        assert "No contacts yet" in run(capsys, "--agent", "alice", "contacts")


@pytest.mark.parametrize("cmd", [
    "init", "whoami", "list-agents", "intent-register", "intent-list", "intent-remove",
    "permit", "revoke", "permissions", "contact-add", "contact-remove", "contacts",
    "check", "seal", "open",
])
def test_help_flag(cmd, capsys):
    """Every subcommand accepts --help."""
    with pytest.raises(SystemExit) as exc:
        build_parser().parse_args([cmd, "--help"])
    assert exc.value.code == 0
    assert "usage:" in capsys.readouterr().out.lower()


def test_no_command_prints_help(capsys):
    main([])
    assert "coneko" in capsys.readouterr().out
