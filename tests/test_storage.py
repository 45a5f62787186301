"""Tests for local agent storage."""

import json
import os
import stat

import pytest

from coneko_identity import storage
from coneko_identity.errors import MalformedInputError, StorageError
from coneko_identity.intents import IntentDirectory
from coneko_identity.keys import b64encode, generate_key_material


class TestPaths:
    def test_agent_dir_sanitized(self, coneko_home):
        """Agent names map to lower-case, filesystem-safe directories."""
        paths = storage.get_agent_paths("My Agent!")
        assert paths.agent_dir == coneko_home / "my-agent-"
        assert paths.keys_file.name == "keys.json"

    def test_default_agent_from_env(self, coneko_home, monkeypatch):
        monkeypatch.setenv("CONEKO_AGENT", "Worker")
        assert storage.get_agent_paths().agent_dir == coneko_home / "worker"

    def test_default_agent_name(self, coneko_home):
        assert storage.get_agent_paths().agent_dir == coneko_home / "default"


class TestAgentRecord:
    def test_create_and_load(self, coneko_home):
        """A created agent loads back with identical keys."""
        record = storage.create_agent("Alice", relay="http://relay.test")
        loaded = storage.load_agent("alice")

        assert loaded.agent_id == record.agent_id
        assert loaded.keys == record.keys
        assert loaded.relay == "http://relay.test"
        assert loaded.fingerprint == record.fingerprint

        paths = storage.get_agent_paths("Alice")
        assert paths.polled_dir.is_dir()
        assert paths.read_dir.is_dir()
        assert json.loads(paths.contacts_file.read_text()) == {"contacts": {}}
        assert json.loads(paths.permissions_file.read_text()) == {"contacts": {}}

    def test_keys_file_is_private(self, coneko_home):
        storage.create_agent("alice")
        mode = os.stat(storage.get_agent_paths("alice").keys_file).st_mode
        assert stat.S_IMODE(mode) == 0o600

    def test_keys_file_shape(self, coneko_home):
        record = storage.create_agent("alice")
        data = json.loads(storage.get_agent_paths("alice").keys_file.read_text())
        assert set(data) == {"agentId", "name", "relay", "keys", "fingerprint", "created"}
        assert data["fingerprint"] == record.fingerprint

    def test_create_does_not_overwrite(self, coneko_home):
        storage.create_agent("alice")
        with pytest.raises(StorageError):
            storage.create_agent("alice")

    def test_default_relay_from_env(self, coneko_home, monkeypatch):
        monkeypatch.setenv("CONEKO_RELAY_URL", "http://env-relay.test")
        assert storage.create_agent("alice").relay == "http://env-relay.test"

    def test_missing_agent(self, coneko_home):
        assert storage.load_agent("nobody") is None
        assert storage.load_key_material("nobody") is None

    def test_corrupt_keys_file(self, coneko_home):
        paths = storage.ensure_agent_dirs("alice")
        paths.keys_file.write_text("{not json")
        with pytest.raises(StorageError):
            storage.load_agent("alice")

    def test_fingerprint_mismatch(self, coneko_home):
        storage.create_agent("alice")
        keys_file = storage.get_agent_paths("alice").keys_file
        data = json.loads(keys_file.read_text())
        data["fingerprint"] = "AAAAAAAAAAAAAAAAAAAAAA"
        keys_file.write_text(json.dumps(data))
        with pytest.raises(StorageError):
            storage.load_agent("alice")

    def test_save_and_load_key_material(self, coneko_home):
        """Key material round-trips byte for byte."""
        storage.create_agent("alice")
        keys = generate_key_material()
        storage.save_key_material("alice", keys)
        assert storage.load_key_material("alice") == keys

    def test_list_agents(self, coneko_home):
        assert storage.list_agents() == []
        storage.create_agent("bob")
        storage.create_agent("alice")
        assert storage.list_agents() == ["alice", "bob"]


class TestIntentDirectoryStorage:
    def test_round_trip(self, coneko_home):
        """Intents and grants survive save/load."""
        record = storage.create_agent("alice")
        directory = storage.load_intent_directory("alice")
        assert directory.owner == record.fingerprint
        assert list(directory.intents()) == ["chat"]

        directory.declare_intent("task", "Do a task")
        directory.declare_intent("admin", "Admin", privileged=True)
        directory.grant("bob@example.com", "admin", grantee_fingerprint="bobfp")
        storage.save_intent_directory("alice", directory)

        loaded = storage.load_intent_directory("alice")
        assert loaded.intents()["admin"].privileged
        assert loaded.intents()["task"].description == "Do a task"
        assert loaded.grants() == {"bob@example.com": ["admin"]}
        assert loaded.authorize("bob@example.com", ["chat", "admin"]).allowed
        assert not loaded.authorize("eve", ["admin"]).allowed

    def test_file_shapes(self, coneko_home):
        storage.create_agent("alice")
        directory = storage.load_intent_directory("alice")
        directory.declare_intent("admin", "Admin", privileged=True)
        directory.grant("bob", "admin", grantee_fingerprint="bobfp")
        storage.save_intent_directory("alice", directory)

        paths = storage.get_agent_paths("alice")
        config = json.loads(paths.config_file.read_text())
        permissions = json.loads(paths.permissions_file.read_text())

        assert "chat" not in config["intents"]
        assert config["intents"]["admin"]["privileged"] is True
        assert config["relay"]
        grant = permissions["contacts"]["bob"]["permissions"]["admin"]
        assert grant["granteeFingerprint"] == "bobfp"
        assert grant["grantedAt"]

    def test_unknown_fingerprint_stays_null(self, coneko_home):
        """A grant without a fingerprint is not saved under the grantee's handle."""
        storage.create_agent("alice")
        directory = storage.load_intent_directory("alice")
        directory.grant("bob", "admin")
        storage.save_intent_directory("alice", directory)

        permissions = json.loads(storage.get_agent_paths("alice").permissions_file.read_text())
        assert permissions["contacts"]["bob"]["permissions"]["admin"]["granteeFingerprint"] is None
        [grant] = storage.load_intent_directory("alice").grant_records()
        assert grant.grantee_fingerprint is None

    def test_config_fields_preserved(self, coneko_home):
        """Saving intents keeps the rest of config.json."""
        storage.create_agent("alice")
        config = storage.load_config("alice")
        config.discoverable = True
        config.last_poll = "2026-10-19T00:00:00Z"
        storage.save_config("alice", config)

        storage.save_intent_directory("alice", IntentDirectory("alice"))
        reloaded = storage.load_config("alice")
        assert reloaded.discoverable is True
        assert reloaded.last_poll == "2026-10-19T00:00:00Z"

    def test_invalid_intent_on_disk(self, coneko_home):
        storage.create_agent("alice")
        paths = storage.get_agent_paths("alice")
        config = json.loads(paths.config_file.read_text())
        config["intents"] = {"bad name": {"description": "x"}}
        paths.config_file.write_text(json.dumps(config))
        with pytest.raises(StorageError):
            storage.load_intent_directory("alice")


class TestContacts:
    def test_add_contact_derives_fingerprint(self, coneko_home, bob):
        storage.create_agent("alice")
        contact = storage.add_contact(
            "alice", "bob@example.com",
            public_key=b64encode(bob.agreement_public_key),
            signing_public_key=b64encode(bob.signing_public_key),
            display_name="Bob",
        )
        assert contact["fingerprint"] == bob.fingerprint
        assert storage.load_contacts("alice")["bob@example.com"]["displayName"] == "Bob"

    def test_add_contact_rejects_bad_key(self, coneko_home):
        storage.create_agent("alice")
        with pytest.raises(MalformedInputError):
            storage.add_contact("alice", "bob", public_key="AAAA", signing_public_key="AAAA")
