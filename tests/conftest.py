"""Shared fixtures for Coneko tests."""

import pytest

from coneko_identity.keys import generate_key_material


@pytest.fixture
def alice():
    return generate_key_material()


@pytest.fixture
def bob():
    return generate_key_material()


@pytest.fixture
def coneko_home(tmp_path, monkeypatch):
    """Point agent storage at a temp directory."""
    home = tmp_path / "coneko"
    monkeypatch.setenv("CONEKO_HOME", str(home))
    monkeypatch.delenv("CONEKO_AGENT", raising=False)
    monkeypatch.delenv("CONEKO_RELAY_URL", raising=False)
    return home
