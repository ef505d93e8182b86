"""Tests for codegrant_config.py."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from codegrant_config import load_clients, load_settings

KEY = "test-signing-key-0123456789abcdef0123456789"


@pytest.fixture
def clients_file(tmp_path):
    path = tmp_path / "clients.yaml"
    path.write_text(
        "clients:\n"
        "  C1:\n"
        "    name: Demo\n"
        "    redirect_uri: https://app.test/cb\n"
        "  C2:\n"
        "    name: Other\n"
        "    redirect_uri: http://localhost:5000/callback\n"
        "    website: http://localhost:5000\n"
    )
    return path


class TestLoadSettings:
    def test_defaults(self, tmp_path):
        settings = load_settings({"CODEGRANT_SIGNING_KEY": KEY},
                                 clients_file=_empty_file(tmp_path))
        assert settings.signing_key == KEY
        assert settings.issuer == "http://localhost:3000"
        assert settings.code_ttl == 300
        assert settings.token_ttl == 86400
        assert settings.registration_secret is None
        assert settings.require_consent_reference is False
        assert settings.clients == []

    def test_missing_signing_key_fails_closed(self):
        with pytest.raises(SystemExit, match="CODEGRANT_SIGNING_KEY"):
            load_settings({})

    def test_empty_signing_key_fails_closed(self):
        with pytest.raises(SystemExit, match="CODEGRANT_SIGNING_KEY"):
            load_settings({"CODEGRANT_SIGNING_KEY": ""})

    def test_env_overrides(self, tmp_path):
        settings = load_settings({
            "CODEGRANT_SIGNING_KEY": KEY,
            "CODEGRANT_ISSUER_URL": "https://auth.example.com/",
            "CODEGRANT_CODE_TTL": "120",
            "CODEGRANT_TOKEN_TTL": "3600",
            "CODEGRANT_REGISTRATION_SECRET": "s3cret",
            "CODEGRANT_REQUIRE_CONSENT_REFERENCE": "true",
        }, clients_file=_empty_file(tmp_path))
        assert settings.issuer == "https://auth.example.com"
        assert settings.code_ttl == 120
        assert settings.token_ttl == 3600
        assert settings.registration_secret == "s3cret"
        assert settings.require_consent_reference is True

    def test_invalid_number(self, tmp_path):
        with pytest.raises(SystemExit, match="Invalid configuration"):
            load_settings({"CODEGRANT_SIGNING_KEY": KEY, "CODEGRANT_CODE_TTL": "soon"},
                          clients_file=_empty_file(tmp_path))

    def test_invalid_issuer(self, tmp_path):
        with pytest.raises(SystemExit, match="Invalid configuration"):
            load_settings({"CODEGRANT_SIGNING_KEY": KEY, "CODEGRANT_ISSUER_URL": "not a url"},
                          clients_file=_empty_file(tmp_path))

    def test_clients_file_from_env(self, clients_file):
        settings = load_settings({
            "CODEGRANT_SIGNING_KEY": KEY,
            "CODEGRANT_CLIENTS_FILE": str(clients_file),
        })
        assert [c.client_id for c in settings.clients] == ["C1", "C2"]

    def test_missing_clients_file(self, tmp_path):
        with pytest.raises(SystemExit, match="not found"):
            load_settings({"CODEGRANT_SIGNING_KEY": KEY},
                          clients_file=tmp_path / "missing.yaml")


class TestLoadClients:
    def test_parses_clients(self, clients_file):
        clients = load_clients(clients_file)
        assert clients[0].name == "Demo"
        assert clients[0].redirect_uri == "https://app.test/cb"
        assert clients[1].website == "http://localhost:5000"

    def test_missing_top_level_key(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text("hosts: {}\n")
        with pytest.raises(SystemExit, match="'clients'"):
            load_clients(path)

    def test_client_without_redirect_uri(self, tmp_path):
        path = tmp_path / "clients.yaml"
        path.write_text("clients:\n  C1:\n    name: Demo\n")
        with pytest.raises(SystemExit, match="C1"):
            load_clients(path)

    def test_example_file_is_valid(self):
        example = Path(__file__).resolve().parent.parent / "clients.example.yaml"
        clients = load_clients(example)
        assert clients and all(c.redirect_uri for c in clients)


def _empty_file(tmp_path: Path) -> Path:
    path = tmp_path / "empty.yaml"
    path.write_text("")
    return path
