"""
tests/test_cli.py -- Bootstrap commands in main.py.

Each test keeps its own stores open on the same named in-memory database
the command writes to, so the rows outlive the command's own engine.
"""

from __future__ import annotations

import json
import sys
import uuid

import pytest

import main
from auth.tokens import verify_password, verify_token_hash
from conftest import _memory_url, settings_with


@pytest.fixture
def cli(monkeypatch):
    suffix = uuid.uuid4().hex[:12]
    url = _memory_url(f"cli_{suffix}")
    monkeypatch.setattr(main, "get_settings", lambda: settings_with(database_url=url))

    def run(*argv: str) -> None:
        monkeypatch.setattr(sys, "argv", ["gatekeeper", *argv])
        main.main()

    run.url = url
    return run


class TestCreateUser:
    def test_creates_verified_user_with_roles(self, cli, capsys) -> None:
        store = main.UserStore(cli.url)
        try:
            cli("create-user", "root", "root@example.com", "--password", "long-enough-pw", "--role", "admin")
            user = store.get_by_login("root")
            assert user.email_verified
            assert user.roles == ["admin"]
            assert verify_password("long-enough-pw", user.hashed_password)
            assert "Created user root" in capsys.readouterr().out
        finally:
            store.close()

    def test_weak_password_exits(self, cli) -> None:
        with pytest.raises(SystemExit):
            cli("create-user", "root", "root@example.com", "--password", "short")

    def test_duplicate_exits(self, cli) -> None:
        store = main.UserStore(cli.url)
        try:
            cli("create-user", "root", "root@example.com", "--password", "long-enough-pw")
            with pytest.raises(SystemExit):
                cli("create-user", "root", "other@example.com", "--password", "long-enough-pw")
        finally:
            store.close()


class TestFederationCommands:
    def test_oauth_client_secret_is_printed_once_and_stored_hashed(self, cli, capsys) -> None:
        store = main.FederationStore(cli.url)
        try:
            cli("create-oauth-client", "Wiki", "--client-id", "wiki",
                "--redirect-uri", "https://wiki.example.com/cb", "--grant-type", "authorization_code")
            out = capsys.readouterr().out
            secret = out.split("client_secret:")[1].split()[0]
            client = store.get_oauth_client("wiki")
            assert client.redirect_uris == ["https://wiki.example.com/cb"]
            assert client.grant_types == ["authorization_code"]
            assert client.client_secret_hash != secret
            assert verify_token_hash(secret, client.client_secret_hash)
        finally:
            store.close()

    def test_saml_app(self, cli, capsys, tmp_path, signing_pair) -> None:
        cert, key = tmp_path / "idp.crt", tmp_path / "idp.key"
        cert.write_text(signing_pair[0])
        key.write_text(signing_pair[1])
        store = main.FederationStore(cli.url)
        try:
            cli("create-saml-app", "HR", "--entity-id", "https://hr.example.com",
                "--acs-url", "https://hr.example.com/acs", "--cert", str(cert), "--key", str(key))
            assert "/saml/metadata?app_id=1" in capsys.readouterr().out
            assert store.get_saml_config(1).certificate == signing_pair[0]
        finally:
            store.close()

    def test_saml_app_missing_cert_file(self, cli, tmp_path) -> None:
        with pytest.raises(SystemExit):
            cli("create-saml-app", "HR", "--entity-id", "e", "--acs-url", "a",
                "--cert", str(tmp_path / "missing.crt"), "--key", str(tmp_path / "missing.key"))


class TestCreatePolicy:
    def test_valid_policy(self, cli, tmp_path) -> None:
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"name": "office only", "conditions": {"ip": {"ranges": ["10.0.0.0/8"]}},
                                    "actions": {"require_mfa": True}}))
        store = main.PolicyStore(cli.url)
        try:
            cli("create-policy", str(path))
            assert [p.name for p in store.list_policies()] == ["office only"]
        finally:
            store.close()

    def test_invalid_condition_exits(self, cli, tmp_path) -> None:
        path = tmp_path / "policy.json"
        path.write_text(json.dumps({"name": "bad", "conditions": {"ip": {"ranges": ["not-a-network"]}}}))
        with pytest.raises(SystemExit):
            cli("create-policy", str(path))

    def test_not_json_exits(self, cli, tmp_path) -> None:
        path = tmp_path / "policy.json"
        path.write_text("{nope")
        with pytest.raises(SystemExit):
            cli("create-policy", str(path))
