#!/usr/bin/env python3
"""
Gatekeeper -- identity provider bootstrap CLI.

Usage:
  python main.py serve [--host 0.0.0.0] [--port 8000] [--reload]
  python main.py create-user alice alice@example.com [--role admin] [--password ...]
  python main.py create-oauth-client "Wiki" --redirect-uri https://wiki.example.com/cb
  python main.py create-saml-app "HR" --entity-id https://hr.example.com \\
                 --acs-url https://hr.example.com/acs --cert idp.crt --key idp.key
  python main.py create-policy policy.json
  python main.py purge

Environment variables (see core/config.py for the full list):
  SECRET_KEY     Required unless DEBUG=true. At least 32 characters.
  DATABASE_URL   SQLAlchemy URL (default sqlite:///gatekeeper.db)
"""

import argparse
import getpass
import json
import secrets
import sys
from pathlib import Path

from auth.models import User
from auth.store import UserStore
from auth.tokens import check_password_policy, hash_password, hash_token
from core.config import get_settings
from core.errors import WeakPassword
from federation.models import Application, OAuthClient, SAMLConfig
from federation.store import FederationStore
from policy.conditions import InvalidCondition
from policy.store import PolicyStore


def _read_text(path: str) -> str:
    """Read a regular file; exits with a message instead of a traceback."""
    file_path = Path(path).resolve()
    if not file_path.is_file():
        sys.exit(f"  [!] '{path}' is not a readable file.")
    try:
        return file_path.read_text()
    except OSError as e:
        sys.exit(f"  [!] Could not read file '{path}': {e}")


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)


def cmd_create_user(args: argparse.Namespace) -> None:
    settings = get_settings()
    store = UserStore(settings.database_url)
    try:
        if store.exists(args.username, args.email):
            sys.exit(f"  [!] A user named '{args.username}' or with that email already exists.")
        password = args.password or getpass.getpass("Password: ")
        try:
            check_password_policy(password, settings)
        except WeakPassword as e:
            sys.exit(f"  [!] {e.message}")
        user = User(
            username=args.username,
            email=args.email,
            hashed_password=hash_password(password),
            display_name=args.display_name or args.username,
            email_verified=True,
        )
        user_id = store.create_user(user, roles=args.role or ["user"])
        print(f"  Created user {args.username} (id {user_id})")
    finally:
        store.close()


def cmd_create_oauth_client(args: argparse.Namespace) -> None:
    store = FederationStore(get_settings().database_url)
    try:
        app_id = store.create_application(Application(name=args.name, protocol="oauth2"))
        client_id = args.client_id or secrets.token_urlsafe(16)
        secret = secrets.token_urlsafe(32)
        store.create_oauth_client(
            OAuthClient(
                application_id=app_id,
                client_id=client_id,
                client_secret_hash=hash_token(secret),
                redirect_uris=args.redirect_uri or [],
                grant_types=args.grant_type or [],
                scopes=args.scope or [],
            )
        )
        print(f"  Application id: {app_id}")
        print(f"  client_id:      {client_id}")
        print(f"  client_secret:  {secret}")
        print("  The secret is shown once and cannot be recovered.")
    finally:
        store.close()


def cmd_create_saml_app(args: argparse.Namespace) -> None:
    store = FederationStore(get_settings().database_url)
    try:
        app_id = store.create_application(Application(name=args.name, protocol="saml"))
        store.create_saml_config(
            SAMLConfig(
                application_id=app_id,
                entity_id=args.entity_id,
                acs_url=args.acs_url,
                slo_url=args.slo_url or "",
                certificate=_read_text(args.cert),
                private_key=_read_text(args.key),
            )
        )
        base = get_settings().public_base_url.rstrip("/")
        print(f"  Application id: {app_id}")
        print(f"  Metadata:       {base}/saml/metadata?app_id={app_id}")
    finally:
        store.close()


def cmd_create_policy(args: argparse.Namespace) -> None:
    try:
        data = json.loads(_read_text(args.file))
    except json.JSONDecodeError as e:
        sys.exit(f"  [!] '{args.file}' is not valid JSON: {e}")
    store = PolicyStore(get_settings().database_url)
    try:
        policy_id = store.create_from_dict(data)
    except (InvalidCondition, KeyError) as e:
        sys.exit(f"  [!] Invalid policy: {e}")
    finally:
        store.close()
    print(f"  Created policy {policy_id}")


def cmd_purge(args: argparse.Namespace) -> None:
    store = UserStore(get_settings().database_url)
    try:
        removed = store.purge_expired_sessions()
    finally:
        store.close()
    print(f"  Purged {removed} expired session(s)")


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="gatekeeper",
        description="Gatekeeper identity provider",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("serve", help="Run the HTTP server")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--reload", action="store_true")
    p.set_defaults(func=cmd_serve)

    p = sub.add_parser("create-user", help="Create a local user")
    p.add_argument("username")
    p.add_argument("email")
    p.add_argument("--password", help="Prompted for when omitted")
    p.add_argument("--display-name", default="")
    p.add_argument("--role", action="append", help="Repeatable")
    p.set_defaults(func=cmd_create_user)

    p = sub.add_parser("create-oauth-client", help="Register an OAuth2 application and client")
    p.add_argument("name")
    p.add_argument("--client-id", default="")
    p.add_argument("--redirect-uri", action="append", help="Repeatable; matched exactly")
    p.add_argument(
        "--grant-type",
        action="append",
        choices=["authorization_code", "client_credentials", "password", "refresh_token"],
        help="Repeatable; omit to allow every grant",
    )
    p.add_argument("--scope", action="append")
    p.set_defaults(func=cmd_create_oauth_client)

    p = sub.add_parser("create-saml-app", help="Register a SAML service provider")
    p.add_argument("name")
    p.add_argument("--entity-id", required=True, help="SP entity id (assertion audience)")
    p.add_argument("--acs-url", required=True)
    p.add_argument("--slo-url", default="")
    p.add_argument("--cert", required=True, help="PEM certificate used to sign assertions")
    p.add_argument("--key", required=True, help="PEM RSA private key matching --cert")
    p.set_defaults(func=cmd_create_saml_app)

    p = sub.add_parser("create-policy", help="Create a conditional access policy from a JSON file")
    p.add_argument("file")
    p.set_defaults(func=cmd_create_policy)

    p = sub.add_parser("purge", help="Delete expired sessions")
    p.set_defaults(func=cmd_purge)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()
