"""Command-line interface for the users service."""

from __future__ import annotations

import argparse
import logging
import sys
from getpass import getpass
from pathlib import Path
from typing import Sequence

from users_api.config import Settings, load_settings

logger = logging.getLogger("users_api.main")

_DEFAULT_SERVICE_URL = "http://localhost:8080"
_MIN_PASSWORD_LENGTH = 12


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Users API service utilities")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to a YAML configuration file (default: USERS_API_CONFIG or config/users_api.yaml)",
    )
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    subparsers.add_parser("init-db", help="Initialise the users database")

    serve_parser = subparsers.add_parser("serve", help="Start the HTTP service")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind address for the API")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port for the API (default: 8080)")

    create_parser = subparsers.add_parser("create-user", help="Add a user to the database")
    create_parser.add_argument("name", help="Display name for the user")
    create_parser.add_argument("email", help="Unique email address")
    create_parser.add_argument(
        "--no-password",
        action="store_true",
        help="Create the account without a password",
    )

    check_parser = subparsers.add_parser(
        "check-auth", help="Check a password against a running service"
    )
    check_parser.add_argument("user_id", help="Identifier of the user to check")
    check_parser.add_argument(
        "--service-url",
        default=_DEFAULT_SERVICE_URL,
        help=f"Base URL of the users service (default: {_DEFAULT_SERVICE_URL})",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "init-db", "create-user", "check-auth"}

    # Allow ``main.py --port 9000`` as shorthand for ``main.py serve --port 9000``.
    leading: list[str] = []
    remaining = list(args_list)
    if remaining[:1] == ["--config"] and len(remaining) >= 2:
        leading, remaining = remaining[:2], remaining[2:]
    elif remaining and remaining[0].startswith("--config="):
        leading, remaining = remaining[:1], remaining[1:]

    if not remaining:
        remaining = ["serve"]
    else:
        first = remaining[0]
        if first in ("-h", "--help"):
            return parser.parse_args([*leading, *remaining])
        if first not in known_commands:
            if any(flag in remaining for flag in ("-h", "--help")):
                return parser.parse_args([*leading, *remaining])
            remaining = ["serve", *remaining]

    return parser.parse_args([*leading, *remaining])


def _load_settings(config: str | None) -> Settings:
    path = Path(config).expanduser() if config else None
    return load_settings(path)


def _serve(settings: Settings, *, host: str, port: int) -> None:
    import uvicorn

    from users_api.application import create_application
    from users_api.telemetry import open_telemetry

    with open_telemetry(settings.telemetry) as providers:
        app = create_application(settings=settings, telemetry=providers.sink())
        logger.info("Starting users API on http://%s:%s", host, port)
        uvicorn.run(app, host=host, port=port, log_level="info")


def _initialise_database(settings: Settings) -> None:
    from users_api.application import build_database

    build_database(settings)
    print(f"Database initialised at {settings.database_path}")


def prompt_for_password() -> str | None:
    for _ in range(3):
        password = getpass(f"Password (min {_MIN_PASSWORD_LENGTH} characters): ")
        if len(password) < _MIN_PASSWORD_LENGTH:
            print("Password is too short. Please try again.")
            continue
        confirmation = getpass("Confirm password: ")
        if password != confirmation:
            print("Passwords do not match. Please try again.")
            continue
        return password
    return None


def _create_user(settings: Settings, *, name: str, email: str, with_password: bool) -> int:
    from users_api.application import build_database

    database = build_database(settings)

    password: str | None = None
    if with_password:
        password = prompt_for_password()
        if password is None:
            print("Aborted creating user.", file=sys.stderr)
            return 1

    try:
        user = database.create_user(name, email, password)
    except ValueError as exc:
        print(f"Failed to create user: {exc}", file=sys.stderr)
        return 1

    print(f"Created user #{user.id}: {user.name} <{user.email or 'no email set'}>")
    return 0


def _check_auth(settings: Settings, *, user_id: str, service_url: str) -> int:
    from users_api.client import AuthClient, AuthClientError
    from users_api.telemetry import open_telemetry

    password = getpass("Password: ")

    with open_telemetry(settings.telemetry) as providers:
        client = AuthClient(service_url, telemetry=providers.sink())
        try:
            accepted = client.check_password(user_id, password)
        except AuthClientError as exc:
            print(str(exc), file=sys.stderr)
            return 2

    if accepted:
        print("Password accepted.")
        return 0
    print("Password rejected.")
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    args = _parse_args(argv)
    settings = _load_settings(args.config)

    if args.command == "serve":
        _serve(settings, host=args.host, port=args.port)
        return 0
    if args.command == "init-db":
        _initialise_database(settings)
        return 0
    if args.command == "create-user":
        return _create_user(
            settings,
            name=args.name,
            email=args.email,
            with_password=not args.no_password,
        )
    if args.command == "check-auth":
        return _check_auth(settings, user_id=args.user_id, service_url=args.service_url)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
