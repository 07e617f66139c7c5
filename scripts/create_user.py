import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from main import prompt_for_password
from users_api.application import build_database
from users_api.config import load_settings


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a users API account")
    parser.add_argument("name", help="Display name for the user")
    parser.add_argument("email", help="Unique email address")
    parser.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to the YAML configuration (defaults to USERS_API_CONFIG or config/users_api.yaml)",
    )
    parser.add_argument(
        "--no-password",
        action="store_true",
        help="Create the account without a password",
    )
    return parser.parse_args()


def _read_password() -> str:
    password = prompt_for_password()
    if password is None:
        raise SystemExit("Failed to set password after three attempts.")
    return password


def main() -> int:
    args = parse_args()
    password = None if args.no_password else _read_password()

    config_path = Path(args.config_path).expanduser() if args.config_path else None
    settings = load_settings(config_path)
    database = build_database(settings)

    try:
        user = database.create_user(args.name, args.email, password)
    except ValueError as exc:  # duplicates, etc.
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created user #{user.id}: {user.name} <{user.email}>")
    if password is None:
        print("The account has no password; password checks for it will always fail.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
