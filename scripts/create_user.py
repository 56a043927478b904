import argparse
import getpass
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from memberportal.database import Database, resolve_database_path
from memberportal.models import PASSWORD_ROLES, Role


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a member portal user")
    parser.add_argument("email", help="Unique email address for login")
    parser.add_argument(
        "--role",
        default=Role.GUEST.value,
        choices=[role.value for role in Role],
        help="Portal role for the account (default: guest)",
    )
    parser.add_argument("--name", default=None, help="Display name for the user")
    parser.add_argument(
        "--password",
        action="store_true",
        help="Prompt for a password so the account can use the administrator login form",
    )
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to PORTAL_DB_PATH or data/portal.sqlite3)",
    )
    return parser.parse_args()


def prompt_for_password() -> str:
    for _ in range(3):
        password = getpass.getpass("Password: ")
        confirm = getpass.getpass("Confirm password: ")
        if password != confirm:
            print("Passwords do not match. Try again.", file=sys.stderr)
            continue
        if len(password) < 12:
            print("Password must be at least 12 characters long.", file=sys.stderr)
            continue
        return password
    raise SystemExit("Failed to set password after three attempts.")


def main() -> int:
    args = parse_args()
    password = None
    if args.password:
        if args.role not in PASSWORD_ROLES:
            print("Only admin and moderator accounts may sign in with a password.", file=sys.stderr)
            return 1
        password = prompt_for_password()

    db_env = args.db_path or os.getenv("PORTAL_DB_PATH")
    db_path = resolve_database_path(db_env)

    database = Database(db_path)
    database.initialize()

    try:
        user = database.create_user(
            args.email.strip().lower(),
            role=args.role,
            name=args.name.strip() if args.name else None,
            password=password,
        )
    except ValueError as exc:  # duplicates, etc.
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(f"Created {user.role} user {user.id} <{user.email}>")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
