#!/usr/bin/env python3
"""Create the ChatDesk schema and, optionally, an administrator account."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from chatdesk import auth  # noqa: E402
from chatdesk.db import DatabaseSettings, create_engine_from_settings, get_database_settings  # noqa: E402
from chatdesk.errors import ValidationFailure  # noqa: E402
from chatdesk.storage import ChatStore  # noqa: E402

DEFAULT_ADMIN = {
    "username": "admin",
    "password": "Admin123!",
}

ADMIN_ENV_VARS = ("CHATDESK_ADMIN_USERNAME", "CHATDESK_ADMIN_PASSWORD")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the ChatDesk database schema and a default administrator.",
    )
    parser.add_argument(
        "--database-url",
        "-d",
        default=None,
        help="SQLAlchemy URL of the database (default: from CHATDESK_DATABASE_URL / CHATDESK_DB_PATH)",
    )
    parser.add_argument(
        "--skip-admin",
        action="store_true",
        help="Do not create the administrator account.",
    )
    parser.add_argument("--admin-username", help="Override the administrator username")
    parser.add_argument("--admin-password", help="Override the administrator password")
    return parser.parse_args(argv)


def seed_admin(store: ChatStore, args: argparse.Namespace) -> List[str]:
    username = args.admin_username or os.getenv(ADMIN_ENV_VARS[0]) or DEFAULT_ADMIN["username"]
    password = args.admin_password or os.getenv(ADMIN_ENV_VARS[1]) or DEFAULT_ADMIN["password"]
    if store.get_user_by_username(username) is not None:
        return []
    auth.register_user(store, username, password, is_admin=True)
    return [username]


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    db_settings = DatabaseSettings(url=args.database_url) if args.database_url else get_database_settings()
    store = ChatStore(create_engine_from_settings(db_settings))
    store.create_schema()
    print(f"Database initialised at {db_settings.url}")

    if args.skip_admin:
        print("Administrator seeding skipped.")
        return 0
    try:
        created = seed_admin(store, args)
    except ValidationFailure as exc:
        print(f"Could not create administrator: {exc.message}", file=sys.stderr)
        return 1
    if created:
        print("Created administrator account (update credentials before production use):")
        for username in created:
            print(f"  - {username}")
    else:
        print("Administrator account already exists.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
