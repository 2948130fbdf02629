#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

APP_DIR = Path(__file__).resolve().parent.parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

ROLES = ["Student", "Staff", "Security", "IT", "Admin"]


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Create/update one lending user and optionally print a session token.",
    )
    parser.add_argument("--username", required=True, help="Login name (stored lower-case)")
    parser.add_argument("--full-name", default=None, help="Required when creating a user")
    parser.add_argument("--email", default=None, help="Required when creating a user")
    parser.add_argument("--role", choices=ROLES, default=None, help="Role; new users default to Student")
    parser.add_argument("--student-number", default=None, help="Card number used by the gate check")
    parser.add_argument("--issue-token", action="store_true", help="Print a signed X-Session-Token for the user")
    parser.add_argument(
        "--db-url",
        default=os.environ.get("LENDING_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to LENDING_DB_URL env var.",
    )
    parser.add_argument("--create-tables", action="store_true", help="Create missing tables first")
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if not args.db_url:
        parser.error("Missing DB URL. Set LENDING_DB_URL or pass --db-url.")
    os.environ["LENDING_DB_URL"] = args.db_url

    from db.base import Base
    from db.session import SessionLocalLending, engine_lending
    from services.errors import LendingError
    from services.user_service import upsert_user

    if args.create_tables:
        Base.metadata.create_all(bind=engine_lending)

    db = SessionLocalLending()
    try:
        user = upsert_user(
            db,
            username=args.username,
            full_name=args.full_name,
            email=args.email,
            role=args.role,
            student_number=args.student_number,
        )
    except LendingError as exc:
        print(f"ERROR {exc.code}: {exc.detail}")
        return 1
    finally:
        db.close()

    print(
        f"OK user_id={user.UserID} username={user.Username} role={user.Role} "
        f"score={user.ResponsibilityScore} student_number={user.StudentNumber or '-'}"
    )
    if args.issue_token:
        from services.user_access_service import create_session

        print(create_session(user.UserID, user.Role))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
