# src/signalhub/scripts/tokens.py
"""Development helper for seeding users and minting event-channel tokens.

Usage:
    python -m signalhub.scripts.tokens create-user alice --display-name Alice
    python -m signalhub.scripts.tokens issue 1
"""

from __future__ import annotations

import argparse
import sys

from sqlalchemy import select
from sqlalchemy.orm import Session

from signalhub.core.security import create_access_token
from signalhub.db.session import SessionLocal
from signalhub.db.time import utcnow
from signalhub.models import User


def create_user(db: Session, username: str, display_name: str | None = None) -> User:
    """Return the user named ``username``, creating it when missing."""
    user = db.execute(select(User).where(User.username == username)).scalar_one_or_none()
    if user is not None:
        return user
    user = User(username=username, display_name=display_name, created_at=utcnow())
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def issue_token(db: Session, user_id: int) -> str:
    if db.get(User, user_id) is None:
        raise LookupError(f"user {user_id} does not exist")
    return create_access_token(user_id)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Seed users and issue access tokens")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-user", help="Create a user and print its id and token")
    create.add_argument("username")
    create.add_argument("--display-name", default=None)

    issue = sub.add_parser("issue", help="Print an access token for an existing user")
    issue.add_argument("user_id", type=int)

    args = parser.parse_args(argv)

    with SessionLocal() as db:
        if args.command == "create-user":
            user = create_user(db, args.username, args.display_name)
            print(f"user_id={user.id}")
            print(create_access_token(user.id))
            return 0
        try:
            print(issue_token(db, args.user_id))
        except LookupError as exc:
            print(f"[tokens] ERROR: {exc}", file=sys.stderr)
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
