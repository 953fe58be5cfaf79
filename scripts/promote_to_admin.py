#!/usr/bin/env python3
"""Attach the admin role to an existing user (idempotent).

Usage:
  python scripts/promote_to_admin.py --email ops@remonta.com.au
"""

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.remonta.models import Role, User
from scripts._db_utils import script_session


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--email", required=True, help="User email to promote")
    args = parser.parse_args()

    db_url = (os.environ.get("DATABASE_URL") or "sqlite:///remonta.db").strip()
    with script_session(db_url) as s:
        user = s.query(User).filter(User.email == args.email.strip().lower()).one_or_none()
        if not user:
            print(f"User not found: {args.email}")
            return
        role = s.query(Role).filter(Role.key == "admin").one_or_none()
        if not role:
            print("Admin role not found. Run python scripts/init_db.py first.")
            return
        if role in (user.roles or []):
            print(f"User already has admin role: {args.email}")
            return
        user.roles.append(role)
    print(f"Admin role attached to {args.email}")


if __name__ == "__main__":
    main()
