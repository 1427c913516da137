"""
Add a user id to the admin allow-list, or take it off again.

Usage:
  python tools/grant_admin.py <user_id>
  python tools/grant_admin.py --revoke <user_id>
"""
from __future__ import annotations

import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dotenv import load_dotenv  # noqa: E402
load_dotenv()

from app import app, db  # noqa: E402
from models import Admin  # noqa: E402


def main(argv=None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    revoke = "--revoke" in args
    args = [a for a in args if a != "--revoke"]

    if len(args) != 1 or not args[0].strip():
        print("Usage: python tools/grant_admin.py [--revoke] <user_id>")
        return 1

    user_id = args[0].strip()

    with app.app_context():
        row = db.session.get(Admin, user_id)
        if revoke:
            if row is None:
                print(f"Not an admin: {user_id}")
                return 0
            db.session.delete(row)
            action = "removed"
        else:
            if row is not None:
                print(f"Already an admin: {user_id}")
                return 0
            db.session.add(Admin(user_id=user_id))
            action = "added"

        db.session.commit()
        print(f"Admin {action}: {user_id}")
        print("Admin console: /admin")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
