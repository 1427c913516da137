"""
Create any missing app tables (profiles, balances, plans, user_plans,
investments, admins). Safe to re-run.

Usage:
  python init_db.py
"""
from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

from app import app, db  # noqa: E402
from sqlalchemy import inspect  # noqa: E402


def init_database() -> set:
    """Returns the names of the tables this run created."""
    with app.app_context():
        before = set(inspect(db.engine).get_table_names())
        db.create_all()
        return set(inspect(db.engine).get_table_names()) - before


def main(argv=None) -> int:
    with app.app_context():
        target = db.engine.url.render_as_string(hide_password=True)

    created = init_database()
    if created:
        print(f"{target}: created {', '.join(sorted(created))}")
    else:
        print(f"{target}: up to date")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
