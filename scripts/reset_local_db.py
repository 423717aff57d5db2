"""Utility script to reset the local security relay database.

Usage:
    python scripts/reset_local_db.py

Environment:
    Ensure DATABASE_URL (and the other required settings) are available in
    the current shell before running this script. Every table is dropped,
    including the request ledger.
"""

from __future__ import annotations

from security_relay.db import Base, get_engine, init_database


def reset_database() -> None:
    engine = get_engine()
    init_database()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    print("Local security relay database reset.")


if __name__ == "__main__":
    reset_database()
