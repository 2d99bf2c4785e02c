"""Utility script to wipe the local key-value table.

Usage:
    python scripts/reset_local_db.py

Environment:
    Ensure DATABASE_URL (and other required settings) are available in
    the current shell before running this script. Card mappings, routing
    rules and the active error registry are all removed.
"""

from __future__ import annotations

from slack_bugsnag_bridge.db import Base, get_engine
from slack_bugsnag_bridge.models import KVEntry


def reset_database() -> None:
    engine = get_engine()
    Base.metadata.drop_all(engine, tables=[KVEntry.__table__])
    Base.metadata.create_all(engine)
    print("Local key-value store reset.")


if __name__ == "__main__":
    reset_database()
