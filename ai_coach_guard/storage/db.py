"""
Database connection management.

Provides SQLite connections shared by the user, plan, error and
rate-limit tables.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_coach_guard.db"

# Seconds a writer waits on a locked database before giving up
BUSY_TIMEOUT_SECONDS = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite database connection with foreign keys enabled.

    Each call returns a fresh connection, so callers on different threads
    never share one.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
