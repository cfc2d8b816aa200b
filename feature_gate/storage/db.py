"""
Database connection management.

Opens SQLite connections for the flag store. Overrides and kill switches
reference flags by key, so foreign keys are always enforced.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "feature_gate.db"
DB_PATH_ENV_VAR = "FEATURE_GATE_DB"
BUSY_TIMEOUT_SECONDS = 5.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection to the flag database, creating its directory if needed.

    Args:
        db_path: Path to SQLite database file

    Returns:
        Connection with foreign keys on; concurrent writers wait up to
        BUSY_TIMEOUT_SECONDS for the lock
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
