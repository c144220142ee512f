"""
Database connection management.

Opens the SQLite file that holds the accounting ledger.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "consensus_billing.db"

# Seconds a writer waits on a locked database before failing
BUSY_TIMEOUT = 30


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open a connection to the accounting database.

    Concurrent writers from other threads or processes are waited on for
    up to ``BUSY_TIMEOUT`` seconds.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    if path.parent != Path("."):
        path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path), timeout=BUSY_TIMEOUT)
