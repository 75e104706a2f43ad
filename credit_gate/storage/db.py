"""
SQLite connections for the credit gate.

Concurrent requests for one account are serialised by SQLite's write lock.
`immediate_transaction` takes that lock when the transaction starts, so a
conditional balance update never interleaves with a competing writer.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

DEFAULT_DB_PATH = "credit_gate.db"
BUSY_TIMEOUT_SECONDS = 5.0


def get_connection(
    db_path: str = DEFAULT_DB_PATH, timeout: float = BUSY_TIMEOUT_SECONDS
) -> sqlite3.Connection:
    """Open a connection with foreign keys on.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds a writer waits for a competing lock before failing
    """
    conn = sqlite3.connect(str(Path(db_path)), timeout=timeout)
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def immediate_transaction(db_path: str = DEFAULT_DB_PATH) -> Iterator[sqlite3.Connection]:
    """Run a block inside BEGIN IMMEDIATE on a fresh connection.

    Commits when the block exits normally and rolls back when it raises.
    A block that decides not to write calls `conn.rollback()` and returns.
    """
    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()
