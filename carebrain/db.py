"""
Centralized Database Access for CareBrain.

Single source of truth for:
- DB path resolution
- Connection factory
- Transaction boundaries

ALL code must use this module for DB access. No direct sqlite3.connect() elsewhere.

Every public core operation is one transactional round trip: open a
connection, run one transaction, close. Connections run in autocommit mode
(isolation_level=None) so transaction boundaries are always explicit.
"""

import logging
import re
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from carebrain import config, paths
from carebrain.deadline import Deadline

logger = logging.getLogger(__name__)

# ============================================================
# SQL IDENTIFIER VALIDATION
# ============================================================

_SAFE_IDENTIFIER_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def validate_identifier(name: str) -> str:
    """Validate that *name* is a safe SQL identifier (table or column name).

    Returns the name unchanged if valid; raises ``ValueError`` otherwise.
    """
    if not _SAFE_IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return name


# ============================================================
# DB PATH RESOLUTION
# ============================================================


def get_db_path() -> Path:
    """
    Get the canonical DB path.

    Resolution order:
    1. CAREBRAIN_DB env var (explicit override)
    2. ~/.carebrain/data/carebrain.db (default via paths.db_path())
    """
    return paths.db_path()


# ============================================================
# CONNECTION FACTORY
# ============================================================


def connect(db_path: Path | str | None = None, deadline: Deadline | None = None) -> sqlite3.Connection:
    """Open a connection with row access by name and FK enforcement."""
    path = Path(db_path) if db_path else get_db_path()
    timeout = config.SQLITE_TIMEOUT_SECONDS
    if deadline is not None:
        timeout = deadline.sqlite_timeout(timeout)

    conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def get_connection(
    db_path: Path | str | None = None,
    deadline: Deadline | None = None,
) -> Generator[sqlite3.Connection, None, None]:
    """
    Get a database connection that is closed on exit.

    Usage:
        with get_connection(db_path) as conn:
            conn.execute(...)
    """
    conn = connect(db_path, deadline)
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection, immediate: bool = True) -> Generator[sqlite3.Connection, None, None]:
    """
    Run a block inside one transaction; roll back on any exception.

    BEGIN IMMEDIATE takes the write lock up front, so a read-check followed
    by a write inside the block cannot interleave with another writer.
    """
    conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
    try:
        yield conn
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    conn.execute("COMMIT")


# ============================================================
# SCHEMA INTROSPECTION
# ============================================================


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    """Check if a table exists."""
    cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,))
    return cursor.fetchone() is not None


def get_table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    """Get existing column names for a table."""
    validate_identifier(table)
    cursor = conn.execute(f"PRAGMA table_info({table})")
    return {row[1] for row in cursor.fetchall()}
