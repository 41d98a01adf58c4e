"""
Database connection management.

Provides the SQLite connection backing the key/value store.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "image_relay.db"


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection.
    
    Autocommit mode is used so callers control transactions explicitly
    with BEGIN IMMEDIATE when a read-modify-write must be serialized.
    
    Args:
        db_path: Path to SQLite database file
        
    Returns:
        SQLite connection in autocommit mode
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=30.0, isolation_level=None)
    conn.execute("PRAGMA busy_timeout = 30000")
    return conn


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the key/value table if it doesn't exist.
    
    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS kv_store (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
    finally:
        conn.close()
