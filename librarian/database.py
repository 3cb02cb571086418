import os
import sqlite3
import tempfile

from config import settings

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override, read through settings)
# 2) per-process temp file
DATABASE_FILE = settings.database_file or os.path.join(tempfile.gettempdir(), f"library_desk_{os.getpid()}.db")


def get_db_connection(db_file: str | None = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database with row access by column name."""
    conn = sqlite3.connect(db_file or DATABASE_FILE)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    return conn


def create_tables(db_file: str | None = None) -> None:
    """Create the record table if it does not exist yet.

    Every document lives in one table keyed by (path, id); ``seq`` keeps the
    insertion order so collection reads come back in fetch order.
    """
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS records (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                path TEXT NOT NULL,
                id TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP,
                UNIQUE (path, id)
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_records_path ON records(path)")
        conn.commit()
    finally:
        conn.close()


def initialize_database(db_file: str | None = None) -> None:
    """Initialize the database, creating tables when needed."""
    create_tables(db_file)
