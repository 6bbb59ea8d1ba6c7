"""
Database migrations for KnowledgeMCP.

Handles schema objects that the ORM metadata cannot express (FTS5 index,
triggers) and schema updates for existing databases.
"""

import sqlite3
import logging
from pathlib import Path
from typing import List, Tuple

logger = logging.getLogger(__name__)

# Migration definitions: (version, description, sql_statements)
MIGRATIONS: List[Tuple[int, str, List[str]]] = [
    (1, "Create FTS5 virtual table for full-text search", [
        """
        CREATE VIRTUAL TABLE IF NOT EXISTS knowledge_fts USING fts5(
            body,
            tags,
            content='knowledge',
            tokenize='porter unicode61'
        );
        """,
        "INSERT INTO knowledge_fts(knowledge_fts) VALUES('rebuild');",
        """
        CREATE TRIGGER IF NOT EXISTS knowledge_fts_ai AFTER INSERT ON knowledge BEGIN
            INSERT INTO knowledge_fts(rowid, body, tags)
            VALUES (new.rowid, new.body, COALESCE(new.tags, ''));
        END;
        """,
        """
        CREATE TRIGGER IF NOT EXISTS knowledge_fts_ad AFTER DELETE ON knowledge BEGIN
            INSERT INTO knowledge_fts(knowledge_fts, rowid, body, tags)
            VALUES ('delete', old.rowid, old.body, COALESCE(old.tags, ''));
        END;
        """,
        """
        CREATE TRIGGER IF NOT EXISTS knowledge_fts_au AFTER UPDATE OF body, tags ON knowledge BEGIN
            INSERT INTO knowledge_fts(knowledge_fts, rowid, body, tags)
            VALUES ('delete', old.rowid, old.body, COALESCE(old.tags, ''));
            INSERT INTO knowledge_fts(rowid, body, tags)
            VALUES (new.rowid, new.body, COALESCE(new.tags, ''));
        END;
        """
    ]),
    (2, "Index checkpoints by workspace and session", [
        """
        CREATE INDEX IF NOT EXISTS idx_knowledge_session
        ON knowledge(workspace, session_id, sequence_number);
        """
    ]),
]


def get_current_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from database."""
    cursor = conn.cursor()

    cursor.execute("""
        SELECT name FROM sqlite_master
        WHERE type='table' AND name='schema_version'
    """)

    if not cursor.fetchone():
        cursor.execute("""
            CREATE TABLE schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()
        return 0

    cursor.execute("SELECT MAX(version) FROM schema_version")
    result = cursor.fetchone()
    return result[0] if result[0] else 0


def run_migrations(db_path: str) -> Tuple[int, List[str]]:
    """
    Run all pending migrations on the database.

    A migration that fails (e.g. SQLite built without FTS5) is rolled back and
    stops the run; searches then use substring matching.

    Args:
        db_path: Path to the SQLite database

    Returns:
        Tuple of (migrations_run, list of descriptions)
    """
    if not Path(db_path).exists():
        return 0, []

    conn = sqlite3.connect(db_path)
    applied = []

    try:
        current_version = get_current_version(conn)

        for version, description, statements in MIGRATIONS:
            if version <= current_version:
                continue

            logger.info(f"Applying migration {version}: {description}")

            try:
                conn.execute("BEGIN")
                for sql in statements:
                    sql = sql.strip()
                    if sql:
                        conn.execute(sql)

                conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)",
                    (version,)
                )
                conn.commit()
                applied.append(f"v{version}: {description}")
            except sqlite3.Error as e:
                conn.rollback()
                logger.warning(f"Migration {version} failed ({description}): {e}")
                break

    finally:
        conn.close()

    return len(applied), applied
