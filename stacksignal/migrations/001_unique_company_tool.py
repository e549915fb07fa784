"""
Database migration: enforce one identified_companies row per (company, tool)

Registries created before the unique index can hold several rows for the
same normalized company name and tool. This migration:
1. backfills normalized_name (lower-cased, trimmed company_name)
2. merges duplicate rows, keeping the earliest first_identified_at and the
   latest last_confirmed_at (with that row's evidence and source job)
3. creates the unique index on (normalized_name, tool_detected)

Migration #001 - Unique company+tool records
"""

import os
import sqlite3
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from stacksignal.utils.normalize import normalize_company_name  # noqa: E402


def _merge_group(cursor: sqlite3.Cursor, rows: list[sqlite3.Row]) -> int:
    """Collapse rows for one key into the oldest row. Returns rows deleted"""
    keeper = min(rows, key=lambda r: (r["first_identified_at"] or "", r["id"]))
    latest = max(rows, key=lambda r: (r["last_confirmed_at"] or "", r["id"]))

    cursor.execute(
        """
        UPDATE identified_companies
        SET signal_type = ?, evidence = ?, source_job_title = ?, source_job_url = ?,
            platform = ?, last_confirmed_at = ?
        WHERE id = ?
    """,
        (
            latest["signal_type"],
            latest["evidence"],
            latest["source_job_title"],
            latest["source_job_url"],
            latest["platform"],
            latest["last_confirmed_at"],
            keeper["id"],
        ),
    )

    doomed = [(row["id"],) for row in rows if row["id"] != keeper["id"]]
    cursor.executemany("DELETE FROM identified_companies WHERE id = ?", doomed)
    return len(doomed)


def migrate(db_path: str = "data/stacksignal.db") -> bool:
    """
    Deduplicate identified_companies and add the unique (company, tool) index

    Returns:
        True if migration successful, False otherwise
    """
    db_file = Path(db_path)
    if not db_file.exists():
        print(f"Database not found: {db_path}")
        return False

    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    cursor = conn.cursor()

    try:
        cursor.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'identified_companies'"
        )
        if cursor.fetchone() is None:
            print("identified_companies table not found, nothing to migrate")
            return False

        cursor.execute("PRAGMA table_info(identified_companies)")
        columns = [col[1] for col in cursor.fetchall()]
        if "normalized_name" not in columns:
            cursor.execute("ALTER TABLE identified_companies ADD COLUMN normalized_name TEXT")
            print("Added normalized_name column to identified_companies")

        # Python lower() rather than SQLite lower(), which is ASCII-only
        cursor.execute("SELECT id, company_name FROM identified_companies")
        cursor.executemany(
            "UPDATE identified_companies SET normalized_name = ? WHERE id = ?",
            [(normalize_company_name(row["company_name"]), row["id"]) for row in cursor.fetchall()],
        )

        cursor.execute("SELECT * FROM identified_companies ORDER BY id")
        groups: dict[tuple[str, str], list[sqlite3.Row]] = {}
        for row in cursor.fetchall():
            groups.setdefault((row["normalized_name"], row["tool_detected"]), []).append(row)

        removed = 0
        for rows in groups.values():
            if len(rows) > 1:
                removed += _merge_group(cursor, rows)
        print(f"Merged duplicates: {removed} rows removed")

        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_identified_companies_company_tool
            ON identified_companies(normalized_name, tool_detected)
        """)

        conn.commit()
        print("Migration successful: unique (company, tool) index created")
        return True

    except sqlite3.Error as e:
        print(f"Migration failed: {e}")
        conn.rollback()
        return False

    finally:
        conn.close()


if __name__ == "__main__":
    db_path = os.getenv("DATABASE_PATH", "data/stacksignal.db")
    success = migrate(db_path)
    sys.exit(0 if success else 1)
