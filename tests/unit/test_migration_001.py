"""
Unit tests for migration 001 - unique (company, tool) records

Tests verify that:
1. Duplicate rows for the same normalized company and tool are merged
2. The merged row keeps the earliest first_identified_at
3. Evidence comes from the most recently confirmed row
4. The unique index is created and enforced
5. The migration is idempotent
"""

import importlib.util
import sqlite3
from pathlib import Path

import pytest

# Import with renaming to avoid syntax issues with numeric prefix
migration_path = (
    Path(__file__).parent.parent.parent / "stacksignal" / "migrations" / "001_unique_company_tool.py"
)
spec = importlib.util.spec_from_file_location("migration_001", migration_path)
if spec is None or spec.loader is None:
    raise ImportError(f"Could not load migration from {migration_path}")
migration = importlib.util.module_from_spec(spec)
spec.loader.exec_module(migration)


LEGACY_SCHEMA = """
    CREATE TABLE identified_companies (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        company_name TEXT NOT NULL,
        tool_detected TEXT NOT NULL,
        signal_type TEXT NOT NULL DEFAULT 'none',
        evidence TEXT,
        source_job_title TEXT,
        source_job_url TEXT,
        platform TEXT,
        first_identified_at TEXT NOT NULL,
        last_confirmed_at TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
"""


def insert_legacy(conn, company, tool, first_seen, last_seen, evidence):
    conn.execute(
        """
        INSERT INTO identified_companies (
            company_name, tool_detected, signal_type, evidence, source_job_title,
            source_job_url, platform, first_identified_at, last_confirmed_at,
            created_at, updated_at
        ) VALUES (?, ?, 'required', ?, 'SDR', ?, 'linkedin', ?, ?, ?, ?)
    """,
        (company, tool, evidence, f"https://example.com/{evidence}", first_seen, last_seen,
         first_seen, last_seen),
    )


class TestMigration001UniqueCompanyTool:
    """Test unique company+tool migration (#001)"""

    @pytest.fixture
    def legacy_db(self, tmp_path):
        """Registry with duplicate rows, created before the unique index existed"""
        db_path = tmp_path / "legacy.db"
        conn = sqlite3.connect(db_path)
        conn.execute(LEGACY_SCHEMA)
        insert_legacy(conn, "Acme Inc", "Outreach.io", "2024-03-01T00:00:00", "2024-03-01T00:00:00", "old")
        insert_legacy(conn, "ACME INC ", "Outreach.io", "2024-01-01T00:00:00", "2024-02-01T00:00:00", "oldest")
        insert_legacy(conn, "acme inc", "Outreach.io", "2024-05-01T00:00:00", "2024-06-01T00:00:00", "newest")
        insert_legacy(conn, "Acme Inc", "SalesLoft", "2024-04-01T00:00:00", "2024-04-01T00:00:00", "sl")
        insert_legacy(conn, "Globex", "Both", "2024-01-15T00:00:00", "2024-01-15T00:00:00", "gx")
        conn.commit()
        conn.close()
        return str(db_path)

    def fetch(self, db_path, sql, params=()):
        conn = sqlite3.connect(db_path)
        conn.row_factory = sqlite3.Row
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return rows

    def test_merges_duplicates(self, legacy_db):
        assert migration.migrate(legacy_db) is True

        rows = self.fetch(
            legacy_db,
            "SELECT * FROM identified_companies WHERE normalized_name = ? AND tool_detected = ?",
            ("acme inc", "Outreach.io"),
        )
        assert len(rows) == 1
        merged = rows[0]
        assert merged["first_identified_at"] == "2024-01-01T00:00:00"
        assert merged["last_confirmed_at"] == "2024-06-01T00:00:00"
        assert merged["evidence"] == "newest"

    def test_other_pairs_untouched(self, legacy_db):
        migration.migrate(legacy_db)

        rows = self.fetch(
            legacy_db, "SELECT normalized_name, tool_detected FROM identified_companies ORDER BY id"
        )
        pairs = {(r["normalized_name"], r["tool_detected"]) for r in rows}
        assert pairs == {("acme inc", "Outreach.io"), ("acme inc", "SalesLoft"), ("globex", "Both")}

    def test_unique_index_enforced(self, legacy_db):
        migration.migrate(legacy_db)

        conn = sqlite3.connect(legacy_db)
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                """
                INSERT INTO identified_companies (
                    company_name, normalized_name, tool_detected, first_identified_at,
                    last_confirmed_at, created_at, updated_at
                ) VALUES ('Globex', 'globex', 'Both', 'x', 'x', 'x', 'x')
            """
            )
        conn.close()

    def test_idempotent(self, legacy_db):
        assert migration.migrate(legacy_db) is True
        assert migration.migrate(legacy_db) is True

        rows = self.fetch(legacy_db, "SELECT COUNT(*) AS n FROM identified_companies")
        assert rows[0]["n"] == 3

    def test_registry_works_after_migration(self, legacy_db):
        from stacksignal.api.company_registry import CompanyRegistry

        migration.migrate(legacy_db)
        registry = CompanyRegistry(legacy_db)

        assert registry.get_stats()["unique_companies"] == 2

    def test_missing_database(self, tmp_path):
        assert migration.migrate(str(tmp_path / "missing.db")) is False

    def test_missing_table(self, tmp_path):
        db_path = tmp_path / "empty.db"
        sqlite3.connect(db_path).close()

        assert migration.migrate(str(db_path)) is False
