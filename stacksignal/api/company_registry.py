"""
Company registry - identified companies and the tool each was seen using
"""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from stacksignal.database import resolve_db_path
from stacksignal.models import (
    BOTH,
    SINGULAR_TOOLS,
    ClassificationVerdict,
    CompanyRecord,
    JobRecord,
    UpsertResult,
)
from stacksignal.utils.normalize import normalize_company_name

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = (
    "signal_type",
    "evidence",
    "source_job_title",
    "source_job_url",
    "platform",
    "last_confirmed_at",
)


class CompanyRegistry:
    """Manages identified_companies, unique on (normalized_name, tool_detected)"""

    def __init__(self, db_path: str | None = None):
        self.db_path = Path(resolve_db_path(db_path))
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_schema(self):
        """Create identified_companies if it doesn't exist"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS identified_companies (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                company_name TEXT NOT NULL,
                normalized_name TEXT NOT NULL,
                tool_detected TEXT NOT NULL
                    CHECK(tool_detected IN ('Outreach.io', 'SalesLoft', 'Both')),
                signal_type TEXT NOT NULL DEFAULT 'none'
                    CHECK(signal_type IN ('required', 'preferred', 'stack_mention', 'none')),
                evidence TEXT,
                source_job_title TEXT,
                source_job_url TEXT,
                platform TEXT,
                first_identified_at TEXT NOT NULL,
                last_confirmed_at TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_identified_companies_company_tool
            ON identified_companies(normalized_name, tool_detected)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_identified_companies_first_identified
            ON identified_companies(first_identified_at)
        """)

        conn.commit()
        conn.close()

    def get_all_companies(self) -> list[CompanyRecord]:
        """Get every company+tool record, used to load the skip-cache"""
        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute("SELECT * FROM identified_companies ORDER BY normalized_name, tool_detected")
        companies = [self._row_to_record(row) for row in cursor.fetchall()]

        conn.close()
        return companies

    def get_company(self, company_name: str, tool: str) -> CompanyRecord | None:
        """Get the record for a (company, tool) pair"""
        conn = self._connect()
        try:
            row = self._select(conn, normalize_company_name(company_name), tool)
        finally:
            conn.close()
        return self._row_to_record(row) if row else None

    def get_companies_by_name(self, company_name: str) -> list[CompanyRecord]:
        """Get all records for a company, one per tool"""
        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute(
            "SELECT * FROM identified_companies WHERE normalized_name = ? ORDER BY tool_detected",
            (normalize_company_name(company_name),),
        )
        companies = [self._row_to_record(row) for row in cursor.fetchall()]

        conn.close()
        return companies

    def insert_company(self, record: CompanyRecord) -> int:
        """
        Insert a new company+tool record

        Raises:
            sqlite3.IntegrityError: If the (normalized_name, tool) pair already exists
        """
        conn = sqlite3.connect(self.db_path)
        try:
            company_id = self._insert(conn, record)
            conn.commit()
        finally:
            conn.close()
        return company_id

    def update_company(self, company_id: int, **fields) -> bool:
        """Update mutable fields on an existing record. first_identified_at is not updatable"""
        conn = sqlite3.connect(self.db_path)
        try:
            changed = self._update(conn, company_id, fields)
            conn.commit()
        finally:
            conn.close()
        return changed

    def upsert_verdict(
        self, job: JobRecord, verdict: ClassificationVerdict, now: str | None = None
    ) -> UpsertResult:
        """
        Merge a positive verdict into the registry in one transaction

        - absent (company, tool): insert
        - present: refresh evidence, source job and last_confirmed_at
        - Both verdict: fold the company's singular rows into the Both row,
          keeping the earliest first_identified_at
        - singular verdict on a company with a Both row: confirm the Both row

        Raises:
            ValueError: If the verdict is not positive
        """
        if not verdict.is_positive:
            raise ValueError("Only positive verdicts can be merged into the registry")

        now = now or datetime.now().isoformat()
        normalized = normalize_company_name(job.company)
        tool = verdict.tool_detected
        updates = {
            "signal_type": verdict.signal_type,
            "evidence": verdict.evidence,
            "source_job_title": job.job_title,
            "source_job_url": job.job_url,
            "platform": job.platform,
            "last_confirmed_at": now,
        }

        conn = self._connect()
        try:
            if tool in SINGULAR_TOOLS:
                both_row = self._select(conn, normalized, BOTH)
                if both_row:
                    self._update(conn, both_row["id"], {"last_confirmed_at": now})
                    conn.commit()
                    record = self._row_to_record(self._select(conn, normalized, BOTH))
                    logger.info(f"{job.company}: {tool} already covered by Both row")
                    return UpsertResult(action="subsumed", record=record)

            merged_rows = 0
            first_seen = now
            if tool == BOTH:
                merged_rows, earliest = self._fold_singulars(conn, normalized)
                if earliest:
                    first_seen = min(first_seen, earliest)

            existing = self._select(conn, normalized, tool)
            if existing:
                if first_seen < existing["first_identified_at"]:
                    conn.execute(
                        "UPDATE identified_companies SET first_identified_at = ? WHERE id = ?",
                        (first_seen, existing["id"]),
                    )
                self._update(conn, existing["id"], updates)
                action = "updated"
            else:
                candidate = CompanyRecord(
                    company_name=job.company.strip(),
                    normalized_name=normalized,
                    tool_detected=tool,
                    first_identified_at=first_seen,
                    **updates,
                )
                try:
                    self._insert(conn, candidate)
                    action = "inserted"
                except sqlite3.IntegrityError:
                    # Someone else inserted the pair between select and insert
                    logger.warning(
                        f"Duplicate insert for ({normalized}, {tool}), updating existing row"
                    )
                    existing = self._select(conn, normalized, tool)
                    self._update(conn, existing["id"], updates)
                    action = "updated"

            conn.commit()
            record = self._row_to_record(self._select(conn, normalized, tool))
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        return UpsertResult(action=action, record=record, merged_rows=merged_rows)

    def get_stats(self) -> dict:
        """Get registry statistics"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute("SELECT COUNT(*) FROM identified_companies")
        total = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(DISTINCT normalized_name) FROM identified_companies")
        companies = cursor.fetchone()[0]

        cursor.execute("""
            SELECT tool_detected, COUNT(*) FROM identified_companies
            GROUP BY tool_detected
        """)
        by_tool = dict(cursor.fetchall())

        conn.close()

        return {"total_records": total, "unique_companies": companies, "by_tool": by_tool}

    def _fold_singulars(self, conn: sqlite3.Connection, normalized: str) -> tuple[int, str | None]:
        """Delete singular rows for a company. Returns (rows removed, earliest first seen)"""
        cursor = conn.execute(
            f"""
            SELECT id, first_identified_at FROM identified_companies
            WHERE normalized_name = ? AND tool_detected IN ({", ".join("?" for _ in SINGULAR_TOOLS)})
        """,
            (normalized, *SINGULAR_TOOLS),
        )
        rows = cursor.fetchall()
        if not rows:
            return 0, None

        earliest = min(row["first_identified_at"] for row in rows)
        conn.executemany(
            "DELETE FROM identified_companies WHERE id = ?", [(row["id"],) for row in rows]
        )
        logger.info(f"Folded {len(rows)} singular rows for {normalized} into Both")
        return len(rows), earliest

    @staticmethod
    def _select(conn: sqlite3.Connection, normalized: str, tool: str) -> sqlite3.Row | None:
        cursor = conn.execute(
            """
            SELECT * FROM identified_companies
            WHERE normalized_name = ? AND tool_detected = ?
        """,
            (normalized, tool),
        )
        return cursor.fetchone()

    @staticmethod
    def _insert(conn: sqlite3.Connection, record: CompanyRecord) -> int:
        now = datetime.now().isoformat()
        cursor = conn.execute(
            """
            INSERT INTO identified_companies (
                company_name, normalized_name, tool_detected, signal_type, evidence,
                source_job_title, source_job_url, platform, first_identified_at,
                last_confirmed_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                record.company_name,
                record.normalized_name or normalize_company_name(record.company_name),
                record.tool_detected,
                record.signal_type,
                record.evidence,
                record.source_job_title,
                record.source_job_url,
                record.platform,
                record.first_identified_at,
                record.last_confirmed_at,
                now,
                now,
            ),
        )
        return cursor.lastrowid

    @staticmethod
    def _update(conn: sqlite3.Connection, company_id: int, fields: dict) -> bool:
        unknown = set(fields) - set(_MUTABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if not fields:
            return False

        assignments = ", ".join(f"{name} = ?" for name in fields)
        cursor = conn.execute(
            f"UPDATE identified_companies SET {assignments}, updated_at = ? WHERE id = ?",
            (*fields.values(), datetime.now().isoformat(), company_id),
        )
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> CompanyRecord:
        return CompanyRecord(
            id=row["id"],
            company_name=row["company_name"],
            normalized_name=row["normalized_name"],
            tool_detected=row["tool_detected"],
            signal_type=row["signal_type"],
            evidence=row["evidence"] or "",
            source_job_title=row["source_job_title"],
            source_job_url=row["source_job_url"],
            platform=row["platform"],
            first_identified_at=row["first_identified_at"],
            last_confirmed_at=row["last_confirmed_at"],
        )
