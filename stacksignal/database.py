"""
Job store - scraped postings, dedup markers and processing state
"""

import hashlib
import logging
import os
import re
import sqlite3
from datetime import datetime
from pathlib import Path

from stacksignal.models import DuplicateCheck, JobRecord
from stacksignal.utils.normalize import normalize_company_name, normalize_title

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "data/stacksignal.db"

_JOB_COLUMNS = (
    "job_id",
    "company",
    "job_title",
    "location",
    "description",
    "job_url",
    "platform",
    "search_term",
    "scraped_at",
    "duplicate_status",
    "duplicate_of",
    "duplicate_confidence",
    "seen_count",
    "processed",
    "processed_at",
    "last_error",
    "skip_reason",
    "tool_detected",
)


def resolve_db_path(db_path: str | None = None) -> str:
    """Explicit path wins, then DATABASE_PATH, then the default data/ location"""
    return db_path or os.getenv("DATABASE_PATH") or DEFAULT_DB_PATH


class JobDatabase:
    """Manages the SQLite job store"""

    def __init__(self, db_path: str | None = None):
        self.db_path = Path(resolve_db_path(db_path))
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.init_database()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def init_database(self):
        """Create database schema if it doesn't exist"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                job_id TEXT PRIMARY KEY,
                company TEXT NOT NULL DEFAULT '',
                job_title TEXT NOT NULL DEFAULT '',
                location TEXT,
                description TEXT,
                job_url TEXT,
                platform TEXT,
                search_term TEXT,
                scraped_at TEXT NOT NULL,
                normalized_company TEXT NOT NULL DEFAULT '',
                normalized_title TEXT NOT NULL DEFAULT '',
                duplicate_status TEXT NOT NULL DEFAULT 'new'
                    CHECK(duplicate_status IN ('new', 'exact_duplicate', 'probable_duplicate')),
                duplicate_of TEXT,
                duplicate_confidence INTEGER NOT NULL DEFAULT 0,
                seen_count INTEGER NOT NULL DEFAULT 1,
                last_seen_at TEXT,
                processed INTEGER NOT NULL DEFAULT 0,
                processed_at TEXT,
                last_error TEXT,
                skip_reason TEXT,
                tool_detected TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # Worker queue: unprocessed jobs, oldest first
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_processed_scraped
            ON jobs(processed, scraped_at)
        """)

        # Fuzzy dedup lookups
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_company_title
            ON jobs(normalized_company, normalized_title)
        """)

        conn.commit()
        conn.close()

    @staticmethod
    def generate_job_id(
        company: str,
        title: str,
        location: str | None = None,
        link: str | None = None,
        platform: str | None = None,
    ) -> str:
        """Generate the stable fingerprint used as job_id"""
        normalized_link = (link or "").strip()
        link_lower = normalized_link.lower()
        if "linkedin.com" in link_lower and "/jobs/view/" in link_lower:
            # Ignore LinkedIn tracking parameters and /comm/ variants
            match = re.search(r"/jobs/view/(\d+)", normalized_link, re.IGNORECASE)
            if match:
                normalized_link = f"linkedin.com/jobs/view/{match.group(1)}"

        parts = [
            (platform or "").strip().lower(),
            normalize_company_name(company),
            normalize_title(title),
            (location or "").strip().lower(),
            normalized_link.lower(),
        ]
        return hashlib.sha256("|".join(parts).encode()).hexdigest()

    def job_exists(self, job_id: str) -> bool:
        """Check if job already exists in database"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute("SELECT COUNT(*) FROM jobs WHERE job_id = ?", (job_id,))
        count = cursor.fetchone()[0]

        conn.close()
        return count > 0

    def find_by_company_title(self, company: str, title: str) -> dict | None:
        """
        Find the earliest stored job with the same normalized company and title

        Returns None when either field normalizes to empty.
        """
        norm_company = normalize_company_name(company)
        norm_title = normalize_title(title)
        if not norm_company or not norm_title:
            return None

        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute(
            """
            SELECT * FROM jobs
            WHERE normalized_company = ? AND normalized_title = ?
            ORDER BY scraped_at ASC, created_at ASC
            LIMIT 1
        """,
            (norm_company, norm_title),
        )

        row = cursor.fetchone()
        conn.close()
        return dict(row) if row else None

    def add_job(self, job: JobRecord, check: DuplicateCheck) -> bool:
        """
        Store a candidate job with its dedup verdict

        New jobs are queued for classification. Probable duplicates are stored
        already processed so the worker never picks them up. An exact
        duplicate is the existing row; it is touched instead of inserted.

        Returns:
            True if a row was inserted, False if an existing row was touched
        """
        now = datetime.now().isoformat()

        if check.status == "exact_duplicate":
            self.touch_job(job.job_id, seen_at=now)
            return False

        is_new = check.status == "new"

        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        try:
            cursor.execute(
                """
                INSERT INTO jobs (
                    job_id, company, job_title, location, description, job_url,
                    platform, search_term, scraped_at, normalized_company,
                    normalized_title, duplicate_status, duplicate_of,
                    duplicate_confidence, seen_count, last_seen_at, processed,
                    processed_at, skip_reason, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    job.job_id,
                    job.company or "",
                    job.job_title or "",
                    job.location,
                    job.description,
                    job.job_url,
                    job.platform,
                    job.search_term,
                    job.scraped_at,
                    normalize_company_name(job.company),
                    normalize_title(job.job_title),
                    check.status,
                    check.matched_job_id,
                    check.confidence,
                    1,
                    now,
                    0 if is_new else 1,
                    None if is_new else now,
                    None if is_new else "probable_duplicate",
                    now,
                    now,
                ),
            )
            conn.commit()
        except sqlite3.IntegrityError:
            # Lost a race with another ingest of the same posting
            logger.warning(f"Job {job.job_id[:12]} inserted concurrently, touching existing row")
            conn.rollback()
            cursor.close()
            conn.close()
            self.touch_job(job.job_id, seen_at=now)
            return False

        conn.close()
        return True

    def touch_job(self, job_id: str, seen_at: str | None = None):
        """Record another sighting of an already-stored job"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        now = seen_at or datetime.now().isoformat()

        cursor.execute(
            """
            UPDATE jobs
            SET seen_count = seen_count + 1, last_seen_at = ?, updated_at = ?
            WHERE job_id = ?
        """,
            (now, now, job_id),
        )

        conn.commit()
        conn.close()

    def get_job(self, job_id: str) -> JobRecord | None:
        """Get a single job by job_id"""
        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,))
        row = cursor.fetchone()

        conn.close()
        return self._row_to_record(row) if row else None

    def get_unprocessed_jobs(self, limit: int = 10) -> list[JobRecord]:
        """Get the oldest unprocessed jobs, FIFO by scrape time"""
        conn = self._connect()
        cursor = conn.cursor()

        cursor.execute(
            """
            SELECT * FROM jobs
            WHERE processed = 0
            ORDER BY scraped_at ASC, created_at ASC
            LIMIT ?
        """,
            (limit,),
        )

        jobs = [self._row_to_record(row) for row in cursor.fetchall()]

        conn.close()
        return jobs

    def mark_processed(
        self,
        job_id: str,
        tool_detected: str | None = None,
        error: str | None = None,
        skip_reason: str | None = None,
    ) -> bool:
        """
        Mark a job processed, exactly once

        The update only applies while processed = 0, so a second call for the
        same job is a no-op.

        Returns:
            True if this call transitioned the job, False if it was already processed
        """
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        now = datetime.now().isoformat()

        cursor.execute(
            """
            UPDATE jobs
            SET processed = 1, processed_at = ?, tool_detected = ?, last_error = ?,
                skip_reason = ?, updated_at = ?
            WHERE job_id = ? AND processed = 0
        """,
            (now, tool_detected, error, skip_reason, now, job_id),
        )
        changed = cursor.rowcount > 0

        conn.commit()
        conn.close()
        return changed

    def get_stats(self) -> dict:
        """Get database statistics"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()

        cursor.execute("SELECT COUNT(*) FROM jobs")
        total_jobs = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM jobs WHERE processed = 0")
        pending = cursor.fetchone()[0]

        cursor.execute("SELECT COUNT(*) FROM jobs WHERE last_error IS NOT NULL")
        errored = cursor.fetchone()[0]

        cursor.execute("""
            SELECT duplicate_status, COUNT(*) FROM jobs
            GROUP BY duplicate_status
        """)
        by_duplicate_status = dict(cursor.fetchall())

        cursor.execute("""
            SELECT skip_reason, COUNT(*) FROM jobs
            WHERE skip_reason IS NOT NULL
            GROUP BY skip_reason
        """)
        by_skip_reason = dict(cursor.fetchall())

        conn.close()

        return {
            "total_jobs": total_jobs,
            "pending_jobs": pending,
            "processed_jobs": total_jobs - pending,
            "errored_jobs": errored,
            "by_duplicate_status": by_duplicate_status,
            "by_skip_reason": by_skip_reason,
        }

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> JobRecord:
        data = {key: row[key] for key in _JOB_COLUMNS}
        data["processed"] = bool(data["processed"])
        return JobRecord(**data)
