"""
Job ingestion - fingerprint, dedup-check and store scraped jobs

Every candidate lands in the job store; only its duplicate marker and
whether it is queued for classification differ.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from stacksignal.database import JobDatabase
from stacksignal.models import JobRecord
from stacksignal.utils.job_deduplicator import JobDeduplicator
from stacksignal.utils.normalize import normalize_timestamp, utc_now_iso

logger = logging.getLogger(__name__)

# Scrapers are not consistent about field names
_FIELD_ALIASES = {
    "job_title": ("job_title", "title"),
    "job_url": ("job_url", "link", "url"),
    "scraped_at": ("scraped_at", "scraped_date"),
    "platform": ("platform", "source"),
}


def _pick(raw: dict[str, Any], field_name: str) -> Any:
    for key in _FIELD_ALIASES.get(field_name, (field_name,)):
        value = raw.get(key)
        if value not in (None, ""):
            return value
    return None


def _scraped_at(raw: dict[str, Any]) -> str:
    value = _pick(raw, "scraped_at")
    scraped_at = normalize_timestamp(value)
    if scraped_at is None:
        if value is not None:
            logger.debug(f"Unparseable scraped_at {value!r}, using ingest time")
        return utc_now_iso()
    return scraped_at


def build_job_record(raw: dict[str, Any]) -> JobRecord:
    """
    Turn a scraper's job dict into a JobRecord with its computed job_id

    Raises:
        pydantic.ValidationError: If fields have the wrong types
    """
    job = JobRecord(
        job_id="",
        company=str(_pick(raw, "company") or "").strip(),
        job_title=str(_pick(raw, "job_title") or "").strip(),
        location=_pick(raw, "location"),
        description=_pick(raw, "description"),
        job_url=_pick(raw, "job_url"),
        platform=_pick(raw, "platform"),
        search_term=_pick(raw, "search_term"),
        scraped_at=_scraped_at(raw),
    )
    # Fingerprint only once the fields are validated
    job.job_id = JobDatabase.generate_job_id(
        job.company, job.job_title, job.location, job.job_url, job.platform
    )
    return job


class JobIngestionService:
    """Runs scraped jobs through dedup into the job store"""

    def __init__(self, database: JobDatabase, deduplicator: JobDeduplicator | None = None):
        self.database = database
        self.deduplicator = deduplicator or JobDeduplicator(database)

    def ingest_job(self, raw: dict[str, Any]) -> tuple[JobRecord, str]:
        """Ingest one job. Returns the record and its duplicate status"""
        job = build_job_record(raw)
        check = self.deduplicator.check(job)
        self.database.add_job(job, check)
        return job, check.status

    def ingest_jobs(self, raw_jobs: list[dict[str, Any]]) -> dict[str, Any]:
        """
        Ingest a batch of scraped jobs

        Jobs earlier in the batch count as prior jobs for later ones.

        Returns:
            Stats dict with counts per duplicate status, queued count and errors
        """
        stats: dict[str, Any] = {
            "total": len(raw_jobs),
            "new": 0,
            "exact_duplicate": 0,
            "probable_duplicate": 0,
            "queued_for_classification": 0,
            "invalid": 0,
            "errors": [],
        }

        for index, raw in enumerate(raw_jobs):
            if not isinstance(raw, dict):
                stats["invalid"] += 1
                stats["errors"].append(f"Item {index}: expected an object")
                continue
            try:
                _job, status = self.ingest_job(raw)
            except ValidationError as e:
                stats["invalid"] += 1
                stats["errors"].append(f"Item {index}: {e.error_count()} validation errors")
                continue

            stats[status] += 1
            if status == "new":
                stats["queued_for_classification"] += 1

        logger.info(
            f"Ingested {stats['total']} jobs: {stats['new']} new, "
            f"{stats['exact_duplicate']} exact duplicates, "
            f"{stats['probable_duplicate']} probable duplicates, {stats['invalid']} invalid"
        )
        return stats


def main():
    """CLI entry point"""
    import argparse

    from stacksignal.config import PipelineConfig
    from stacksignal.logging_config import setup_logging

    parser = argparse.ArgumentParser(description="Ingest scraped jobs into the job store")
    parser.add_argument("--file", required=True, help="JSON file containing an array of job objects")
    parser.add_argument("--config", help="Path to classifier settings JSON")
    parser.add_argument("--db", help="Database path (overrides config and DATABASE_PATH)")

    args = parser.parse_args()
    setup_logging()

    try:
        config = PipelineConfig.load(args.config)
        with Path(args.file).open() as f:
            raw_jobs = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(2)

    if not isinstance(raw_jobs, list):
        logger.error(f"{args.file} must contain a JSON array")
        sys.exit(2)

    service = JobIngestionService(JobDatabase(args.db or config.database_path))
    stats = service.ingest_jobs(raw_jobs)

    print(json.dumps(stats, indent=2))


if __name__ == "__main__":
    main()
