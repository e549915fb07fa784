"""
Job Deduplicator - decide whether a scraped job was already seen

Two strategies, checked in order:
    1. Exact: same job_id (fingerprint of platform, company, title, location, url)
    2. Fuzzy: same normalized (company, title) under a different job_id

Only "new" jobs are eligible for classification. Probable duplicates are
still stored, but never queued, so the same employer/role pair is not
classified twice because it was reposted under another listing ID.
"""

import logging

from stacksignal.database import JobDatabase
from stacksignal.models import DuplicateCheck, JobRecord
from stacksignal.utils.normalize import normalize_company_name, normalize_title

logger = logging.getLogger(__name__)

EXACT_MATCH_CONFIDENCE = 100
FUZZY_MATCH_CONFIDENCE = 85


class JobDeduplicator:
    """Exact and company+title duplicate detection against the job store"""

    def __init__(self, database: JobDatabase):
        self.database = database

    def check(self, job: JobRecord) -> DuplicateCheck:
        """
        Compute the duplicate verdict for a candidate job

        Args:
            job: Candidate job with its job_id already computed

        Returns:
            DuplicateCheck with status, confidence and the matched job_id
        """
        if self.database.job_exists(job.job_id):
            logger.debug(f"Exact duplicate: {job.company} - {job.job_title}")
            return DuplicateCheck(
                status="exact_duplicate",
                confidence=EXACT_MATCH_CONFIDENCE,
                matched_job_id=job.job_id,
            )

        # Fuzzy check needs both halves of the key
        if not normalize_company_name(job.company) or not normalize_title(job.job_title):
            return DuplicateCheck(status="new")

        prior = self.database.find_by_company_title(job.company, job.job_title)
        if prior and prior["job_id"] != job.job_id:
            logger.debug(
                f"Probable duplicate: {job.company} - {job.job_title} "
                f"(matches {prior['job_id'][:12]})"
            )
            return DuplicateCheck(
                status="probable_duplicate",
                confidence=FUZZY_MATCH_CONFIDENCE,
                matched_job_id=prior["job_id"],
            )

        return DuplicateCheck(status="new")
