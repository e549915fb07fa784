"""
Classification worker - drain unprocessed jobs through the classifier

Job store → skip-cache → classifier (timeout + retry) → verdict → registry → mark processed

One sequential loop per process. Each job moves Unprocessed → Processing →
Processed exactly once, whatever the outcome: retries happen inside a single
attempt and a job that exhausts them is recorded with its error instead of
being left in the queue.
"""

import json
import logging
import signal
import sqlite3
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from stacksignal.api.company_registry import CompanyRegistry
from stacksignal.api.llm_budget_service import LLMBudgetService
from stacksignal.config import PipelineConfig
from stacksignal.database import JobDatabase
from stacksignal.exceptions import BudgetExceededError, ClassificationError
from stacksignal.extractors.tool_classifier import ToolClassifier
from stacksignal.models import NO_TOOL, JobRecord
from stacksignal.utils.normalize import normalize_company_name
from stacksignal.utils.retry import call_with_retry
from stacksignal.utils.skip_cache import CompanySkipCache
from stacksignal.utils.verdict_parser import parse_verdict

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Counters and the stop signal for one worker run"""

    processed: int = 0
    detected: int = 0
    skipped: int = 0
    errors: int = 0
    inserted: int = 0
    updated: int = 0
    batches: int = 0
    budget_paused: bool = False
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    last_processed_at: str | None = None
    stop_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def request_stop(self) -> None:
        self.stop_event.set()

    @property
    def stopping(self) -> bool:
        return self.stop_event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds, returning early (True) if a stop is requested"""
        if seconds <= 0:
            return self.stopping
        return self.stop_event.wait(seconds)

    def snapshot(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "detected": self.detected,
            "skipped": self.skipped,
            "errors": self.errors,
            "inserted": self.inserted,
            "updated": self.updated,
            "batches": self.batches,
            "budget_paused": self.budget_paused,
            "started_at": self.started_at,
            "last_processed_at": self.last_processed_at,
        }


class ClassificationWorker:
    """Sequential polling loop over the job store"""

    def __init__(
        self,
        database: JobDatabase,
        registry: CompanyRegistry,
        classifier: ToolClassifier,
        config: PipelineConfig,
        context: WorkerContext | None = None,
        sleep: Callable[[float], Any] | None = None,
        idle_wait: Callable[[float], Any] | None = None,
        skip_cache: CompanySkipCache | None = None,
    ):
        self.database = database
        self.registry = registry
        self.classifier = classifier
        self.config = config
        self.settings = config.worker
        self.context = context or WorkerContext()
        # Backoff and rate-limit delays are always served in full, even while stopping;
        # only the idle wait between polls is cut short by a stop request
        self.sleep = sleep or time.sleep
        self.idle_wait = idle_wait or self.context.wait
        self.retry_policy = config.retry_policy()
        self.skip_cache = skip_cache or CompanySkipCache(
            registry.get_all_companies,
            freshness_days=self.settings.freshness_days,
            refresh_seconds=self.settings.cache_refresh_seconds,
        )
        self._last_call_at: float | None = None

    def _respect_rate_limit(self) -> None:
        """Keep at least inter_call_delay_seconds between classifier calls"""
        delay = self.settings.inter_call_delay_seconds
        if self._last_call_at is not None and delay > 0:
            remaining = delay - (time.monotonic() - self._last_call_at)
            if remaining > 0:
                self.sleep(remaining)
        self._last_call_at = time.monotonic()

    def _mark(
        self,
        job: JobRecord,
        tool_detected: str | None = None,
        error: str | None = None,
        skip_reason: str | None = None,
    ) -> None:
        changed = self.database.mark_processed(
            job.job_id, tool_detected=tool_detected, error=error, skip_reason=skip_reason
        )
        if not changed:
            logger.warning(f"Job {job.job_id[:12]} was already processed")
            return
        self.context.processed += 1
        self.context.last_processed_at = datetime.now().isoformat()

    def _classify(self, job: JobRecord) -> str:
        def attempt() -> str:
            self._respect_rate_limit()
            return self.classifier.classify(job)

        return call_with_retry(
            attempt,
            self.retry_policy,
            retryable=(ClassificationError,),
            sleep=self.sleep,
            description=f"Classify {job.company!r}",
        )

    def process_job(self, job: JobRecord) -> str:
        """
        Resolve one job to a terminal state

        Returns:
            "skipped", "error", "negative" or "detected"

        Raises:
            BudgetExceededError: Classification is paused; the job is left unprocessed
        """
        label = f"{job.company} - {job.job_title}"

        skip_reason = self.skip_cache.pre_check(job.company)
        if skip_reason:
            logger.info(f"SKIP ({skip_reason}): {label}")
            self._mark(job, skip_reason=skip_reason)
            self.context.skipped += 1
            return "skipped"

        try:
            raw = self._classify(job)
        except ClassificationError as e:
            logger.error(f"ERROR: {label}: {e}")
            self._mark(job, tool_detected=NO_TOOL, error=str(e))
            self.context.errors += 1
            return "error"

        verdict = parse_verdict(raw)
        if not verdict.is_positive:
            logger.info(f"NONE: {label}")
            self._mark(job, tool_detected=NO_TOOL)
            return "negative"

        self.context.detected += 1
        tool = verdict.tool_detected

        if not normalize_company_name(job.company):
            logger.warning(f"DETECTED {tool} but job has no company name: {job.job_id[:12]}")
            self._mark(job, tool_detected=tool, error="Detection without company name")
            self.context.errors += 1
            return "error"

        skip_reason = self.skip_cache.post_check(job.company, tool)
        if skip_reason:
            logger.info(f"KNOWN ({tool}): {label}")
            self._mark(job, tool_detected=tool, skip_reason=skip_reason)
            self.context.skipped += 1
            return "skipped"

        result = self.registry.upsert_verdict(job, verdict)
        if result.action == "inserted":
            self.context.inserted += 1
        else:
            self.context.updated += 1
        self.skip_cache.record(
            job.company, result.record.tool_detected, result.record.first_identified_at
        )
        logger.info(f"DETECTED {tool} ({verdict.signal_type}, {result.action}): {label}")

        self._mark(job, tool_detected=tool)
        return "detected"

    def run_once(self) -> int:
        """
        Process one batch of unprocessed jobs

        Returns:
            Number of jobs handled (0 when the queue is empty or budget is paused)
        """
        try:
            self.skip_cache.maybe_refresh()
        except sqlite3.Error as e:
            logger.error(f"Skip-cache refresh failed, keeping previous cache: {e}")

        jobs = self.database.get_unprocessed_jobs(limit=self.settings.batch_size)
        if not jobs:
            return 0

        self.context.batches += 1
        self.context.budget_paused = False
        logger.info(f"Batch {self.context.batches}: {len(jobs)} unprocessed jobs")

        handled = 0
        for job in jobs:
            if self.context.stopping:
                break
            try:
                self.process_job(job)
            except BudgetExceededError as e:
                logger.warning(f"{e}; pausing until budget frees up")
                self.context.budget_paused = True
                break
            except Exception as e:
                # Per-job failures are recorded on the job, never fatal to the loop
                logger.error(f"Unexpected failure on job {job.job_id[:12]}: {e}", exc_info=True)
                self.context.errors += 1
                try:
                    self._mark(job, tool_detected=NO_TOOL, error=f"{type(e).__name__}: {e}")
                except sqlite3.Error as mark_error:
                    logger.error(f"Could not record failure for {job.job_id[:12]}: {mark_error}")
            handled += 1

        return handled

    def run(self, max_batches: int | None = None) -> dict[str, Any]:
        """
        Poll until stopped

        Args:
            max_batches: Stop after this many polls (None = run until stop is requested)

        Returns:
            Final counters
        """
        logger.info("Classification worker started")
        self.skip_cache.refresh()

        idle = self.settings.idle_min_seconds
        polls = 0
        while not self.context.stopping:
            handled = self.run_once()
            polls += 1
            if max_batches is not None and polls >= max_batches:
                break

            if handled == 0:
                logger.debug(f"No work, sleeping {idle:.0f}s")
                self.idle_wait(idle)
                idle = min(idle * 2, self.settings.idle_max_seconds)
            else:
                idle = self.settings.idle_min_seconds

        stats = self.context.snapshot()
        logger.info(
            f"Classification worker stopped: processed={stats['processed']} "
            f"detected={stats['detected']} skipped={stats['skipped']} errors={stats['errors']}"
        )
        return stats


def build_worker(config: PipelineConfig, context: WorkerContext | None = None) -> ClassificationWorker:
    """
    Wire up the worker from configuration

    Raises:
        ConfigError: If the classification API key is missing
    """
    database = JobDatabase(config.database_path)
    registry = CompanyRegistry(config.database_path)
    budget_service = None
    if config.budget.enabled:
        budget_service = LLMBudgetService(
            monthly_limit=config.budget.monthly_limit_usd,
            input_cost_per_million=config.budget.input_cost_per_million,
            output_cost_per_million=config.budget.output_cost_per_million,
            logs_dir=config.budget.logs_dir,
        )
    classifier = ToolClassifier(config, budget_service=budget_service)
    return ClassificationWorker(database, registry, classifier, config, context=context)


def main():
    """CLI entry point"""
    import argparse

    from stacksignal.logging_config import setup_logging

    parser = argparse.ArgumentParser(description="Classify unprocessed jobs for Outreach.io/SalesLoft")
    parser.add_argument("--config", help="Path to classifier settings JSON")
    parser.add_argument("--db", help="Database path (overrides config and DATABASE_PATH)")
    parser.add_argument("--batch-size", type=int, help="Jobs per batch")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit")

    args = parser.parse_args()
    setup_logging()

    try:
        config = PipelineConfig.load(args.config)
        if args.db:
            config.database_path = args.db
        if args.batch_size:
            config.worker.batch_size = args.batch_size
        context = WorkerContext()
        worker = build_worker(config, context)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Startup failed: {e}")
        sys.exit(2)

    def handle_stop(signum, _frame):
        logger.info(f"Received signal {signum}, finishing current job")
        context.request_stop()

    signal.signal(signal.SIGINT, handle_stop)
    signal.signal(signal.SIGTERM, handle_stop)

    stats = worker.run(max_batches=1 if args.once else None)
    stats["jobs"] = worker.database.get_stats()
    stats["companies"] = worker.registry.get_stats()

    print(json.dumps(stats, indent=2))


if __name__ == "__main__":
    main()
