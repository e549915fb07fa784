"""
Unit tests for the classification worker loop

Uses a real job store and registry on a temp database with FakeLLM as the
classification service.
"""

import sqlite3
from datetime import datetime, timedelta
from unittest.mock import MagicMock, call, patch

import pytest
from factories import FakeLLM, company_record, make_job, store_job, verdict_json

from stacksignal.api.llm_budget_service import LLMBudgetService
from stacksignal.extractors.tool_classifier import ToolClassifier
from stacksignal.ingest import JobIngestionService
from stacksignal.utils.skip_cache import CompanySkipCache
from stacksignal.worker import ClassificationWorker, WorkerContext


@pytest.fixture
def build_worker(test_db, registry, fast_config):
    """Factory: worker around a FakeLLM, recording every sleep"""

    def _build(llm, budget_service=None, context=None, skip_cache=None):
        sleeps: list[float] = []
        classifier = ToolClassifier(fast_config, llm=llm, budget_service=budget_service)
        worker = ClassificationWorker(
            test_db,
            registry,
            classifier,
            fast_config,
            context=context,
            sleep=sleeps.append,
            idle_wait=sleeps.append,
            skip_cache=skip_cache,
        )
        return worker, sleeps

    return _build


class TestOutcomes:
    def test_detection_inserts_company(self, test_db, registry, build_worker):
        job = store_job(test_db, make_job())
        worker, _ = build_worker(FakeLLM([verdict_json("Outreach.io")]))

        assert worker.run_once() == 1

        stored = test_db.get_job(job.job_id)
        assert stored.processed is True
        assert stored.tool_detected == "Outreach.io"
        record = registry.get_company("Acme Inc", "Outreach.io")
        assert record is not None
        assert record.source_job_url == job.job_url
        assert worker.context.detected == 1
        assert worker.context.inserted == 1

    def test_negative_verdict_marks_none(self, test_db, registry, build_worker):
        job = store_job(test_db, make_job(description="Cold outreach to prospects"))
        worker, _ = build_worker(FakeLLM([verdict_json("None", "none", "")]))

        worker.run_once()

        stored = test_db.get_job(job.job_id)
        assert stored.processed is True
        assert stored.tool_detected == "None"
        assert registry.get_stats()["total_records"] == 0

    def test_malformed_response_is_negative(self, test_db, registry, build_worker):
        job = store_job(test_db, make_job())
        worker, _ = build_worker(FakeLLM(["I think they probably use Outreach!"]))

        worker.run_once()

        stored = test_db.get_job(job.job_id)
        assert stored.tool_detected == "None"
        assert stored.last_error is None
        assert registry.get_stats()["total_records"] == 0

    def test_detection_without_company_is_error(self, test_db, registry, build_worker):
        job = store_job(test_db, make_job(company=""))
        worker, _ = build_worker(FakeLLM([verdict_json("SalesLoft")]))

        worker.run_once()

        stored = test_db.get_job(job.job_id)
        assert stored.processed is True
        assert stored.last_error == "Detection without company name"
        assert registry.get_stats()["total_records"] == 0


class TestRetries:
    def test_transient_failure_retried(self, test_db, build_worker):
        job = store_job(test_db, make_job())
        llm = FakeLLM([ConnectionError("reset"), verdict_json("SalesLoft")])
        worker, sleeps = build_worker(llm)

        worker.run_once()

        assert len(llm.calls) == 2
        assert len(sleeps) == 1
        assert test_db.get_job(job.job_id).tool_detected == "SalesLoft"

    def test_exhausted_retries_record_error(self, test_db, registry, build_worker):
        job = store_job(test_db, make_job())
        llm = FakeLLM(default=TimeoutError("read timed out"))
        worker, sleeps = build_worker(llm)

        worker.run_once()

        assert len(llm.calls) == 4
        assert len(sleeps) == 3
        stored = test_db.get_job(job.job_id)
        assert stored.processed is True
        assert stored.tool_detected == "None"
        assert "TimeoutError" in stored.last_error
        assert worker.context.errors == 1
        assert registry.get_stats()["total_records"] == 0

    def test_error_does_not_stop_batch(self, test_db, build_worker):
        failing = store_job(test_db, make_job(url="u1", scraped_at="2025-01-01T00:00:00"))
        ok = store_job(
            test_db, make_job(company="Globex", url="u2", scraped_at="2025-01-02T00:00:00")
        )
        llm = FakeLLM([TimeoutError("t")] * 4 + [verdict_json("SalesLoft")])
        worker, _ = build_worker(llm)

        assert worker.run_once() == 2

        assert test_db.get_job(failing.job_id).last_error is not None
        assert test_db.get_job(ok.job_id).tool_detected == "SalesLoft"


class TestSkipCache:
    def test_second_job_for_fresh_company_skipped(self, test_db, registry, build_worker):
        """Two Acme postings: the first is classified, the second never reaches the LLM"""
        first = store_job(
            test_db, make_job(title="SDR", url="u1", scraped_at="2025-01-01T00:00:00")
        )
        second = store_job(
            test_db, make_job(title="AE", url="u2", scraped_at="2025-01-02T00:00:00")
        )
        llm = FakeLLM([verdict_json("Outreach.io")])
        worker, _ = build_worker(llm)

        worker.run_once()

        assert len(llm.calls) == 1
        assert test_db.get_job(first.job_id).tool_detected == "Outreach.io"
        skipped = test_db.get_job(second.job_id)
        assert skipped.processed is True
        assert skipped.skip_reason == "fresh_company"
        assert worker.context.skipped == 1
        assert registry.get_stats()["total_records"] == 1

    def test_stale_company_same_tool_skipped_after_classification(
        self, test_db, registry, build_worker
    ):
        registry.insert_company(company_record("Acme Inc", "Outreach.io", age_days=200))
        before = registry.get_company("Acme Inc", "Outreach.io")
        job = store_job(test_db, make_job())
        llm = FakeLLM([verdict_json("Outreach.io")])
        worker, _ = build_worker(llm)

        worker.run_once()

        assert len(llm.calls) == 1
        assert test_db.get_job(job.job_id).skip_reason == "known_tool"
        after = registry.get_company("Acme Inc", "Outreach.io")
        assert after.last_confirmed_at == before.last_confirmed_at

    def test_stale_company_new_tool_recorded(self, test_db, registry, build_worker):
        registry.insert_company(company_record("Acme Inc", "Outreach.io", age_days=200))
        store_job(test_db, make_job())
        worker, _ = build_worker(FakeLLM([verdict_json("SalesLoft")]))

        worker.run_once()

        tools = {r.tool_detected for r in registry.get_companies_by_name("Acme Inc")}
        assert tools == {"Outreach.io", "SalesLoft"}

    def test_stale_company_with_both_skipped_up_front(self, test_db, registry, build_worker):
        registry.insert_company(company_record("Acme Inc", "Both", age_days=200))
        job = store_job(test_db, make_job())
        llm = FakeLLM([])
        worker, _ = build_worker(llm)

        worker.run_once()

        assert llm.calls == []
        assert test_db.get_job(job.job_id).skip_reason == "all_tools_known"


class TestLifecycle:
    def test_each_job_processed_once(self, test_db, build_worker):
        store_job(test_db, make_job())
        llm = FakeLLM([verdict_json()])
        worker, _ = build_worker(llm)

        assert worker.run_once() == 1
        assert worker.run_once() == 0

        assert len(llm.calls) == 1
        assert worker.context.processed == 1

    def test_probable_duplicates_never_classified(self, test_db, build_worker):
        service = JobIngestionService(test_db)
        service.ingest_job({"company": "Acme Inc", "title": "SDR", "link": "u1"})
        service.ingest_job({"company": "Acme Inc", "title": "SDR", "link": "u2"})
        llm = FakeLLM([verdict_json("None", "none", "")])
        worker, _ = build_worker(llm)

        assert worker.run_once() == 1
        assert len(llm.calls) == 1

    def test_stop_request_leaves_jobs_queued(self, test_db, build_worker):
        store_job(test_db, make_job())
        context = WorkerContext()
        context.request_stop()
        worker, _ = build_worker(FakeLLM([]), context=context)

        assert worker.run_once() == 0
        assert len(test_db.get_unprocessed_jobs()) == 1

    def test_budget_exhaustion_pauses_without_processing(
        self, test_db, build_worker, tmp_path
    ):
        store_job(test_db, make_job())
        budget = LLMBudgetService(monthly_limit=0.000001, logs_dir=str(tmp_path / "budget"))
        budget.record_usage(1000, 1000)
        llm = FakeLLM([])
        worker, _ = build_worker(llm, budget_service=budget)

        assert worker.run_once() == 0

        assert worker.context.budget_paused is True
        assert llm.calls == []
        assert len(test_db.get_unprocessed_jobs()) == 1

    def test_unexpected_failure_recorded_and_loop_continues(
        self, test_db, registry, build_worker, monkeypatch
    ):
        broken = store_job(test_db, make_job(url="u1", scraped_at="2025-01-01T00:00:00"))
        fine = store_job(
            test_db, make_job(company="Globex", url="u2", scraped_at="2025-01-02T00:00:00")
        )
        worker, _ = build_worker(FakeLLM([verdict_json("Outreach.io"), verdict_json("None", "none", "")]))

        def explode(job, verdict, now=None):
            raise RuntimeError("registry unavailable")

        monkeypatch.setattr(registry, "upsert_verdict", explode)

        assert worker.run_once() == 2

        assert test_db.get_job(broken.job_id).last_error == "RuntimeError: registry unavailable"
        assert test_db.get_job(fine.job_id).tool_detected == "None"
        assert worker.context.errors == 1

    def test_idle_backoff_doubles_and_caps(self, fast_config, build_worker):
        fast_config.worker.idle_min_seconds = 1.0
        fast_config.worker.idle_max_seconds = 4.0
        worker, sleeps = build_worker(FakeLLM([]))

        stats = worker.run(max_batches=5)

        assert sleeps == [1.0, 2.0, 4.0, 4.0]
        assert stats["processed"] == 0

    def test_run_returns_counters(self, test_db, build_worker):
        store_job(test_db, make_job())
        worker, _ = build_worker(FakeLLM([verdict_json("SalesLoft")]))

        stats = worker.run(max_batches=1)

        assert stats["processed"] == 1
        assert stats["detected"] == 1
        assert stats["batches"] == 1


def test_context_wait_returns_early_on_stop():
    context = WorkerContext()
    context.request_stop()

    assert context.wait(30) is True
    assert context.stopping is True


def test_cache_refresh_failure_keeps_previous_cache(test_db, registry, fast_config):
    skip_cache = MagicMock()
    skip_cache.maybe_refresh.side_effect = sqlite3.OperationalError("database is locked")
    skip_cache.pre_check.return_value = None
    skip_cache.post_check.return_value = None
    store_job(test_db, make_job())
    classifier = ToolClassifier(fast_config, llm=FakeLLM([verdict_json("SalesLoft")]))
    worker = ClassificationWorker(
        test_db, registry, classifier, fast_config, sleep=lambda _: None, skip_cache=skip_cache
    )

    assert worker.run_once() == 1

    skip_cache.record.assert_called_once()
    assert skip_cache.record.call_args.args[:2] == ("Acme Inc", "SalesLoft")


class StopThenFailLLM:
    """Requests shutdown from inside the call, then fails like a dropped connection"""

    def __init__(self, context: WorkerContext):
        self.context = context
        self.calls = 0

    def invoke(self, messages):
        self.calls += 1
        self.context.request_stop()
        raise ConnectionError("connection reset")


class TestStopDuringRetries:
    def test_backoff_served_in_full_after_stop(self, test_db, registry, fast_config):
        fast_config.retry.base_delay_seconds = 2.0
        fast_config.retry.max_delay_seconds = 30.0
        context = WorkerContext()
        llm = StopThenFailLLM(context)
        job = store_job(test_db, make_job())

        with patch("stacksignal.worker.time.sleep") as mock_sleep:
            worker = ClassificationWorker(
                test_db,
                registry,
                ToolClassifier(fast_config, llm=llm),
                fast_config,
                context=context,
            )
            assert worker.run_once() == 1

        assert llm.calls == 4
        assert mock_sleep.call_args_list == [call(2.0), call(4.0), call(8.0)]
        stored = test_db.get_job(job.job_id)
        assert stored.processed is True
        assert "ConnectionError" in stored.last_error

    def test_stop_ends_batch_after_current_job(self, test_db, build_worker, fast_config):
        first = store_job(test_db, make_job(url="u1", scraped_at="2025-01-01T00:00:00"))
        store_job(test_db, make_job(company="Globex", url="u2", scraped_at="2025-01-02T00:00:00"))
        context = WorkerContext()
        llm = StopThenFailLLM(context)
        worker, sleeps = build_worker(llm, context=context)

        assert worker.run_once() == 1

        assert test_db.get_job(first.job_id).processed is True
        assert len(test_db.get_unprocessed_jobs()) == 1
        assert len(sleeps) == 3


def test_acme_postings_end_to_end(test_db, registry, build_worker):
    """
    A is classified, B repeats A's company+title and never reaches the
    classifier, C arrives after the freshness window with a new tool
    """
    clock = {"now": datetime.now()}
    skip_cache = CompanySkipCache(registry.get_all_companies, clock=lambda: clock["now"])
    service = JobIngestionService(test_db)
    llm = FakeLLM([verdict_json("Outreach.io"), verdict_json("SalesLoft")])
    worker, _ = build_worker(llm, skip_cache=skip_cache)

    job_a, status_a = service.ingest_job({"company": "Acme Inc", "title": "SDR", "link": "u1"})
    assert status_a == "new"
    worker.run_once()
    assert test_db.get_job(job_a.job_id).tool_detected == "Outreach.io"

    job_b, status_b = service.ingest_job({"company": "acme inc", "title": "SDR", "link": "u2"})
    assert status_b == "probable_duplicate"
    assert worker.run_once() == 0
    assert test_db.get_job(job_b.job_id).skip_reason == "probable_duplicate"

    clock["now"] += timedelta(days=100)
    job_c, status_c = service.ingest_job({"company": "Acme Inc", "title": "AE", "link": "u3"})
    assert status_c == "new"
    worker.run_once()

    assert len(llm.calls) == 2
    assert test_db.get_job(job_c.job_id).tool_detected == "SalesLoft"
    assert test_db.get_job(job_c.job_id).skip_reason is None
    tools = {r.tool_detected for r in registry.get_companies_by_name("Acme Inc")}
    assert tools == {"Outreach.io", "SalesLoft"}


def test_acme_late_posting_with_known_tool_is_skipped(test_db, registry, build_worker):
    clock = {"now": datetime.now()}
    skip_cache = CompanySkipCache(registry.get_all_companies, clock=lambda: clock["now"])
    service = JobIngestionService(test_db)
    llm = FakeLLM([verdict_json("Outreach.io"), verdict_json("Outreach.io")])
    worker, _ = build_worker(llm, skip_cache=skip_cache)

    service.ingest_job({"company": "Acme Inc", "title": "SDR", "link": "u1"})
    worker.run_once()
    clock["now"] += timedelta(days=100)
    job_c, _ = service.ingest_job({"company": "Acme Inc", "title": "AE", "link": "u3"})
    worker.run_once()

    assert len(llm.calls) == 2
    assert test_db.get_job(job_c.job_id).skip_reason == "known_tool"
    assert registry.get_stats()["total_records"] == 1
