"""
Company Skip-Cache - avoid re-classifying companies whose tooling is known

Two tiers, partitioned by the age of each registry record's first_identified_at:

    fresh (inside the freshness window)
        Company-level skip. Any job for the company is skipped before the
        classifier is called, whatever tool it might mention.
    stale (outside the window)
        (company, tool)-level skip. The job is still classified, because a
        company's tooling can change, and the result is dropped only if the
        same tool was already recorded for that company.

A stale company whose known tools already cover both products (a "Both"
row, or one row per tool) is skipped up front, since no verdict could add
anything new.

The cache is owned by the worker: rebuilt wholesale from the registry on
refresh() and otherwise only grown by record() when the worker inserts a row.
"""

import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from stacksignal.models import BOTH, NO_TOOL, SINGULAR_TOOLS, CompanyRecord, SkipReason
from stacksignal.utils.normalize import normalize_company_name

logger = logging.getLogger(__name__)

DEFAULT_FRESHNESS_DAYS = 90
DEFAULT_REFRESH_SECONDS = 300


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    # Registry timestamps are naive local time; drop any offset for comparison
    return parsed.replace(tzinfo=None)


class CompanySkipCache:
    """In-memory two-tier skip index over the company registry"""

    def __init__(
        self,
        loader: Callable[[], Iterable[CompanyRecord]],
        freshness_days: int = DEFAULT_FRESHNESS_DAYS,
        refresh_seconds: float = DEFAULT_REFRESH_SECONDS,
        clock: Callable[[], datetime] = datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            loader: Returns every CompanyRecord, usually CompanyRegistry.get_all_companies
            freshness_days: Window inside which a company is skipped regardless of tool
            refresh_seconds: Max age of the cache before maybe_refresh() reloads it
            clock: Wall clock used for freshness comparisons
            monotonic: Clock used for refresh scheduling
        """
        self.loader = loader
        self.freshness = timedelta(days=freshness_days)
        self.refresh_seconds = refresh_seconds
        self.clock = clock
        self.monotonic = monotonic

        self._fresh: dict[str, datetime] = {}
        self._tools: dict[str, set[str]] = {}
        self._loaded_at: float | None = None

    def __len__(self) -> int:
        return len(set(self._fresh) | set(self._tools))

    @property
    def fresh_count(self) -> int:
        return len(self._fresh)

    @property
    def stale_count(self) -> int:
        return len(set(self._tools) - set(self._fresh))

    def refresh(self):
        """Rebuild the cache from the registry"""
        records = list(self.loader())
        self.load(records)
        self._loaded_at = self.monotonic()
        logger.info(
            f"Skip-cache refreshed: {self.fresh_count} fresh companies, "
            f"{self.stale_count} stale companies"
        )

    def maybe_refresh(self) -> bool:
        """Refresh if never loaded or older than refresh_seconds. Returns True if reloaded"""
        if self._loaded_at is None or self.monotonic() - self._loaded_at >= self.refresh_seconds:
            self.refresh()
            return True
        return False

    def load(self, records: Iterable[CompanyRecord]):
        """Replace cache contents with the given registry records"""
        now = self.clock()
        fresh: dict[str, datetime] = {}
        tools: dict[str, set[str]] = {}

        for record in records:
            key = record.normalized_name or normalize_company_name(record.company_name)
            if not key:
                continue
            recorded_at = _parse_timestamp(record.first_identified_at)
            if recorded_at is not None and now - recorded_at <= self.freshness:
                if key not in fresh or recorded_at > fresh[key]:
                    fresh[key] = recorded_at
            tools.setdefault(key, set()).add(record.tool_detected)

        self._fresh = fresh
        self._tools = tools

    def record(self, company: str, tool: str, recorded_at: str | None = None):
        """Add a company the worker just inserted into the registry"""
        key = normalize_company_name(company)
        if not key or tool == NO_TOOL:
            return
        stamp = _parse_timestamp(recorded_at) or self.clock()
        if self.clock() - stamp <= self.freshness:
            self._fresh[key] = max(stamp, self._fresh.get(key, stamp))
        self._tools.setdefault(key, set()).add(tool)

    def is_fresh(self, company: str) -> bool:
        """True if the company has a record inside the freshness window"""
        key = normalize_company_name(company)
        stamp = self._fresh.get(key)
        if stamp is None:
            return False
        return self.clock() - stamp <= self.freshness

    def known_tools(self, company: str) -> set[str]:
        return set(self._tools.get(normalize_company_name(company), set()))

    def is_known_tool(self, company: str, tool: str) -> bool:
        """
        True if this tool is already recorded for the company

        A Both row covers either singular tool, and a Both verdict is covered
        once both singular tools are known.
        """
        tools = self.known_tools(company)
        if not tools or tool == NO_TOOL:
            return False
        if tool in tools or BOTH in tools:
            return True
        if tool == BOTH:
            return all(single in tools for single in SINGULAR_TOOLS)
        return False

    def pre_check(self, company: str) -> SkipReason | None:
        """
        Decide before calling the classifier whether a job can be skipped

        Returns:
            "fresh_company", "all_tools_known", or None to classify
        """
        if not normalize_company_name(company):
            return None
        if self.is_fresh(company):
            return "fresh_company"
        if self.is_known_tool(company, BOTH):
            return "all_tools_known"
        return None

    def post_check(self, company: str, tool: str) -> SkipReason | None:
        """Decide after classification whether the detected tool is already known"""
        if self.is_known_tool(company, tool):
            return "known_tool"
        return None
