"""
Data models for the tool-detection pipeline
"""

from typing import Literal

from pydantic import BaseModel, Field

from stacksignal.utils.normalize import utc_now_iso

ToolName = Literal["Outreach.io", "SalesLoft", "Both", "None"]
DetectedTool = Literal["Outreach.io", "SalesLoft", "Both"]
SignalType = Literal["required", "preferred", "stack_mention", "none"]
DuplicateStatus = Literal["new", "exact_duplicate", "probable_duplicate"]
SkipReason = Literal["probable_duplicate", "fresh_company", "all_tools_known", "known_tool"]

OUTREACH: DetectedTool = "Outreach.io"
SALESLOFT: DetectedTool = "SalesLoft"
BOTH: DetectedTool = "Both"
NO_TOOL: ToolName = "None"

SINGULAR_TOOLS: tuple[DetectedTool, ...] = (OUTREACH, SALESLOFT)
DETECTED_TOOLS: tuple[DetectedTool, ...] = (OUTREACH, SALESLOFT, BOTH)

EVIDENCE_MAX_LENGTH = 200


class JobRecord(BaseModel):
    """
    A scraped job posting as held by the job store

    Created by the scraper, fingerprinted and dedup-checked at ingest, and
    mutated afterwards only by the classification worker.
    """

    job_id: str = Field(..., description="Stable fingerprint of platform+company+title+location+url")
    company: str = Field(default="", description="Employer name as scraped")
    job_title: str = Field(default="", description="Job title as scraped")
    location: str | None = Field(None, description="Job location")
    description: str | None = Field(None, description="Full job description")
    job_url: str | None = Field(None, description="Link to the posting")
    platform: str | None = Field(None, description="Job board the posting came from")
    search_term: str | None = Field(None, description="Search term that surfaced the posting")
    scraped_at: str = Field(default_factory=utc_now_iso, description="Canonical UTC ISO-8601")

    # Dedup metadata
    duplicate_status: DuplicateStatus = "new"
    duplicate_of: str | None = Field(None, description="job_id of the job this one duplicates")
    duplicate_confidence: int = Field(default=0, ge=0, le=100)
    seen_count: int = Field(default=1, ge=1)

    # Lifecycle
    processed: bool = False
    processed_at: str | None = None
    last_error: str | None = None
    skip_reason: SkipReason | None = None
    tool_detected: ToolName | None = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None


class ClassificationVerdict(BaseModel):
    """
    Structured answer from the classification service for one job

    Never persisted on its own; positive verdicts become CompanyRecords.
    """

    uses_tool: bool = False
    tool_detected: ToolName = NO_TOOL
    signal_type: SignalType = "none"
    evidence: str = Field(default="", max_length=EVIDENCE_MAX_LENGTH)

    @classmethod
    def no_detection(cls) -> "ClassificationVerdict":
        """The safe default every malformed response degrades to"""
        return cls(uses_tool=False, tool_detected=NO_TOOL, signal_type="none", evidence="")

    @property
    def is_positive(self) -> bool:
        return self.uses_tool and self.tool_detected != NO_TOOL


class CompanyRecord(BaseModel):
    """A company observed using a tool, unique on (normalized_name, tool_detected)"""

    id: int | None = None
    company_name: str
    normalized_name: str
    tool_detected: DetectedTool
    signal_type: SignalType = "none"
    evidence: str = ""
    source_job_title: str | None = None
    source_job_url: str | None = None
    platform: str | None = None
    first_identified_at: str
    last_confirmed_at: str


class DuplicateCheck(BaseModel):
    """Result of running a candidate job through the dedup engine"""

    status: DuplicateStatus
    confidence: int = Field(default=0, ge=0, le=100)
    matched_job_id: str | None = None

    @property
    def eligible_for_classification(self) -> bool:
        return self.status == "new"


class UpsertResult(BaseModel):
    """Outcome of merging a positive verdict into the company registry"""

    action: Literal["inserted", "updated", "subsumed"]
    record: CompanyRecord
    merged_rows: int = Field(default=0, description="Singular rows folded into a Both row")
