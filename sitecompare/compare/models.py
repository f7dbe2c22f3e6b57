"""
Data models for site comparison runs.

Persisted records (configuration, items, per-site and per-run results) are
pydantic models so they can be stored as JSON and loaded back unchanged.
Transient values passed between components are plain dataclasses.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, List, Set, Iterator, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Libraries that are never compared, whatever the task configuration says
DEFAULT_EXCLUDED_LIBRARIES = [
    "Style Library",
    "Form Templates",
    "Site Collection Documents",
    "Site Collection Images",
    "_catalogs/hubsite",
    "Preservation Hold Library",
    "appdata",
]

# System lists skipped by a list compare
DEFAULT_EXCLUDED_LISTS = [
    "MicroFeed",
    "Style Library",
    "appdata",
    "TaxonomyHiddenList",
    "Composed Looks",
    "Master Page Gallery",
    "Solution Gallery",
    "Theme Gallery",
    "Web Part Gallery",
    "Workflow Tasks",
    "User Information List",
    "Converted Forms",
    "Customized Reports",
    "Form Templates",
    "Content type publishing error log",
    "Team Message History",
    "Channel Settings",
]

# Skipped unless the task opts in with include_site_assets
OPTIONAL_EXCLUDED_LISTS = ["Site Assets"]

# Compared even when configured as excluded
NEVER_EXCLUDED_LISTS = ["Site Pages"]

LIST_TYPES: Dict[int, str] = {
    100: "Custom List",
    101: "Document Library",
    102: "Survey",
    103: "Links",
    104: "Announcements",
    105: "Contacts",
    106: "Calendar",
    107: "Tasks",
    108: "Discussion Board",
    109: "Picture Library",
    110: "Data Sources",
    115: "Form Library",
    118: "Wiki Page Library",
    119: "Custom Workflow Process",
    120: "Custom Workflow History",
    130: "Data Connection Library",
    140: "Workflow History",
    150: "Gantt Tasks",
    170: "Promoted Links",
    171: "App Catalog",
    175: "Asset Library",
    432: "Issues List",
    544: "Facility",
    600: "External List",
    851: "Site Pages Library",
}

# Target copies smaller than this share of the source are flagged
SIZE_ISSUE_RATIO = 0.30

# Cached library scans older than this are rescanned
CACHE_MAX_AGE = timedelta(hours=48)


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (the form SQLite hands back)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ComparisonOutcome(str, Enum):
    """Comparison outcomes an item can be counted under."""
    FOUND = "Found"
    SIZE_ISSUE = "SizeIssue"
    SOURCE_ONLY = "SourceOnly"
    TARGET_ONLY = "TargetOnly"
    NEWER_AT_SOURCE = "NewerAtSource"


class ItemType(str, Enum):
    FILE = "File"
    FOLDER = "Folder"


class CompareMode(str, Enum):
    """What a task compares between the sites of a pair."""
    DOCUMENTS = "Documents"
    LISTS = "Lists"


class ThresholdType(str, Enum):
    """How list item count differences are measured."""
    PERCENTAGE = "Percentage"
    ABSOLUTE_COUNT = "AbsoluteCount"


class ListCompareStatus(str, Enum):
    MATCH = "Match"
    MISMATCH = "Mismatch"
    SOURCE_ONLY = "SourceOnly"
    TARGET_ONLY = "TargetOnly"


class RunStatus(str, Enum):
    """Lifecycle of a comparison run (and of the task that owns it)."""
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    FAILED = "Failed"
    CANCELLED = "Cancelled"


class SiteComparePair(BaseModel):
    """One source site and the target site it was migrated to."""
    model_config = ConfigDict(frozen=True)

    source_url: str
    target_url: str


class ComparisonConfiguration(BaseModel):
    """Configuration for a document or list compare task."""

    source_connection_id: str = Field(description="Source tenant identifier")
    target_connection_id: str = Field(description="Target tenant identifier")
    site_pairs: List[SiteComparePair] = Field(default_factory=list)
    excluded_libraries: List[str] = Field(default_factory=list)
    include_hidden: bool = Field(default=False, description="Compare hidden libraries too")
    include_aspx_pages: bool = Field(default=False, description="Compare .aspx pages too")
    use_normalization: bool = Field(
        default=False,
        description="Treat characters replaced by migration tools as equal",
    )
    use_cache: bool = Field(default=False, description="Reuse library scans younger than 48h")

    # List compare
    compare_mode: CompareMode = Field(default=CompareMode.DOCUMENTS)
    excluded_lists: List[str] = Field(default_factory=list)
    include_site_assets: bool = Field(default=False, description="Compare the Site Assets library too")
    threshold_type: ThresholdType = Field(default=ThresholdType.PERCENTAGE)
    threshold_value: int = Field(default=10, description="Allowed item count difference")

    def effective_excluded_libraries(self) -> Set[str]:
        """Configured exclusions plus the built-in system libraries, case-folded."""
        names = list(DEFAULT_EXCLUDED_LIBRARIES) + list(self.excluded_libraries)
        return {name.strip().casefold() for name in names if name.strip()}

    def effective_excluded_lists(self) -> Set[str]:
        """List titles skipped by a list compare, case-folded."""
        names = list(DEFAULT_EXCLUDED_LISTS) + list(self.excluded_lists)
        if not self.include_site_assets:
            names.extend(OPTIONAL_EXCLUDED_LISTS)
        never = {name.casefold() for name in NEVER_EXCLUDED_LISTS}
        return {
            name.strip().casefold() for name in names
            if name.strip() and name.strip().casefold() not in never
        }


@dataclass
class Library:
    """A list or document library as reported by a tenant."""
    id: str
    title: str
    hidden: bool = False
    item_count: int = 0
    server_relative_url: str = ""
    base_template: int = 101

    @property
    def list_type(self) -> str:
        return LIST_TYPES.get(self.base_template, f"List ({self.base_template})")


class CatalogItem(BaseModel):
    """One document or folder reported by a tenant."""
    model_config = ConfigDict(frozen=True)

    relative_path: str
    size_bytes: int = 0
    version_count: int = 0
    last_modified_utc: Optional[datetime] = None
    item_id: int = 0
    file_name: str = ""
    item_type: ItemType = ItemType.FILE
    created_utc: Optional[datetime] = None
    server_relative_url: str = ""

    @field_validator("last_modified_utc", "created_utc")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_naive_utc(value)


@dataclass(frozen=True)
class CatalogSnapshot:
    """An immutable library scan captured at a point in time."""
    captured_at: datetime
    items: Tuple[CatalogItem, ...]

    def is_fresh(self, max_age: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now - self.captured_at < max_age


class ComparisonItem(BaseModel):
    """Represents a single document comparison result."""

    library_title: str
    relative_path: str
    key: str
    status: ComparisonOutcome
    item_type: ItemType = ItemType.FILE

    # Facts attached to items present on both sides
    size_issue: bool = False
    newer_at_source: bool = False

    source_item_id: Optional[int] = None
    target_item_id: Optional[int] = None
    source_size_bytes: int = 0
    target_size_bytes: int = 0
    source_version_count: int = 0
    target_version_count: int = 0
    source_modified: Optional[datetime] = None
    target_modified: Optional[datetime] = None
    source_created: Optional[datetime] = None
    target_created: Optional[datetime] = None

    @property
    def present_at_source(self) -> bool:
        return self.status != ComparisonOutcome.TARGET_ONLY

    @property
    def present_at_target(self) -> bool:
        return self.status != ComparisonOutcome.SOURCE_ONLY

    @property
    def outcomes(self) -> List[ComparisonOutcome]:
        """Every outcome this item is counted under."""
        outcomes = [self.status]
        if self.size_issue:
            outcomes.append(ComparisonOutcome.SIZE_ISSUE)
        if self.newer_at_source:
            outcomes.append(ComparisonOutcome.NEWER_AT_SOURCE)
        return outcomes

    @property
    def file_extension(self) -> str:
        name = self.relative_path.rsplit("/", 1)[-1]
        if "." not in name:
            return ""
        return name.rsplit(".", 1)[-1].lower()

    @property
    def size_difference_percent(self) -> float:
        """Size difference as a percentage of the source size."""
        if self.source_size_bytes == 0:
            return 0.0 if self.target_size_bytes == 0 else 100.0
        return abs(self.target_size_bytes - self.source_size_bytes) / self.source_size_bytes * 100


class OutcomeCounts(BaseModel):
    """Tallies per outcome; size issue and newer at source overlap with found."""

    found: int = 0
    size_issue: int = 0
    source_only: int = 0
    target_only: int = 0
    newer_at_source: int = 0

    def get(self, outcome: ComparisonOutcome) -> int:
        return {
            ComparisonOutcome.FOUND: self.found,
            ComparisonOutcome.SIZE_ISSUE: self.size_issue,
            ComparisonOutcome.SOURCE_ONLY: self.source_only,
            ComparisonOutcome.TARGET_ONLY: self.target_only,
            ComparisonOutcome.NEWER_AT_SOURCE: self.newer_at_source,
        }[outcome]


class ListComparisonItem(BaseModel):
    """Item counts of one list on both sites of a pair."""

    list_title: str
    list_type: str = ""
    status: ListCompareStatus
    source_count: int = 0
    target_count: int = 0
    source_list_url: str = ""
    target_list_url: str = ""

    @property
    def difference(self) -> int:
        return self.target_count - self.source_count

    @property
    def percent_difference(self) -> float:
        if self.source_count == 0:
            return 0.0 if self.target_count == 0 else 100.0
        return abs(self.difference) / self.source_count * 100


class ListCounts(BaseModel):
    match: int = 0
    mismatch: int = 0
    source_only: int = 0
    target_only: int = 0


class SiteComparisonResult(BaseModel):
    """Comparison results for a single site pair."""

    source_url: str
    target_url: str
    success: bool = False
    error_message: Optional[str] = None
    items: List[ComparisonItem] = Field(default_factory=list)
    lists: List[ListComparisonItem] = Field(default_factory=list)
    libraries_processed: int = 0

    # Per-site aggregates, filled in from the items by site_statistics()
    counts: OutcomeCounts = Field(default_factory=OutcomeCounts)
    total_source_size_bytes: int = 0
    total_target_size_bytes: int = 0
    avg_source_versions: float = 0.0
    avg_target_versions: float = 0.0
    list_counts: ListCounts = Field(default_factory=ListCounts)

    completed_at: Optional[datetime] = None

    @property
    def total_source_documents(self) -> int:
        return self.counts.found + self.counts.source_only

    @property
    def total_target_documents(self) -> int:
        return self.counts.found + self.counts.target_only

    @property
    def percent_found(self) -> float:
        total = self.total_source_documents
        return self.counts.found / total * 100 if total else 100.0

    @property
    def percent_not_found(self) -> float:
        total = self.total_source_documents
        return self.counts.source_only / total * 100 if total else 0.0

    @property
    def percent_target_only(self) -> float:
        total = self.total_target_documents
        return self.counts.target_only / total * 100 if total else 0.0

    @property
    def has_issues(self) -> bool:
        return (
            not self.success
            or self.counts.size_issue > 0
            or self.counts.source_only > 0
            or self.counts.newer_at_source > 0
            or self.list_counts.mismatch > 0
            or self.list_counts.source_only > 0
            or self.list_counts.target_only > 0
        )


class RunResult(BaseModel):
    """Represents the complete result of a document compare task execution."""

    task_id: str
    run_id: str = Field(default_factory=lambda: str(uuid.uuid4())[:8])
    executed_at_utc: datetime = Field(default_factory=utcnow)
    completed_at_utc: Optional[datetime] = None
    status: RunStatus = RunStatus.PENDING
    site_results: List[SiteComparisonResult] = Field(default_factory=list)
    throttle_retry_count: int = 0
    execution_log: List[str] = Field(default_factory=list)

    @property
    def duration(self) -> timedelta:
        return (self.completed_at_utc or utcnow()) - self.executed_at_utc

    @property
    def successful_pairs(self) -> int:
        return sum(1 for s in self.site_results if s.success)

    @property
    def failed_pairs(self) -> int:
        return sum(1 for s in self.site_results if not s.success)

    def successful_source_urls(self) -> Set[str]:
        return {s.source_url.casefold() for s in self.site_results if s.success}

    def iter_items(self) -> Iterator[ComparisonItem]:
        """All comparison items flattened across site pairs."""
        for site in self.site_results:
            yield from site.items

    def sites_with_issues(self) -> List[SiteComparisonResult]:
        return [s for s in self.site_results if s.has_issues]


@dataclass
class ProgressEvent:
    """Emitted after every processed site pair."""
    percent_complete: int
    message: str
    completed_site_result: Optional[SiteComparisonResult] = None


@dataclass
class Credentials:
    """Authentication cookies captured for a tenant."""
    tenant_id: str
    fed_auth: str
    rt_fa: str
    user_email: str = ""
    captured_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= utcnow()

    @property
    def is_valid(self) -> bool:
        return bool(self.fed_auth) and bool(self.rt_fa) and not self.is_expired


class CancellationToken:
    """Cooperative cancellation flag checked between site pairs."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()
