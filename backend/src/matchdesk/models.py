"""Pydantic models for the review queue controller.

This module defines the domain models for matching records, their ranked
candidates, matching tasks, query specifications and batch results.
"""

import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .review.confidence import normalize


# =============================================================================
# Enumerations
# =============================================================================


class RecordStatus(str, Enum):
    """Review status of a matching record."""

    PENDING = "pending"
    REVIEWING = "reviewing"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    EXCEPTION = "exception"


# Records a reviewer still has to act on
OPEN_STATUSES = frozenset({RecordStatus.PENDING, RecordStatus.EXCEPTION})


class Priority(str, Enum):
    """Reviewer-facing priority hint. Never affects ordering or correctness."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class TaskStatus(str, Enum):
    """Status of a matching task (a container of records)."""

    PENDING = "pending"
    PROCESSING = "processing"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"


class ReviewAction(str, Enum):
    """Actions a reviewer can apply to a record."""

    CONFIRM = "confirm"
    REJECT = "reject"
    CLEAR = "clear"
    LEARN = "learn"


class StatusFilter(str, Enum):
    """Status filter values; UNCONFIRMED matches everything but confirmed."""

    ALL = "all"
    UNCONFIRMED = "unconfirmed"
    PENDING = "pending"
    REVIEWING = "reviewing"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    EXCEPTION = "exception"


class ConfidenceFilter(str, Enum):
    ALL = "all"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SourceFilter(str, Enum):
    """Where the selected match came from."""

    ALL = "all"
    MEMORY = "memory"
    ALGORITHM = "algorithm"


class SortKey(str, Enum):
    """Supported orderings of the filtered record set."""

    DEFAULT = "default"
    CONFIDENCE_DESC = "confidence_desc"
    CONFIDENCE_ASC = "confidence_asc"
    PRICE_DESC = "price_desc"
    PRICE_ASC = "price_asc"
    NAME_ASC = "name_asc"
    NAME_DESC = "name_desc"
    STATUS = "status"
    UPDATED_DESC = "updated_desc"
    UPDATED_ASC = "updated_asc"


class UpdatedSignature(NamedTuple):
    """Cheap per-item fingerprint compared between poll ticks."""

    status: str
    processed_items: int
    completion_percentage: float


# =============================================================================
# Records and candidates
# =============================================================================


class ProductRef(BaseModel):
    """A catalog product referenced by a candidate or a selected match."""

    id: str
    name: str = ""
    brand: str | None = None
    company: str | None = None
    product_code: str | None = None
    box_code: str | None = None
    price: float | None = None


class Candidate(BaseModel):
    """A ranked potential catalog match for a record.

    The raw score is kept as delivered by the matching engine: a 0-100
    number, a tier label, or a breakdown carrying a ``total``.
    """

    product: ProductRef
    score: Any = None
    reason: str | None = None

    @property
    def normalized_score(self) -> float:
        return normalize(self.score)


class SelectedMatch(BaseModel):
    """The match currently attached to a record."""

    product: ProductRef | None = None
    confidence: Any = None
    is_memory_match: bool = False
    match_type: str | None = None


class OriginalLine(BaseModel):
    """The wholesale line as imported."""

    name: str
    price: float | None = None
    brand: str | None = None
    category: str | None = None
    specifications: str | None = None


class Record(BaseModel):
    """One matchable wholesale line item under review."""

    id: str
    task_id: str | None = None
    original: OriginalLine
    candidates: list[Candidate] = Field(default_factory=list)
    selected_match: SelectedMatch | None = None
    status: RecordStatus = RecordStatus.PENDING
    priority: Priority = Priority.NORMAL
    exceptions: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _rank_candidates(self) -> "Record":
        # sorted() is stable, so equal scores keep delivery order
        self.candidates = sorted(
            self.candidates, key=lambda c: c.normalized_score, reverse=True
        )
        return self

    @property
    def best_candidate_score(self) -> float | None:
        """Normalized confidence of the selected match, else the top candidate."""
        if self.selected_match is not None and self.selected_match.confidence is not None:
            return normalize(self.selected_match.confidence)
        if self.candidates and self.candidates[0].score is not None:
            return self.candidates[0].normalized_score
        return None

    @property
    def confidence(self) -> float:
        """Normalized confidence used for sorting and tier filters."""
        return self.best_candidate_score or 0.0

    @property
    def is_open(self) -> bool:
        """Whether the record still awaits a reviewer decision."""
        return self.status in OPEN_STATUSES

    @property
    def is_memory_match(self) -> bool:
        return bool(self.selected_match and self.selected_match.is_memory_match)

    @property
    def signature(self) -> UpdatedSignature:
        return UpdatedSignature(self.status.value, 0, 0.0)

    @property
    def is_stuck(self) -> bool:
        return False

    @property
    def is_in_progress(self) -> bool:
        return self.status == RecordStatus.REVIEWING

    def search_fields(self) -> list[str]:
        """Text fields matched by the free-text search."""
        fields = [self.original.name]
        product = self.selected_match.product if self.selected_match else None
        if product is not None:
            fields.extend([
                product.name,
                product.brand or "",
                product.company or "",
                product.product_code or "",
                product.box_code or "",
            ])
        return fields


# =============================================================================
# Matching tasks
# =============================================================================


class TaskProgress(BaseModel):
    """Item-level progress of a matching task."""

    total_items: int = Field(default=0, ge=0)
    processed_items: int = Field(default=0, ge=0)
    confirmed_items: int = Field(default=0, ge=0)
    pending_items: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "TaskProgress":
        if self.processed_items > self.total_items:
            raise ValueError(
                f"processed_items ({self.processed_items}) exceeds "
                f"total_items ({self.total_items})"
            )
        return self


class MatchingTask(BaseModel):
    """A matching task: the container whose records are reviewed."""

    id: str
    filename: str = ""
    status: TaskStatus = TaskStatus.PENDING
    progress: TaskProgress = Field(default_factory=TaskProgress)
    completion_percentage: float | None = None
    error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def percent_complete(self) -> float:
        if self.completion_percentage is not None:
            return float(self.completion_percentage)
        total = self.progress.total_items
        if total <= 0:
            return 0.0
        return float(round(self.progress.processed_items / total * 100))

    @property
    def signature(self) -> UpdatedSignature:
        return UpdatedSignature(
            self.status.value, self.progress.processed_items, self.percent_complete
        )

    @property
    def is_stuck(self) -> bool:
        """Item progress is complete but the aggregate status has not moved on."""
        return (
            self.status == TaskStatus.PROCESSING
            and self.progress.total_items > 0
            and self.progress.processed_items == self.progress.total_items
        )

    @property
    def is_in_progress(self) -> bool:
        return self.status in (TaskStatus.PENDING, TaskStatus.PROCESSING)


# =============================================================================
# Query, view and results
# =============================================================================


class QuerySpec(BaseModel):
    """What the reviewer is looking at: filters, ordering and page.

    Instances are immutable; use ``with_changes`` to derive a new one so the
    page reset rule is applied consistently.
    """

    task_id: str | None = None
    search_term: str = ""
    status_filter: StatusFilter = StatusFilter.ALL
    confidence_filter: ConfidenceFilter = ConfidenceFilter.ALL
    source_filter: SourceFilter = SourceFilter.ALL
    sort_key: SortKey = SortKey.DEFAULT
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1)

    model_config = ConfigDict(frozen=True)

    # Any change to these resets the page to 1
    FILTER_FIELDS: ClassVar[tuple[str, ...]] = (
        "task_id",
        "search_term",
        "status_filter",
        "confidence_filter",
        "source_filter",
        "sort_key",
        "page_size",
    )

    def with_changes(self, **changes: Any) -> "QuerySpec":
        """Return a copy with ``changes`` applied.

        Changing any filter, sort or page size field resets ``page`` to 1,
        even when a page is passed alongside.
        """
        unknown = set(changes) - set(self.FILTER_FIELDS) - {"page"}
        if unknown:
            raise ValueError(f"Unknown query fields: {sorted(unknown)}")

        data = self.model_dump()
        data.update(changes)
        updated = QuerySpec(**data)
        if any(getattr(updated, name) != getattr(self, name) for name in self.FILTER_FIELDS):
            updated = updated.model_copy(update={"page": 1})
        return updated

    def filter_key(self) -> tuple:
        """Everything except pagination; equal keys select the same records."""
        return tuple(
            getattr(self, name) for name in self.FILTER_FIELDS if name != "page_size"
        )

    def to_params(self, include_page: bool = True) -> dict[str, Any]:
        """Query parameters for the records endpoints."""
        params: dict[str, Any] = {}
        if self.task_id:
            params["taskId"] = self.task_id
        if self.search_term:
            params["search"] = self.search_term
        if self.status_filter != StatusFilter.ALL:
            params["status"] = self.status_filter.value
        if self.confidence_filter != ConfidenceFilter.ALL:
            params["confidence"] = self.confidence_filter.value
        if self.source_filter != SourceFilter.ALL:
            params["source"] = self.source_filter.value
        if self.sort_key != SortKey.DEFAULT:
            params["sortBy"] = self.sort_key.value
        if include_page:
            params["page"] = self.page
            params["limit"] = self.page_size
        return params


class PageView(BaseModel):
    """The visible page produced by the pipeline."""

    items: list[Record] = Field(default_factory=list)
    total_count: int = 0
    total_pages: int = 0
    page: int = 1
    page_size: int = 20

    @classmethod
    def create(cls, ordered: list[Record], page: int, page_size: int) -> "PageView":
        total = len(ordered)
        start = (page - 1) * page_size
        return cls(
            items=ordered[start:start + page_size],
            total_count=total,
            total_pages=math.ceil(total / page_size) if total else 0,
            page=page,
            page_size=page_size,
        )

    @property
    def ids(self) -> list[str]:
        return [record.id for record in self.items]


class RecordPage(BaseModel):
    """One response of the records endpoint."""

    records: list[Record] = Field(default_factory=list)
    total_count: int = 0


class BatchFailure(BaseModel):
    id: str
    reason: str


class BatchResult(BaseModel):
    """Outcome of a batch action. Every submitted id lands in exactly one list."""

    succeeded: list[str] = Field(default_factory=list)
    failed: list[BatchFailure] = Field(default_factory=list)

    @property
    def submitted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def failed_ids(self) -> list[str]:
        return [failure.id for failure in self.failed]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    def fail(self, record_id: str, reason: str) -> None:
        self.failed.append(BatchFailure(id=record_id, reason=reason))

    def extend(self, other: "BatchResult") -> None:
        self.succeeded.extend(other.succeeded)
        self.failed.extend(other.failed)


class StatusCounts(BaseModel):
    """Per-status totals shown next to the filter bar."""

    total: int = 0
    pending: int = 0
    reviewing: int = 0
    confirmed: int = 0
    rejected: int = 0
    exception: int = 0
    memory_matches: int = 0


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notification(BaseModel):
    """A user-facing message raised by the session."""

    level: NotificationLevel
    title: str
    message: str
    record_id: str | None = None
    count: int | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
