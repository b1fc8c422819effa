"""Domain types for price matching: inputs, results and job records.

Jobs are frozen pydantic models. The registry replaces a job wholesale on
every transition, so any reference a reader holds is a consistent snapshot.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class MatchingModel(str, Enum):
    """Embedding/matching strategy selected for a job."""
    COHERE = "cohere"
    OPENAI = "openai"
    HYBRID = "hybrid"
    LOCAL = "local"

    @classmethod
    def parse(cls, value: str | MatchingModel | None) -> MatchingModel:
        """Accept enum values and the legacy ``v0``/``v1``/``v2`` keys."""
        if isinstance(value, cls):
            return value
        key = (value or "").strip().lower()
        key = _LEGACY_MODEL_KEYS.get(key, key)
        try:
            return cls(key)
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValidationError(f"Unknown model '{value}'. Allowed: {allowed}") from None


_LEGACY_MODEL_KEYS = {"v0": "cohere", "v1": "openai", "v2": "hybrid"}


@dataclass(frozen=True)
class InquiryItem:
    """One BoQ line awaiting a price."""
    description: str
    unit: str | None = None
    quantity: float | None = None
    sheet_name: str | None = None
    row_index: int | None = None


@dataclass(frozen=True)
class PriceListEntry:
    """Reference catalog item."""
    description: str
    rate: float
    code: str | None = None
    category: str | None = None
    unit: str | None = None
    keywords: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MatchOutcome:
    """Best catalog entry for one inquiry description."""
    best_match: str
    best_rate: float
    confidence: float
    similarity: float
    lexical: float
    matched_index: int
    source: str | None = None


class MatchedItem(BaseModel):
    """Priced BoQ line produced by a completed job."""
    model_config = ConfigDict(frozen=True)

    source_description: str
    matched_description: str
    matched_rate: float
    confidence: float = Field(ge=0.0, le=1.0)
    unit: str | None = None
    quantity: float | None = None
    matched_code: str | None = None


class ProgressEvent(BaseModel):
    """One entry of a job's ordered progress stream."""
    model_config = ConfigDict(frozen=True)

    job_id: str
    percent: int = Field(ge=0, le=100)
    message: str
    status: JobStatus
    timestamp: datetime = Field(default_factory=utcnow)


class MatchingJob(BaseModel):
    """Unit of work: one inquiry file against one price-list snapshot."""
    model_config = ConfigDict(frozen=True)

    id: str
    status: JobStatus = JobStatus.PENDING
    model: MatchingModel
    progress: int = Field(default=0, ge=0, le=100)
    logs: tuple[str, ...] = ()
    results: tuple[MatchedItem, ...] | None = None
    error: str | None = None
    file_name: str | None = None
    project_id: str | None = None
    batch_id: str | None = None
    item_count: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def average_confidence(self) -> float:
        if not self.results:
            return 0.0
        return sum(r.confidence for r in self.results) / len(self.results)


class BatchFileResult(BaseModel):
    """Outcome of one file inside a batch."""
    model_config = ConfigDict(frozen=True)

    file_name: str
    job_id: str
    item_count: int = 0
    average_confidence: float = 0.0
    processing_seconds: float = 0.0
    error: str | None = None


class BatchJob(BaseModel):
    """Group of matching jobs submitted together from the bulk-upload path."""
    model_config = ConfigDict(frozen=True)

    id: str
    client_name: str
    project_name: str
    model: MatchingModel
    status: JobStatus = JobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    file_count: int = 0
    job_ids: tuple[str, ...] = ()
    results: tuple[BatchFileResult, ...] = ()
    error: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
