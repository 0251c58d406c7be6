"""Data models for event ingestion and reconciliation."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


PLACEHOLDER_IMAGE_URL = "https://via.placeholder.com/400x200?text=Event"


class EventStatus(str, Enum):
    """Lifecycle status of a stored event."""
    NEW = "new"
    UPDATED = "updated"
    INACTIVE = "inactive"
    IMPORTED = "imported"


@dataclass
class RawListing:
    """Listing as scraped from a source page, before normalization."""
    title: Optional[str]
    url: Optional[str]
    venue: Optional[str] = None
    date: Optional[str] = None
    image_url: Optional[str] = None


@dataclass
class CandidateRecord:
    """Normalized event observation produced by a source adapter."""
    title: str
    external_url: str
    source_id: str
    venue: Optional[str] = None
    occurs_at: Optional[datetime] = None
    image_url: Optional[str] = None


@dataclass
class EventRecord:
    """Persistent event keyed by its external URL."""
    external_url: str
    title: str
    source_id: str
    status: EventStatus = EventStatus.NEW
    venue: Optional[str] = None
    occurs_at: Optional[datetime] = None
    image_url: Optional[str] = None
    last_scraped_at: Optional[datetime] = None
    imported_at: Optional[datetime] = None
    imported_by: Optional[str] = None
    id: Optional[str] = None


@dataclass
class FetchResult:
    """Output of a single adapter fetch."""
    candidates: List[CandidateRecord]
    skipped: int = 0


@dataclass
class SourceReport:
    """Per-source outcome of one aggregation run."""
    source_id: str
    succeeded: bool
    item_count: int = 0
    skipped: int = 0
    reason: Optional[str] = None
    duration_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        if self.succeeded:
            return {
                'status': 'succeeded',
                'item_count': self.item_count,
                'skipped': self.skipped,
                'duration_seconds': round(self.duration_seconds, 2)
            }
        return {
            'status': 'failed',
            'reason': self.reason,
            'duration_seconds': round(self.duration_seconds, 2)
        }


@dataclass
class AggregateResult:
    """Candidates from all successful adapters plus the per-source report."""
    candidates: List[CandidateRecord]
    report: Dict[str, SourceReport]

    @property
    def succeeded_sources(self) -> List[str]:
        return [sid for sid, r in self.report.items() if r.succeeded]

    @property
    def failed_sources(self) -> List[str]:
        return [sid for sid, r in self.report.items() if not r.succeeded]


@dataclass
class ReconcileSummary:
    """Counts produced by a reconciliation pass."""
    created: int = 0
    updated: int = 0
    marked_inactive: int = 0
    sources_failed: List[str] = field(default_factory=list)
    write_failures: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class RunSummary:
    """Result of one full pipeline run, returned to the trigger."""
    total_candidates: int
    reconcile: ReconcileSummary
    sources: Dict[str, SourceReport]
    duration_seconds: float = 0.0

    @property
    def all_sources_failed(self) -> bool:
        return bool(self.sources) and all(
            not r.succeeded for r in self.sources.values()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_candidates': self.total_candidates,
            'created': self.reconcile.created,
            'updated': self.reconcile.updated,
            'marked_inactive': self.reconcile.marked_inactive,
            'sources_failed': list(self.reconcile.sources_failed),
            'all_sources_failed': self.all_sources_failed,
            'write_failures': self.reconcile.write_failures,
            'errors': list(self.reconcile.errors),
            'sources': {sid: r.to_dict() for sid, r in self.sources.items()},
            'duration_seconds': round(self.duration_seconds, 2)
        }
