"""Store interface for persisted event records."""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from processor.models import EventRecord, EventStatus


class StoreError(Exception):
    """Raised when a store operation fails."""


@dataclass
class BulkUpdateResult:
    """Outcome of a bulk update: records patched and records that failed."""
    changed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class EventStore(ABC):
    """Keyed collection of EventRecords, one per external URL."""

    @abstractmethod
    def find_by_key(self, external_url: str) -> Optional[EventRecord]:
        """Return the record stored under an external URL, if any."""

    @abstractmethod
    def find_by_id(self, event_id: str) -> Optional[EventRecord]:
        """Return the record with the given store-assigned id, if any."""

    @abstractmethod
    def upsert(self, record: EventRecord) -> EventRecord:
        """
        Atomically create or replace the record for `record.external_url`.

        A new record is assigned an id; an existing record keeps its id.

        Returns:
            The stored record, with its id set
        """

    @abstractmethod
    def bulk_conditional_update(
        self,
        seen_keys: Iterable[str],
        source_ids: Iterable[str],
        patch: Dict[str, Any],
        scraped_before: Optional[datetime] = None
    ) -> BulkUpdateResult:
        """
        Apply `patch` to every record whose key is not in `seen_keys` and
        whose source is in `source_ids`.

        Records that already match the patch are left alone. When
        `scraped_before` is given, records refreshed at or after that time
        are left alone too.

        Returns:
            BulkUpdateResult with the number of records changed and the
            number of per-record writes that failed

        Raises:
            StoreError: If the candidate records cannot be read at all
        """

    @abstractmethod
    def query_by_status(self, statuses: Iterable[EventStatus]) -> List[EventRecord]:
        """Return every record whose status is in `statuses`."""
