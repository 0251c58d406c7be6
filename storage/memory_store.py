"""In-memory event store for tests and local runs."""
import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from processor.models import EventRecord, EventStatus
from storage.base import BulkUpdateResult, EventStore

logger = logging.getLogger(__name__)


class InMemoryEventStore(EventStore):
    """Dictionary-backed store keyed by external URL."""

    def __init__(self, records: Optional[Iterable[EventRecord]] = None):
        self._lock = threading.Lock()
        self._records: Dict[str, EventRecord] = {}
        for record in records or []:
            self.upsert(record)

    def __len__(self) -> int:
        return len(self._records)

    def find_by_key(self, external_url: str) -> Optional[EventRecord]:
        with self._lock:
            record = self._records.get(external_url)
            return replace(record) if record else None

    def find_by_id(self, event_id: str) -> Optional[EventRecord]:
        with self._lock:
            for record in self._records.values():
                if record.id == event_id:
                    return replace(record)
        return None

    def upsert(self, record: EventRecord) -> EventRecord:
        with self._lock:
            existing = self._records.get(record.external_url)
            if existing is not None:
                event_id = existing.id
            else:
                event_id = record.id or uuid.uuid4().hex
            stored = replace(record, id=event_id)
            self._records[record.external_url] = stored
            return replace(stored)

    def bulk_conditional_update(
        self,
        seen_keys: Iterable[str],
        source_ids: Iterable[str],
        patch: Dict[str, Any],
        scraped_before: Optional[datetime] = None
    ) -> BulkUpdateResult:
        seen = set(seen_keys)
        sources = set(source_ids)
        changed = 0

        with self._lock:
            for key, record in self._records.items():
                if key in seen or record.source_id not in sources:
                    continue
                if scraped_before is not None and record.last_scraped_at is not None \
                        and record.last_scraped_at >= scraped_before:
                    continue
                if all(getattr(record, name) == value for name, value in patch.items()):
                    continue
                self._records[key] = replace(record, **patch)
                changed += 1

        logger.info(f"Bulk update changed {changed} records")
        return BulkUpdateResult(changed=changed)

    def query_by_status(self, statuses: Iterable[EventStatus]) -> List[EventRecord]:
        wanted = set(statuses)
        with self._lock:
            return [replace(r) for r in self._records.values() if r.status in wanted]
