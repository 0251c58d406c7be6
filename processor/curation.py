"""Curation actions and listings used by the admin and public layers."""
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import List

from processor.models import PLACEHOLDER_IMAGE_URL, EventRecord, EventStatus
from storage.base import EventStore, StoreError

logger = logging.getLogger(__name__)

PUBLIC_STATUSES = (EventStatus.IMPORTED, EventStatus.UPDATED)


class EventNotFoundError(Exception):
    """Raised when a curation action targets an unknown event id."""


def mark_imported(store: EventStore, event_id: str, curator: str) -> EventRecord:
    """
    Import an event for publication on behalf of a curator.

    Args:
        store: Event store
        event_id: Store-assigned id of the event
        curator: Identity of the curator (e.g. email)

    Returns:
        The updated record

    Raises:
        EventNotFoundError: If no event has this id
    """
    record = store.find_by_id(event_id)
    if record is None:
        raise EventNotFoundError(f"Event not found: {event_id}")

    imported = replace(
        record,
        status=EventStatus.IMPORTED,
        imported_at=datetime.now(timezone.utc),
        imported_by=curator
    )
    stored = store.upsert(imported)
    logger.info(f"Event {event_id} imported by {curator}")
    return stored


def _occurs_at_sort_key(record: EventRecord):
    return (record.occurs_at is None, record.occurs_at or datetime.min.replace(tzinfo=timezone.utc))


def list_public_events(store: EventStore) -> List[EventRecord]:
    """Published events, soonest first; undated events last."""
    return sorted(store.query_by_status(PUBLIC_STATUSES), key=_occurs_at_sort_key)


def list_admin_events(store: EventStore) -> List[EventRecord]:
    """All events, most recently scraped first."""
    records = store.query_by_status(list(EventStatus))
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(records, key=lambda r: r.last_scraped_at or epoch, reverse=True)


def import_all(store: EventStore, curator: str) -> int:
    """
    Import every event that is not imported yet.

    Returns:
        Count of events imported
    """
    pending = store.query_by_status(
        [EventStatus.NEW, EventStatus.UPDATED, EventStatus.INACTIVE]
    )
    now = datetime.now(timezone.utc)
    count = 0

    for record in pending:
        try:
            store.upsert(replace(
                record,
                status=EventStatus.IMPORTED,
                imported_at=now,
                imported_by=curator
            ))
            count += 1
        except StoreError as e:
            logger.error(f"Failed to import {record.external_url}: {e}")

    logger.info(f"Imported {count} events")
    return count


def backfill_placeholder_images(store: EventStore,
                                placeholder_image_url: str = PLACEHOLDER_IMAGE_URL) -> int:
    """
    Give every event without an image the placeholder image.

    Returns:
        Count of events updated
    """
    count = 0
    for record in store.query_by_status(list(EventStatus)):
        if record.image_url:
            continue
        try:
            store.upsert(replace(record, image_url=placeholder_image_url))
            count += 1
        except StoreError as e:
            logger.error(f"Failed to update image for {record.external_url}: {e}")

    logger.info(f"Updated {count} events")
    return count
