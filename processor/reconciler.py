"""Reconciler that merges candidate records into the event store."""
import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, Mapping

from processor.models import (
    PLACEHOLDER_IMAGE_URL,
    CandidateRecord,
    EventRecord,
    EventStatus,
    ReconcileSummary,
    SourceReport,
)
from storage.base import EventStore, StoreError

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Reconciler:
    """
    Brings the store in line with the latest candidates.

    New keys are created as `new`, known keys are refreshed in place, and
    records that vanished from a source which answered this run are marked
    `inactive`. Curator state survives: an `imported` record only moves to
    `updated` when its content actually changed.
    """

    def __init__(
        self,
        store: EventStore,
        placeholder_image_url: str = PLACEHOLDER_IMAGE_URL,
        clock: Callable[[], datetime] = utc_now,
        revive_inactive: bool = False
    ):
        """
        Initialize the reconciler.

        Args:
            store: Event store to reconcile against
            placeholder_image_url: Image used when a candidate has none
            clock: Source of the current time
            revive_inactive: Move `inactive` records back to `updated` when
                their key reappears
        """
        self.store = store
        self.placeholder_image_url = placeholder_image_url
        self.clock = clock
        self.revive_inactive = revive_inactive

    def reconcile(
        self,
        candidates: Iterable[CandidateRecord],
        report: Mapping[str, SourceReport]
    ) -> ReconcileSummary:
        """
        Reconcile one run's candidates against the store.

        Args:
            candidates: Candidates from every successful source
            report: Per-source outcome from the aggregator

        Returns:
            ReconcileSummary with created/updated/inactive counts and failures
        """
        now = self.clock()
        summary = ReconcileSummary(
            sources_failed=sorted(sid for sid, r in report.items() if not r.succeeded)
        )

        by_key = self._group_by_key(candidates)
        logger.info(
            f"Reconciling {len(by_key)} distinct candidates, "
            f"{len(summary.sources_failed)} failed sources"
        )

        for external_url, candidate in by_key.items():
            try:
                existing = self.store.find_by_key(external_url)
                if existing is None:
                    self.store.upsert(self._new_record(candidate, now))
                    summary.created += 1
                else:
                    self.store.upsert(self._merge(existing, candidate, now))
                    summary.updated += 1
            except StoreError as e:
                error_msg = f"Failed to store {external_url}: {e}"
                logger.error(error_msg)
                summary.write_failures += 1
                summary.errors.append(error_msg)

        summary.marked_inactive = self._mark_stale(set(by_key), report, now, summary)

        logger.info(
            f"Reconcile complete: {summary.created} created, {summary.updated} updated, "
            f"{summary.marked_inactive} marked inactive, "
            f"{summary.write_failures} write failures"
        )
        return summary

    @staticmethod
    def _group_by_key(candidates: Iterable[CandidateRecord]) -> Dict[str, CandidateRecord]:
        """Collapse candidates by external URL; the last one seen wins."""
        by_key: Dict[str, CandidateRecord] = {}
        for candidate in candidates:
            if not candidate.external_url:
                logger.warning(f"Dropping candidate without key: {candidate.title!r}")
                continue
            if candidate.external_url in by_key:
                logger.info(f"Duplicate candidate key in run: {candidate.external_url}")
            by_key[candidate.external_url] = candidate
        return by_key

    def _new_record(self, candidate: CandidateRecord, now: datetime) -> EventRecord:
        return EventRecord(
            external_url=candidate.external_url,
            title=candidate.title,
            source_id=candidate.source_id,
            status=EventStatus.NEW,
            venue=candidate.venue,
            occurs_at=candidate.occurs_at,
            image_url=candidate.image_url or self.placeholder_image_url,
            last_scraped_at=now
        )

    def _merge(self, existing: EventRecord, candidate: CandidateRecord,
               now: datetime) -> EventRecord:
        """
        Overwrite content fields of a stored record with a fresh candidate.

        A candidate without a date keeps the stored date.
        """
        merged = replace(
            existing,
            title=candidate.title,
            venue=candidate.venue,
            occurs_at=candidate.occurs_at or existing.occurs_at,
            image_url=candidate.image_url or self.placeholder_image_url,
            source_id=candidate.source_id,
            last_scraped_at=now
        )

        if existing.status == EventStatus.IMPORTED and self._content_differs(existing, merged):
            logger.info(f"Imported event changed, flagging for review: {existing.external_url}")
            merged.status = EventStatus.UPDATED
        elif existing.status == EventStatus.INACTIVE and self.revive_inactive:
            logger.info(f"Inactive event reappeared: {existing.external_url}")
            merged.status = EventStatus.UPDATED

        return merged

    @staticmethod
    def _content_differs(record1: EventRecord, record2: EventRecord) -> bool:
        """Compare content fields, ignoring status and timestamps of the run."""
        return (
            record1.title != record2.title or
            record1.venue != record2.venue or
            record1.occurs_at != record2.occurs_at or
            record1.image_url != record2.image_url or
            record1.source_id != record2.source_id
        )

    def _mark_stale(self, seen_keys: set, report: Mapping[str, SourceReport],
                    now: datetime, summary: ReconcileSummary) -> int:
        """
        Mark records of authoritative sources that were not seen as inactive.

        A source is authoritative when it succeeded and returned at least one
        item. With no candidates at all, nothing is marked.
        """
        if not seen_keys:
            logger.warning("No candidates this run; skipping staleness pass")
            return 0

        authoritative = sorted(
            sid for sid, r in report.items() if r.succeeded and r.item_count > 0
        )
        if not authoritative:
            logger.warning("No authoritative sources this run; skipping staleness pass")
            return 0

        skipped = sorted(set(report) - set(authoritative))
        if skipped:
            logger.info(f"Staleness pass excludes sources: {', '.join(skipped)}")

        try:
            result = self.store.bulk_conditional_update(
                seen_keys=seen_keys,
                source_ids=authoritative,
                patch={'status': EventStatus.INACTIVE},
                scraped_before=now
            )
        except StoreError as e:
            error_msg = f"Staleness pass failed: {e}"
            logger.error(error_msg)
            summary.write_failures += 1
            summary.errors.append(error_msg)
            return 0

        if result.failed:
            logger.error(f"Staleness pass could not mark {result.failed} records inactive")
            summary.write_failures += result.failed
            summary.errors.extend(result.errors)
        return result.changed
