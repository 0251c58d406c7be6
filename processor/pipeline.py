"""One ingestion run: aggregate all sources, then reconcile into the store."""
import logging
import time
from typing import Sequence

from processor.aggregator import Aggregator
from processor.models import PLACEHOLDER_IMAGE_URL, RunSummary
from processor.reconciler import Reconciler
from scraper.base import SourceAdapter
from storage.base import EventStore

logger = logging.getLogger(__name__)


def run_pipeline(
    adapters: Sequence[SourceAdapter],
    store: EventStore,
    fetch_timeout: float = 60,
    placeholder_image_url: str = PLACEHOLDER_IMAGE_URL,
    revive_inactive: bool = False
) -> RunSummary:
    """
    Run every adapter, then reconcile their candidates into the store.

    Each run is self-contained, so invoking it repeatedly is safe.

    Args:
        adapters: Source adapters to fetch from
        store: Event store to reconcile against
        fetch_timeout: Default per-adapter fetch bound in seconds
        placeholder_image_url: Image used when a candidate has none
        revive_inactive: Reactivate inactive records that reappear

    Returns:
        RunSummary with counts and the per-source report
    """
    start_time = time.time()

    aggregate = Aggregator(adapters, fetch_timeout=fetch_timeout).run_all()
    reconciler = Reconciler(
        store,
        placeholder_image_url=placeholder_image_url,
        revive_inactive=revive_inactive
    )
    reconcile_summary = reconciler.reconcile(aggregate.candidates, aggregate.report)

    summary = RunSummary(
        total_candidates=len(aggregate.candidates),
        reconcile=reconcile_summary,
        sources=aggregate.report,
        duration_seconds=time.time() - start_time
    )

    if summary.all_sources_failed:
        logger.error(
            "Pipeline run completed with every source failing",
            extra={'sources_failed': reconcile_summary.sources_failed}
        )
    return summary
