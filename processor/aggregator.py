"""Aggregator that runs all source adapters concurrently."""
import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Dict, List, Sequence, Tuple

from processor.models import AggregateResult, CandidateRecord, FetchResult, SourceReport
from scraper.base import SourceAdapter

logger = logging.getLogger(__name__)


class Aggregator:
    """Fans out to every adapter and collects candidates plus a per-source report."""

    def __init__(self, adapters: Sequence[SourceAdapter], fetch_timeout: float = 60):
        """
        Initialize the aggregator.

        Args:
            adapters: Source adapters, each with a unique source_id
            fetch_timeout: Default upper bound in seconds for one adapter fetch

        Raises:
            ValueError: If two adapters share a source_id
        """
        source_ids = [adapter.source_id for adapter in adapters]
        duplicates = sorted({sid for sid in source_ids if source_ids.count(sid) > 1})
        if duplicates:
            raise ValueError(f"Duplicate adapter source ids: {', '.join(duplicates)}")

        self.adapters = list(adapters)
        self.fetch_timeout = fetch_timeout

    def run_all(self) -> AggregateResult:
        """
        Run every adapter and wait for all of them to settle.

        A failing or timed-out adapter is reported as failed and contributes
        no candidates; it never fails the run.

        Returns:
            AggregateResult with concatenated candidates and the source report
        """
        if not self.adapters:
            logger.warning("No source adapters configured")
            return AggregateResult(candidates=[], report={})

        logger.info(f"Running {len(self.adapters)} source adapters")
        started = time.monotonic()

        executor = ThreadPoolExecutor(
            max_workers=len(self.adapters),
            thread_name_prefix='source-adapter'
        )
        try:
            futures = [
                (adapter, executor.submit(adapter.fetch))
                for adapter in self.adapters
            ]
            candidates, report = self._collect(futures, started)
        finally:
            # Hung adapters are abandoned, not awaited
            executor.shutdown(wait=False, cancel_futures=True)

        failed = [sid for sid, r in report.items() if not r.succeeded]
        logger.info(
            f"Aggregation complete: {len(candidates)} candidates, "
            f"{len(report) - len(failed)} sources succeeded, {len(failed)} failed"
        )
        if len(failed) == len(report):
            logger.error("All sources failed; no candidates collected")

        return AggregateResult(candidates=candidates, report=report)

    def _collect(
        self,
        futures: List[Tuple[SourceAdapter, 'Future[FetchResult]']],
        started: float
    ) -> Tuple[List[CandidateRecord], Dict[str, SourceReport]]:
        candidates: List[CandidateRecord] = []
        report: Dict[str, SourceReport] = {}

        for adapter, future in futures:
            timeout = getattr(adapter, 'fetch_timeout', None) or self.fetch_timeout
            remaining = max(0.0, started + timeout - time.monotonic())

            try:
                result = future.result(timeout=remaining)
            except FuturesTimeoutError:
                reason = f"timed out after {timeout}s"
                logger.error(f"Source {adapter.source_id} {reason}")
                report[adapter.source_id] = SourceReport(
                    source_id=adapter.source_id,
                    succeeded=False,
                    reason=reason,
                    duration_seconds=time.monotonic() - started
                )
                continue
            except Exception as e:
                logger.error(
                    f"Source {adapter.source_id} failed: {e}",
                    extra={'error_type': type(e).__name__},
                    exc_info=True
                )
                report[adapter.source_id] = SourceReport(
                    source_id=adapter.source_id,
                    succeeded=False,
                    reason=f"{type(e).__name__}: {e}",
                    duration_seconds=time.monotonic() - started
                )
                continue

            candidates.extend(result.candidates)
            report[adapter.source_id] = SourceReport(
                source_id=adapter.source_id,
                succeeded=True,
                item_count=len(result.candidates),
                skipped=result.skipped,
                duration_seconds=time.monotonic() - started
            )

        return candidates, report
