"""Source adapter contract shared by all scrapers."""
import logging
from abc import ABC, abstractmethod
from typing import Iterator, Optional

import requests

from processor.candidate_processor import CandidateProcessor
from processor.models import FetchResult, RawListing

logger = logging.getLogger(__name__)


class SourceFetchError(Exception):
    """Raised when a source returns content that cannot be parsed at all."""


class SourceAdapter(ABC):
    """
    Fetches one external listing source and yields candidate records.

    Subclasses provide `source_id`, `url` and `_parse_listings()`. A fetch
    either returns every listing it could normalize or raises; individual
    malformed listings are skipped and counted.
    """

    source_id: str = ''
    # Drop query strings from detail links when building natural keys
    STRIP_QUERY = False
    USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64)"

    def __init__(self, url: str, timeout: int = 30,
                 fetch_timeout: Optional[float] = None,
                 default_venue: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        """
        Initialize the adapter.

        Args:
            url: Listing page to fetch
            timeout: HTTP request timeout in seconds (default: 30)
            fetch_timeout: Upper bound for the whole fetch, enforced by the
                aggregator; None uses the aggregator default
            default_venue: Venue stamped on listings that carry none
            session: Optional requests session to reuse connections
        """
        if not self.source_id:
            raise ValueError(f"{type(self).__name__} must define source_id")

        self.url = url
        self.timeout = timeout
        self.fetch_timeout = fetch_timeout
        self.session = session or requests.Session()
        self.processor = CandidateProcessor(
            source_id=self.source_id,
            base_url=url,
            default_venue=default_venue,
            strip_query=self.STRIP_QUERY
        )

    def fetch(self) -> FetchResult:
        """
        Fetch the listing page and normalize its entries.

        Returns:
            FetchResult with candidates and skipped item count

        Raises:
            requests.RequestException: On network error, timeout or HTTP error
            SourceFetchError: If the response body is empty
        """
        logger.info(f"Fetching {self.source_id} listings from {self.url}")
        html_content = self._fetch_html()
        result = self.processor.process_listings(self._parse_listings(html_content))
        logger.info(
            f"{self.source_id} yielded {len(result.candidates)} candidates "
            f"({result.skipped} skipped)"
        )
        return result

    def _fetch_html(self) -> str:
        response = self.session.get(
            self.url,
            headers={'User-Agent': self.USER_AGENT},
            timeout=self.timeout
        )
        response.raise_for_status()

        if not response.text or not response.text.strip():
            raise SourceFetchError(f"{self.source_id} returned an empty page")
        return response.text

    @abstractmethod
    def _parse_listings(self, html_content: str) -> Iterator[RawListing]:
        """
        Lazily parse raw listings from the page.

        Args:
            html_content: Page content

        Yields:
            RawListing objects, possibly incomplete
        """
