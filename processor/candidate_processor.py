"""Candidate processor for validating and normalizing scraped listings."""
import logging
import re
from datetime import datetime, timezone
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from processor.models import CandidateRecord, FetchResult, RawListing

logger = logging.getLogger(__name__)

# Query parameters that only track the referral, never identify an event
TRACKING_PARAMS = frozenset({'aff', 'fbclid', 'gclid', 'mc_cid', 'mc_eid', 'ref', 'ref_src'})
TRACKING_PREFIXES = ('utm_',)


def _is_tracking_param(name: str) -> bool:
    name = name.lower()
    return name in TRACKING_PARAMS or name.startswith(TRACKING_PREFIXES)


class CandidateProcessor:
    """Turns raw listings from one source into candidate records."""

    MAX_TITLE_LENGTH = 200
    MAX_VENUE_LENGTH = 200

    def __init__(self, source_id: str, base_url: str,
                 default_venue: Optional[str] = None,
                 strip_query: bool = False):
        """
        Initialize the processor for a single source.

        Args:
            source_id: Identifier stamped on every candidate
            base_url: URL that relative links on the source page resolve against
            default_venue: Venue used when a listing does not carry one
            strip_query: Drop query strings from detail links when keying
        """
        self.source_id = source_id
        self.base_url = base_url
        self.default_venue = default_venue
        self.strip_query = strip_query

    def process_listings(self, listings: Iterable[RawListing]) -> FetchResult:
        """
        Normalize raw listings, skipping the ones that cannot be keyed.

        Args:
            listings: Raw listings, possibly produced lazily by a parser

        Returns:
            FetchResult with valid candidates and the number of skipped listings
        """
        candidates = []
        skipped = 0

        for listing in listings:
            try:
                candidate = self._process_single_listing(listing)
            except (TypeError, ValueError) as e:
                logger.warning(
                    f"Failed to process listing '{listing.title}' "
                    f"from {self.source_id}: {e}"
                )
                candidate = None

            if candidate is None:
                skipped += 1
                continue
            candidates.append(candidate)

        logger.info(
            f"Processed {len(candidates)} valid candidates from {self.source_id}, "
            f"skipped {skipped}"
        )
        return FetchResult(candidates=candidates, skipped=skipped)

    def _process_single_listing(self, listing: RawListing) -> Optional[CandidateRecord]:
        """
        Process a single listing.

        Args:
            listing: Raw listing

        Returns:
            CandidateRecord or None if the listing has no usable title or URL
        """
        title = self._clean_text(listing.title)
        if not title:
            logger.debug(f"Listing without title skipped ({listing.url})")
            return None

        external_url = self.canonicalize_url(listing.url, self.base_url, self.strip_query)
        if not external_url:
            logger.debug(f"Listing '{title}' has no usable URL: {listing.url!r}")
            return None

        venue = self._clean_text(listing.venue) or self.default_venue
        if venue:
            venue = venue[:self.MAX_VENUE_LENGTH]

        return CandidateRecord(
            title=title[:self.MAX_TITLE_LENGTH],
            external_url=external_url,
            source_id=self.source_id,
            venue=venue,
            occurs_at=self.normalize_datetime(listing.date),
            image_url=self._resolve_image_url(listing.image_url)
        )

    @staticmethod
    def _clean_text(value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return re.sub(r'\s+', ' ', value).strip() or None

    @staticmethod
    def canonicalize_url(url: Optional[str], base_url: str,
                         strip_query: bool = False) -> Optional[str]:
        """
        Build the natural key for a listing from its detail link.

        Relative links are resolved against the source page and the fragment
        is dropped. Query parameters are kept because they can identify the
        event (`event.php?id=42`); known tracking parameters are removed.

        Args:
            url: Link as found on the page
            base_url: Page the link was found on
            strip_query: Drop the whole query string, for sources whose
                detail links never rely on one

        Returns:
            Absolute http(s) URL or None if the link is unusable
        """
        if not url or not url.strip():
            return None

        parts = urlsplit(urljoin(base_url, url.strip()))
        if parts.scheme not in ('http', 'https') or not parts.netloc:
            return None

        query = ''
        if not strip_query and parts.query:
            params = [
                (name, value)
                for name, value in parse_qsl(parts.query, keep_blank_values=True)
                if not _is_tracking_param(name)
            ]
            query = urlencode(params)

        return urlunsplit((parts.scheme, parts.netloc.lower(), parts.path or '/', query, ''))

    def _resolve_image_url(self, image_url: Optional[str]) -> Optional[str]:
        if not image_url or not image_url.strip():
            return None

        resolved = urljoin(self.base_url, image_url.strip())
        if urlsplit(resolved).scheme not in ('http', 'https'):
            return None
        return resolved

    @staticmethod
    def normalize_datetime(date_str: Optional[str]) -> Optional[datetime]:
        """
        Parse a listing date into a timezone-aware datetime.

        Naive values are taken to be UTC.

        Args:
            date_str: Date or datetime string in various formats

        Returns:
            datetime or None if the value is absent or unparseable
        """
        if not date_str or not date_str.strip():
            return None

        value = date_str.strip()
        parsed = None

        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError:
            # Try common listing formats
            date_formats = [
                '%Y-%m-%d %H:%M',
                '%m/%d/%Y %I:%M %p',
                '%m/%d/%Y',
                '%B %d, %Y %I:%M %p',
                '%B %d, %Y',
                '%b %d, %Y',
                '%a, %b %d, %Y %I:%M %p',
                '%a, %b %d, %Y',
            ]
            for fmt in date_formats:
                try:
                    parsed = datetime.strptime(value, fmt)
                    break
                except ValueError:
                    continue

        if parsed is None:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
