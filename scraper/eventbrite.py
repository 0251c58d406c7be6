"""Listing scraper for Eventbrite city discovery pages."""
import logging
from typing import Iterator, Optional

from bs4 import BeautifulSoup

from processor.models import RawListing
from scraper.base import SourceAdapter

logger = logging.getLogger(__name__)


class EventbriteScraper(SourceAdapter):
    """Scraper for an Eventbrite discovery page (e.g. events in one city)."""

    source_id = "eventbrite"
    BASE_URL = "https://www.eventbrite.com/d/australia--sydney/events/"
    DEFAULT_VENUE = "Sydney"
    # Event detail paths are unique; queries only carry affiliate tags
    STRIP_QUERY = True

    def __init__(self, url: Optional[str] = None, timeout: int = 30,
                 default_venue: Optional[str] = None, **kwargs):
        super().__init__(
            url=url or self.BASE_URL,
            timeout=timeout,
            default_venue=default_venue or self.DEFAULT_VENUE,
            **kwargs
        )

    def _parse_listings(self, html_content: str) -> Iterator[RawListing]:
        """
        Parse event cards from the discovery page.

        Every link to an event detail page (`/e/...`) carrying a heading is
        one listing.

        Args:
            html_content: HTML content of the discovery page

        Yields:
            RawListing objects
        """
        soup = BeautifulSoup(html_content, 'html.parser')

        for element in soup.select("a[href*='/e/']"):
            try:
                listing = self._parse_card(element)
            except (AttributeError, KeyError) as e:
                logger.warning(f"Failed to parse event card: {e}")
                continue
            if listing:
                yield listing

    def _parse_card(self, element) -> Optional[RawListing]:
        """
        Parse a single event card.

        Args:
            element: BeautifulSoup anchor element for the card

        Returns:
            RawListing or None if the card has no heading
        """
        title_elem = element.find('h3')
        if title_elem is None:
            return None

        image_url = None
        img_elem = element.find('img')
        if img_elem is not None:
            image_url = img_elem.get('src') or img_elem.get('data-src')

        date = None
        time_elem = element.find('time')
        if time_elem is not None:
            date = time_elem.get('datetime') or time_elem.get_text(strip=True)

        return RawListing(
            title=title_elem.get_text(strip=True),
            url=element.get('href'),
            date=date,
            image_url=image_url
        )
