"""Listing scraper for pages that embed schema.org Event JSON-LD."""
import json
import logging
from typing import Any, Iterator, Optional

from bs4 import BeautifulSoup

from processor.models import RawListing
from scraper.base import SourceAdapter

logger = logging.getLogger(__name__)


class JsonLdEventScraper(SourceAdapter):
    """
    Scraper for listing pages that publish structured event data.

    Many ticketing and meetup sites embed `<script type="application/ld+json">`
    blocks describing each event, which gives structured dates where HTML
    cards do not.
    """

    source_id = "jsonld"

    def __init__(self, url: str, source_id: Optional[str] = None, **kwargs):
        if source_id:
            self.source_id = source_id
        super().__init__(url=url, **kwargs)

    def _parse_listings(self, html_content: str) -> Iterator[RawListing]:
        soup = BeautifulSoup(html_content, 'html.parser')

        for script in soup.find_all('script', type='application/ld+json'):
            try:
                data = json.loads(script.string or '')
            except ValueError as e:
                logger.warning(f"Skipping malformed JSON-LD block on {self.url}: {e}")
                continue

            for node in self._iter_event_nodes(data):
                yield RawListing(
                    title=self._as_text(node.get('name')),
                    url=self._as_text(node.get('url')),
                    venue=self._location_name(node.get('location')),
                    date=self._as_text(node.get('startDate')),
                    image_url=self._image_url(node.get('image'))
                )

    def _iter_event_nodes(self, data: Any) -> Iterator[dict]:
        """Walk a JSON-LD document and yield every Event-typed node."""
        if isinstance(data, list):
            for item in data:
                yield from self._iter_event_nodes(item)
            return

        if not isinstance(data, dict):
            return

        if '@graph' in data:
            yield from self._iter_event_nodes(data['@graph'])

        if 'itemListElement' in data:
            for element in data['itemListElement'] or []:
                if isinstance(element, dict) and 'item' in element:
                    element = element['item']
                yield from self._iter_event_nodes(element)

        if self._is_event_type(data.get('@type')):
            yield data

    @staticmethod
    def _is_event_type(node_type: Any) -> bool:
        types = node_type if isinstance(node_type, list) else [node_type]
        return any(isinstance(t, str) and t.endswith('Event') for t in types)

    @staticmethod
    def _as_text(value: Any) -> Optional[str]:
        if isinstance(value, str):
            return value
        return None

    @classmethod
    def _location_name(cls, location: Any) -> Optional[str]:
        if isinstance(location, list):
            location = location[0] if location else None
        if isinstance(location, dict):
            return cls._as_text(location.get('name'))
        return cls._as_text(location)

    @classmethod
    def _image_url(cls, image: Any) -> Optional[str]:
        if isinstance(image, list):
            image = image[0] if image else None
        if isinstance(image, dict):
            return cls._as_text(image.get('url'))
        return cls._as_text(image)
