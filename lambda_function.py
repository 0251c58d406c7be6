"""AWS Lambda handler for the event listing ingestion pipeline."""
import json
import logging
import os
import time
from typing import Any, Dict, List

from processor.curation import backfill_placeholder_images, import_all
from processor.models import PLACEHOLDER_IMAGE_URL
from processor.pipeline import run_pipeline
from scraper.base import SourceAdapter
from scraper.eventbrite import EventbriteScraper
from scraper.jsonld import JsonLdEventScraper
from storage.base import EventStore
from storage.dynamodb_store import DynamoDBEventStore
from storage.memory_store import InMemoryEventStore


# Configure JSON logging
class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'message': record.getMessage(),
            'logger': record.name
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def setup_logging(log_level: str = 'INFO') -> None:
    """
    Configure logging with JSON formatter.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    root_logger = logging.getLogger()

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)

    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def _split_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(',') if part.strip()]


def load_config() -> Dict[str, Any]:
    """Read pipeline configuration from environment variables."""
    jsonld_sources = {}
    for entry in _split_list(os.environ.get('JSONLD_URLS', '')):
        name, sep, url = entry.partition('=')
        if not sep:
            raise ValueError(f"JSONLD_URLS entry must be name=url, got {entry!r}")
        jsonld_sources[name.strip()] = url.strip()

    return {
        'table_name': os.environ.get('TABLE_NAME', 'scraped-events'),
        'log_level': os.environ.get('LOG_LEVEL', 'INFO'),
        'timeout_seconds': int(os.environ.get('TIMEOUT_SECONDS', '30')),
        'fetch_timeout_seconds': float(os.environ.get('FETCH_TIMEOUT_SECONDS', '60')),
        'enabled_sources': _split_list(os.environ.get('ENABLED_SOURCES', 'eventbrite')),
        'eventbrite_url': os.environ.get('EVENTBRITE_URL') or EventbriteScraper.BASE_URL,
        'eventbrite_venue': os.environ.get('EVENTBRITE_VENUE') or EventbriteScraper.DEFAULT_VENUE,
        'jsonld_sources': jsonld_sources,
        'placeholder_image_url': os.environ.get('PLACEHOLDER_IMAGE_URL') or PLACEHOLDER_IMAGE_URL,
        'revive_inactive': os.environ.get('REVIVE_INACTIVE', 'false').lower() in ('1', 'true', 'yes'),
        'store_backend': os.environ.get('STORE_BACKEND', 'dynamodb').lower()
    }


def build_adapters(config: Dict[str, Any]) -> List[SourceAdapter]:
    """
    Instantiate the enabled source adapters.

    `eventbrite` enables the Eventbrite scraper; any name configured in
    JSONLD_URLS enables a JSON-LD scraper for that page.
    """
    adapters: List[SourceAdapter] = []
    for name in config['enabled_sources']:
        if name == 'eventbrite':
            adapters.append(EventbriteScraper(
                url=config['eventbrite_url'],
                timeout=config['timeout_seconds'],
                default_venue=config['eventbrite_venue']
            ))
        elif name in config['jsonld_sources']:
            adapters.append(JsonLdEventScraper(
                url=config['jsonld_sources'][name],
                source_id=name,
                timeout=config['timeout_seconds']
            ))
        else:
            raise ValueError(f"Unknown source in ENABLED_SOURCES: {name}")
    return adapters


def build_store(config: Dict[str, Any]) -> EventStore:
    if config['store_backend'] == 'memory':
        return InMemoryEventStore()
    if config['store_backend'] == 'dynamodb':
        return DynamoDBEventStore(table_name=config['table_name'])
    raise ValueError(f"Unknown STORE_BACKEND: {config['store_backend']}")


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Main Lambda handler function.

    The default action runs the ingestion pipeline; `import_all` and
    `backfill_images` run the maintenance tasks.

    Args:
        event: EventBridge or API Gateway event payload
        context: Lambda context object

    Returns:
        Response dict with statusCode and the run summary
    """
    config = load_config()
    setup_logging(config['log_level'])
    logger = logging.getLogger(__name__)

    event = event or {}
    action = event.get('action', 'scrape')
    start_time = time.time()
    logger.info(
        f"Lambda execution started",
        extra={
            'action': action,
            'table_name': config['table_name'],
            'enabled_sources': config['enabled_sources']
        }
    )

    try:
        store = build_store(config)

        if action == 'import_all':
            count = import_all(store, curator=event.get('curator', 'system'))
            return _response(200, {'message': 'Import completed', 'imported': count}, start_time)

        if action == 'backfill_images':
            count = backfill_placeholder_images(store, config['placeholder_image_url'])
            return _response(200, {'message': 'Backfill completed', 'updated': count}, start_time)

        if action != 'scrape':
            return _response(400, {'message': f"Unknown action: {action}"}, start_time)

        adapters = build_adapters(config)
        summary = run_pipeline(
            adapters,
            store,
            fetch_timeout=config['fetch_timeout_seconds'],
            placeholder_image_url=config['placeholder_image_url'],
            revive_inactive=config['revive_inactive']
        )

        logger.info(
            f"Lambda execution completed successfully",
            extra={
                'duration_seconds': round(time.time() - start_time, 2),
                'events_created': summary.reconcile.created,
                'events_updated': summary.reconcile.updated,
                'events_marked_inactive': summary.reconcile.marked_inactive,
                'sources_failed': summary.reconcile.sources_failed
            }
        )

        if summary.all_sources_failed:
            message = 'Scraping completed but every source failed'
        else:
            message = 'Scraping completed'
        return _response(200, {'message': message, 'statistics': summary.to_dict()}, start_time)

    except Exception as e:
        logger.error(
            f"Lambda execution failed: {str(e)}",
            extra={
                'duration_seconds': round(time.time() - start_time, 2),
                'error_type': type(e).__name__
            },
            exc_info=True
        )
        return _response(500, {
            'message': 'Scraping failed',
            'error': str(e),
            'error_type': type(e).__name__
        }, start_time)


def _response(status_code: int, body: Dict[str, Any], start_time: float) -> Dict[str, Any]:
    body['duration_seconds'] = round(time.time() - start_time, 2)
    return {
        'statusCode': status_code,
        'body': json.dumps(body)
    }
