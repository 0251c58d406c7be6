"""Unit tests for DynamoDB event store."""
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import boto3
import pytest
from botocore.exceptions import ClientError, EndpointConnectionError
from moto import mock_aws

from processor.models import (
    PLACEHOLDER_IMAGE_URL,
    CandidateRecord,
    EventRecord,
    EventStatus,
    SourceReport,
)
from processor.reconciler import Reconciler
from storage.base import BulkUpdateResult, StoreError
from storage.dynamodb_store import DynamoDBEventStore

TABLE_NAME = 'test-scraped-events'
NOW = datetime(2026, 10, 19, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def dynamodb_table():
    """Create a mock DynamoDB table for testing."""
    with mock_aws():
        dynamodb = boto3.resource('dynamodb', region_name='us-east-1')

        table = dynamodb.create_table(
            TableName=TABLE_NAME,
            KeySchema=[
                {'AttributeName': 'external_url', 'KeyType': 'HASH'}
            ],
            AttributeDefinitions=[
                {'AttributeName': 'external_url', 'AttributeType': 'S'},
                {'AttributeName': 'id', 'AttributeType': 'S'}
            ],
            GlobalSecondaryIndexes=[
                {
                    'IndexName': 'id-index',
                    'KeySchema': [
                        {'AttributeName': 'id', 'KeyType': 'HASH'}
                    ],
                    'Projection': {'ProjectionType': 'ALL'}
                }
            ],
            BillingMode='PAY_PER_REQUEST'
        )

        yield table


@pytest.fixture
def event_store(dynamodb_table):
    """Create DynamoDBEventStore instance with mock table."""
    return DynamoDBEventStore(TABLE_NAME, region_name='us-east-1')


@pytest.fixture
def sample_record():
    """Create a sample EventRecord for testing."""
    return EventRecord(
        external_url='https://www.eventbrite.com/e/jazz-night-111',
        title='Jazz Night',
        source_id='eventbrite',
        venue='Sydney',
        occurs_at=datetime(2026, 11, 2, 8, 0, tzinfo=timezone.utc),
        image_url='https://img.evbuc.com/jazz.jpg',
        last_scraped_at=NOW
    )


def make_record(i, source_id='eventbrite', status=EventStatus.NEW, last_scraped_at=NOW):
    return EventRecord(
        external_url=f'https://ex.com/{i}',
        title=f'Event {i}',
        source_id=source_id,
        status=status,
        image_url=PLACEHOLDER_IMAGE_URL,
        last_scraped_at=last_scraped_at
    )


def test_find_by_key_missing(event_store):
    """Test find_by_key returns None for unknown keys."""
    assert event_store.find_by_key('https://ex.com/missing') is None


def test_upsert_creates_record_with_id(event_store, sample_record):
    """Test upsert assigns an id and persists every field."""
    stored = event_store.upsert(sample_record)

    assert stored.id
    fetched = event_store.find_by_key(sample_record.external_url)
    assert fetched == stored
    assert fetched.title == 'Jazz Night'
    assert fetched.venue == 'Sydney'
    assert fetched.occurs_at == sample_record.occurs_at
    assert fetched.last_scraped_at == NOW
    assert fetched.status == EventStatus.NEW
    assert fetched.imported_at is None


def test_upsert_existing_keeps_id(event_store, sample_record):
    """Test that replacing a record never changes its id."""
    first = event_store.upsert(sample_record)

    second = event_store.upsert(replace(sample_record, title='Jazz Night (late show)', id='other'))

    assert second.id == first.id
    assert second.title == 'Jazz Night (late show)'


def test_upsert_removes_cleared_fields(event_store, sample_record):
    """Test that fields set to None are removed from the item."""
    event_store.upsert(sample_record)

    event_store.upsert(replace(sample_record, venue=None))

    assert event_store.find_by_key(sample_record.external_url).venue is None


def test_find_by_id(event_store, sample_record):
    """Test lookup by store-assigned id."""
    stored = event_store.upsert(sample_record)

    assert event_store.find_by_id(stored.id).external_url == sample_record.external_url
    assert event_store.find_by_id('no-such-id') is None


def test_query_by_status(event_store):
    """Test query_by_status filters on status."""
    event_store.upsert(make_record(1, status=EventStatus.NEW))
    event_store.upsert(make_record(2, status=EventStatus.IMPORTED))
    event_store.upsert(make_record(3, status=EventStatus.UPDATED))

    public = event_store.query_by_status([EventStatus.IMPORTED, EventStatus.UPDATED])

    assert sorted(r.external_url for r in public) == ['https://ex.com/2', 'https://ex.com/3']
    assert event_store.query_by_status([]) == []


def test_bulk_conditional_update(event_store):
    """Test that unseen records of the given sources are patched."""
    earlier = NOW - timedelta(hours=6)
    event_store.upsert(make_record(1, last_scraped_at=earlier))
    event_store.upsert(make_record(2, last_scraped_at=earlier))
    event_store.upsert(make_record(3, source_id='meetup', last_scraped_at=earlier))
    event_store.upsert(make_record(4, status=EventStatus.INACTIVE, last_scraped_at=earlier))

    result = event_store.bulk_conditional_update(
        seen_keys={'https://ex.com/1'},
        source_ids=['eventbrite'],
        patch={'status': EventStatus.INACTIVE},
        scraped_before=NOW
    )

    assert result.changed == 1
    assert event_store.find_by_key('https://ex.com/1').status == EventStatus.NEW
    assert event_store.find_by_key('https://ex.com/2').status == EventStatus.INACTIVE
    assert event_store.find_by_key('https://ex.com/3').status == EventStatus.NEW


def test_bulk_conditional_update_skips_recently_scraped(event_store):
    """Test that records refreshed after the run started are left alone."""
    event_store.upsert(make_record(1, last_scraped_at=NOW + timedelta(minutes=5)))

    result = event_store.bulk_conditional_update(
        seen_keys=set(),
        source_ids=['eventbrite'],
        patch={'status': EventStatus.INACTIVE},
        scraped_before=NOW
    )

    assert result.changed == 0
    assert event_store.find_by_key('https://ex.com/1').status == EventStatus.NEW


def test_bulk_conditional_update_no_sources(event_store):
    """Test that an empty source list changes nothing."""
    event_store.upsert(make_record(1))

    assert event_store.bulk_conditional_update(
        set(), [], {'status': EventStatus.INACTIVE}
    ) == BulkUpdateResult()


def test_bulk_conditional_update_paginated(event_store):
    """Test patching more records than fit a single batch."""
    for i in range(30):
        event_store.upsert(make_record(i, last_scraped_at=NOW - timedelta(days=1)))

    result = event_store.bulk_conditional_update(
        seen_keys=set(),
        source_ids=['eventbrite'],
        patch={'status': EventStatus.INACTIVE},
        scraped_before=NOW
    )

    assert result.changed == 30
    assert len(event_store.query_by_status([EventStatus.INACTIVE])) == 30


def test_missing_table_raises_store_error():
    """Test that client errors surface as StoreError."""
    with mock_aws():
        store = DynamoDBEventStore('no-such-table', region_name='us-east-1')

        with pytest.raises(StoreError):
            store.find_by_key('https://ex.com/1')


def throttled(operation):
    return ClientError(
        {'Error': {'Code': 'ProvisionedThroughputExceededException', 'Message': 'Rate exceeded'}},
        operation
    )


def unreachable():
    return EndpointConnectionError(endpoint_url='https://dynamodb.us-east-1.amazonaws.com')


def failing_for(method, external_url, error_factory):
    """Wrap a table method so calls for one key raise and the rest go through."""
    def call(**kwargs):
        if kwargs['Key']['external_url'] == external_url:
            raise error_factory()
        return method(**kwargs)
    return call


def test_connection_error_raises_store_error(event_store, sample_record):
    """Test that botocore transport errors surface as StoreError."""
    event_store.upsert(sample_record)

    with patch.object(event_store.table, 'get_item', side_effect=unreachable()):
        with pytest.raises(StoreError):
            event_store.find_by_key(sample_record.external_url)

    with patch.object(event_store.table, 'update_item', side_effect=unreachable()):
        with pytest.raises(StoreError):
            event_store.upsert(sample_record)

    with patch.object(event_store.table, 'scan', side_effect=unreachable()):
        with pytest.raises(StoreError):
            event_store.query_by_status([EventStatus.NEW])


def test_bulk_conditional_update_counts_failed_items(event_store):
    """Test that a failing item write is counted and the other items are still patched."""
    earlier = NOW - timedelta(hours=6)
    for i in range(3):
        event_store.upsert(make_record(i, last_scraped_at=earlier))
    update_item = event_store.table.update_item

    with patch.object(event_store.table, 'update_item',
                      side_effect=failing_for(update_item, 'https://ex.com/1',
                                              lambda: throttled('UpdateItem'))):
        result = event_store.bulk_conditional_update(
            seen_keys=set(),
            source_ids=['eventbrite'],
            patch={'status': EventStatus.INACTIVE},
            scraped_before=NOW
        )

    assert result.changed == 2
    assert result.failed == 1
    assert 'https://ex.com/1' in result.errors[0]
    assert event_store.find_by_key('https://ex.com/1').status == EventStatus.NEW
    assert event_store.find_by_key('https://ex.com/2').status == EventStatus.INACTIVE


def test_bulk_conditional_update_counts_connection_errors(event_store):
    """Test that transport errors on an item write are counted, not raised."""
    event_store.upsert(make_record(1, last_scraped_at=NOW - timedelta(hours=6)))

    with patch.object(event_store.table, 'update_item', side_effect=unreachable()):
        result = event_store.bulk_conditional_update(
            seen_keys=set(),
            source_ids=['eventbrite'],
            patch={'status': EventStatus.INACTIVE},
            scraped_before=NOW
        )

    assert result.changed == 0
    assert result.failed == 1
    assert len(result.errors) == 1


def test_malformed_item_raises_store_error(event_store, dynamodb_table):
    """Test that an unreadable item is an error on lookup and skipped in listings."""
    event_store.upsert(make_record(1))
    dynamodb_table.put_item(Item={
        'external_url': 'https://ex.com/broken',
        'id': 'broken-id',
        'title': 'Broken',
        'source_id': 'eventbrite',
        'status': 'new',
        'last_scraped_at': 'yesterday'
    })

    with pytest.raises(StoreError):
        event_store.find_by_key('https://ex.com/broken')
    with pytest.raises(StoreError):
        event_store.find_by_id('broken-id')

    listed = event_store.query_by_status([EventStatus.NEW])
    assert [r.external_url for r in listed] == ['https://ex.com/1']


def ingest(title, i):
    return CandidateRecord(title=title, external_url=f'https://ex.com/{i}', source_id='eventbrite')


def reconcile_on(event_store, candidates):
    report = {'eventbrite': SourceReport('eventbrite', succeeded=True, item_count=len(candidates))}
    return Reconciler(event_store, clock=lambda: NOW).reconcile(candidates, report)


def test_reconcile_connection_error_on_one_record(event_store):
    """Test that a transport error on one record is counted and the run continues."""
    get_item = event_store.table.get_item

    with patch.object(event_store.table, 'get_item',
                      side_effect=failing_for(get_item, 'https://ex.com/2', unreachable)):
        summary = reconcile_on(event_store, [ingest('One', 1), ingest('Two', 2), ingest('Three', 3)])

    assert summary.created == 2
    assert summary.write_failures == 1
    assert 'https://ex.com/2' in summary.errors[0]
    assert event_store.find_by_key('https://ex.com/1').title == 'One'
    assert event_store.find_by_key('https://ex.com/2') is None
    assert event_store.find_by_key('https://ex.com/3').title == 'Three'


def test_reconcile_staleness_write_failure(event_store):
    """Test that a failed inactive write shows up in the run summary."""
    earlier = NOW - timedelta(hours=6)
    for i in range(1, 4):
        event_store.upsert(make_record(i, last_scraped_at=earlier))
    update_item = event_store.table.update_item

    with patch.object(event_store.table, 'update_item',
                      side_effect=failing_for(update_item, 'https://ex.com/3',
                                              lambda: throttled('UpdateItem'))):
        summary = reconcile_on(event_store, [ingest('Event 1', 1)])

    assert summary.updated == 1
    assert summary.marked_inactive == 1
    assert summary.write_failures == 1
    assert 'https://ex.com/3' in summary.errors[0]
    assert event_store.find_by_key('https://ex.com/2').status == EventStatus.INACTIVE
    assert event_store.find_by_key('https://ex.com/3').status == EventStatus.NEW


def test_reconcile_malformed_item_not_recreated(event_store, dynamodb_table):
    """Test that an unreadable stored item is reported instead of re-created as new."""
    dynamodb_table.put_item(Item={
        'external_url': 'https://ex.com/1',
        'id': 'kept-id',
        'title': 'Curated',
        'source_id': 'eventbrite',
        'status': 'imported',
        'occurs_at': 'soon'
    })

    summary = reconcile_on(event_store, [ingest('Fresh', 1)])

    assert summary.created == 0
    assert summary.updated == 0
    assert summary.write_failures == 1
    item = dynamodb_table.get_item(Key={'external_url': 'https://ex.com/1'})['Item']
    assert item['status'] == 'imported'
    assert item['title'] == 'Curated'
