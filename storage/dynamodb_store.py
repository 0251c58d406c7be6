"""DynamoDB-backed event store."""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from processor.models import EventRecord, EventStatus
from storage.base import BulkUpdateResult, EventStore, StoreError

logger = logging.getLogger(__name__)


class DynamoDBEventStore(EventStore):
    """
    Event store on a DynamoDB table.

    The table's partition key is `external_url`; a global secondary index
    `id-index` on `id` serves lookups by store-assigned id.
    """

    ID_INDEX = 'id-index'
    OPTIONAL_FIELDS = ('venue', 'occurs_at', 'image_url', 'last_scraped_at',
                       'imported_at', 'imported_by')

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB resource and table reference.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region, defaults to the environment's region
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBEventStore for table: {table_name}")

    def find_by_key(self, external_url: str) -> Optional[EventRecord]:
        try:
            response = self.table.get_item(Key={'external_url': external_url})
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error reading event {external_url}: {e}")
            raise StoreError(f"Failed to read event {external_url}") from e

        item = response.get('Item')
        return self._item_to_record(item) if item else None

    def find_by_id(self, event_id: str) -> Optional[EventRecord]:
        try:
            response = self.table.query(
                IndexName=self.ID_INDEX,
                KeyConditionExpression=Key('id').eq(event_id)
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error querying event id {event_id}: {e}")
            raise StoreError(f"Failed to read event id {event_id}") from e

        items = response.get('Items', [])
        return self._item_to_record(items[0]) if items else None

    def upsert(self, record: EventRecord) -> EventRecord:
        """
        Create or replace the record in one conditional-free update.

        `if_not_exists` keeps the id of an existing item, so two concurrent
        runs inserting the same URL end up with a single id.
        """
        item = self._record_to_item(record)
        names = {'#id': 'id'}
        values = {':id': record.id or uuid.uuid4().hex}
        set_clauses = ['#id = if_not_exists(#id, :id)']
        remove_clauses = []

        for name in ('title', 'source_id', 'status') + self.OPTIONAL_FIELDS:
            names[f'#{name}'] = name
            if name in item:
                values[f':{name}'] = item[name]
                set_clauses.append(f'#{name} = :{name}')
            else:
                remove_clauses.append(f'#{name}')

        update_expression = 'SET ' + ', '.join(set_clauses)
        if remove_clauses:
            update_expression += ' REMOVE ' + ', '.join(remove_clauses)

        try:
            response = self.table.update_item(
                Key={'external_url': record.external_url},
                UpdateExpression=update_expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues='ALL_NEW'
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error writing event {record.external_url}: {e}")
            raise StoreError(f"Failed to write event {record.external_url}") from e

        return self._item_to_record(response['Attributes'])

    def bulk_conditional_update(
        self,
        seen_keys: Iterable[str],
        source_ids: Iterable[str],
        patch: Dict[str, Any],
        scraped_before: Optional[datetime] = None
    ) -> BulkUpdateResult:
        """
        Scan the candidate sources and patch every unseen record.

        DynamoDB has no multi-item update, so each stale item gets one
        update_item call guarded by a condition on `last_scraped_at`; items
        refreshed by a concurrent run after the scan are skipped. A failed
        item write is counted in the result and the remaining items are
        still patched.
        """
        seen = set(seen_keys)
        sources = sorted(set(source_ids))
        if not sources or not patch:
            return BulkUpdateResult()

        serialized_patch = {name: self._serialize(value) for name, value in patch.items()}
        items = self._scan(Attr('source_id').is_in(sources))
        stale = [
            item for item in items
            if item['external_url'] not in seen and any(
                item.get(name) != value for name, value in serialized_patch.items()
            )
        ]
        logger.info(f"Bulk update: {len(stale)} of {len(items)} scanned items to patch")

        names = {f'#{name}': name for name in serialized_patch}
        values = {f':{name}': value for name, value in serialized_patch.items()}
        update_expression = 'SET ' + ', '.join(f'#{n} = :{n}' for n in serialized_patch)

        condition = Attr('external_url').exists()
        if scraped_before is not None:
            condition = condition & (
                Attr('last_scraped_at').not_exists()
                | Attr('last_scraped_at').lt(self._serialize(scraped_before))
            )

        result = BulkUpdateResult()
        for item in stale:
            try:
                self.table.update_item(
                    Key={'external_url': item['external_url']},
                    UpdateExpression=update_expression,
                    ConditionExpression=condition,
                    ExpressionAttributeNames=names,
                    ExpressionAttributeValues=values
                )
                result.changed += 1
            except (ClientError, BotoCoreError) as e:
                if isinstance(e, ClientError) and \
                        e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                    logger.info(f"Skipped {item['external_url']}: refreshed concurrently")
                    continue
                error_msg = f"Failed to patch event {item['external_url']}: {e}"
                logger.error(error_msg)
                result.failed += 1
                result.errors.append(error_msg)

        logger.info(f"Successfully patched {result.changed} events, {result.failed} failed")
        return result

    def query_by_status(self, statuses: Iterable[EventStatus]) -> List[EventRecord]:
        wanted = sorted(EventStatus(s).value for s in statuses)
        if not wanted:
            return []

        records = []
        for item in self._scan(Attr('status').is_in(wanted)):
            try:
                records.append(self._item_to_record(item))
            except StoreError as e:
                logger.warning(f"Skipping unreadable item in listing: {e}")
        return records

    def _scan(self, filter_expression) -> List[dict]:
        """Scan the table with a filter, following pagination."""
        try:
            response = self.table.scan(FilterExpression=filter_expression)
            items = response.get('Items', [])

            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    FilterExpression=filter_expression,
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise StoreError(f"Failed to scan table {self.table_name}") from e

        return items

    @staticmethod
    def _serialize(value: Any) -> Any:
        if isinstance(value, EventStatus):
            return value.value
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc).isoformat(timespec='microseconds')
        return value

    @staticmethod
    def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(value) if value else None

    def _item_to_record(self, item: dict) -> EventRecord:
        """
        Convert DynamoDB item to EventRecord.

        Args:
            item: DynamoDB item dictionary

        Returns:
            EventRecord

        Raises:
            StoreError: If the item is missing a field or holds an invalid value
        """
        try:
            return EventRecord(
                id=item['id'],
                external_url=item['external_url'],
                title=item['title'],
                source_id=item['source_id'],
                status=EventStatus(item['status']),
                venue=item.get('venue'),
                occurs_at=self._parse_datetime(item.get('occurs_at')),
                image_url=item.get('image_url'),
                last_scraped_at=self._parse_datetime(item.get('last_scraped_at')),
                imported_at=self._parse_datetime(item.get('imported_at')),
                imported_by=item.get('imported_by')
            )
        except (KeyError, ValueError) as e:
            external_url = item.get('external_url', '<unknown>')
            logger.error(f"Failed to convert item {external_url} to EventRecord: {e!r}")
            raise StoreError(f"Unreadable item {external_url}: {e!r}") from e

    def _record_to_item(self, record: EventRecord) -> dict:
        """
        Convert EventRecord to DynamoDB item, omitting empty optional fields.

        Args:
            record: EventRecord object

        Returns:
            DynamoDB item dictionary without the key and id
        """
        item = {
            'title': record.title,
            'source_id': record.source_id,
            'status': self._serialize(record.status)
        }

        for name in self.OPTIONAL_FIELDS:
            value = getattr(record, name)
            if value:
                item[name] = self._serialize(value)

        return item
