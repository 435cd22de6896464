"""DynamoDB manager for calendar event storage operations."""
import logging
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from processor.errors import PersistenceError
from processor.models import CalendarEvent, TrackingInfo

logger = logging.getLogger(__name__)

TRACKING_FIELDS = ('carrier', 'tracking_number', 'tracking_link', 'state_code')


def compact_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Drop None and empty-string attributes before writing an item."""
    return {key: value for key, value in item.items() if value not in (None, '')}


class DynamoDBManager:
    """Event store backed by a DynamoDB table keyed on event_id."""

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        """
        Initialize DynamoDB client and table reference.

        Args:
            table_name: Name of the DynamoDB table
            region_name: AWS region (default: from the environment)
        """
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBManager for table: {table_name}")

    def fetch_events(self) -> Dict[str, CalendarEvent]:
        """
        Retrieve all events from DynamoDB using Scan operation.

        Returns:
            Dictionary mapping event_id to CalendarEvent objects

        Raises:
            PersistenceError: If the scan fails
        """
        logger.info("Scanning DynamoDB table for all events")
        events = {}

        try:
            response = self.table.scan()
            items = response.get('Items', [])

            # Handle pagination
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error scanning DynamoDB table: {e}")
            raise PersistenceError(f"Failed to scan {self.table_name}: {e}") from e

        for item in items:
            event = self._item_to_event(item)
            if event:
                events[event.event_id] = event

        logger.info(f"Retrieved {len(events)} events from DynamoDB")
        return events

    def upsert_event(self, event: CalendarEvent) -> bool:
        """
        Insert or replace an event keyed by event_id.

        Args:
            event: CalendarEvent to write

        Returns:
            True if the event did not exist before

        Raises:
            PersistenceError: If the write fails
        """
        try:
            response = self.table.put_item(
                Item=self._event_to_item(event),
                ReturnValues='ALL_OLD'
            )
        except ClientError as e:
            logger.warning(f"Error writing event {event.event_id}: {e}")
            raise PersistenceError(
                f"Failed to upsert event {event.event_id}: {e}"
            ) from e

        return 'Attributes' not in response

    def _item_to_event(self, item: dict) -> Optional[CalendarEvent]:
        """
        Convert DynamoDB item to CalendarEvent object.

        Args:
            item: DynamoDB item dictionary

        Returns:
            CalendarEvent object or None if conversion fails
        """
        try:
            tracking = TrackingInfo(
                carrier=item.get('carrier'),
                tracking_number=item.get('tracking_number', ''),
                tracking_link=item.get('tracking_link', ''),
                state_code=item.get('state_code', '')
            )
            return CalendarEvent(
                event_id=item['event_id'],
                title=item.get('title', ''),
                description=item.get('description', ''),
                location=item.get('location', ''),
                start_date=item['start_date'],
                start_time=item.get('start_time'),
                end_date=item['end_date'],
                end_time=item.get('end_time'),
                status=item['status'],
                organizer=item.get('organizer'),
                tracking=None if tracking.is_empty else tracking,
                sync_status=item.get('sync_status', 'pending'),
                last_modified=item.get('last_modified')
            )
        except KeyError as e:
            logger.warning(f"Failed to convert item to CalendarEvent: missing {e}")
            return None

    def _event_to_item(self, event: CalendarEvent) -> dict:
        """
        Convert CalendarEvent object to DynamoDB item.

        Args:
            event: CalendarEvent object

        Returns:
            DynamoDB item dictionary
        """
        item = {
            'event_id': event.event_id,
            'title': event.title,
            'description': event.description,
            'location': event.location,
            'start_date': event.start_date,
            'start_time': event.start_time,
            'end_date': event.end_date,
            'end_time': event.end_time,
            'status': event.status,
            'organizer': event.organizer,
            'sync_status': event.sync_status,
            'last_modified': event.last_modified
        }

        if event.tracking:
            for name in TRACKING_FIELDS:
                item[name] = getattr(event.tracking, name)

        return compact_item(item)
