"""DynamoDB storage for webhook subscriptions."""
import logging
from typing import List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.errors import PersistenceError
from processor.models import Webhook
from storage.dynamodb_manager import compact_item

logger = logging.getLogger(__name__)


class DynamoDBWebhookStore:
    """Webhook store backed by a DynamoDB table keyed on webhook_id."""

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBWebhookStore for table: {table_name}")

    def list_webhooks(self) -> List[Webhook]:
        """Return all webhooks, newest first."""
        webhooks = [self._item_to_webhook(item) for item in self._scan()]
        return sorted(webhooks, key=lambda w: w.created_at or '', reverse=True)

    def get_webhook(self, webhook_id: str) -> Optional[Webhook]:
        try:
            response = self.table.get_item(Key={'webhook_id': webhook_id})
        except ClientError as e:
            raise PersistenceError(f"Failed to read webhook {webhook_id}: {e}") from e

        item = response.get('Item')
        return self._item_to_webhook(item) if item else None

    def put_webhook(self, webhook: Webhook) -> None:
        try:
            self.table.put_item(Item=self._webhook_to_item(webhook))
        except ClientError as e:
            raise PersistenceError(
                f"Failed to write webhook {webhook.webhook_id}: {e}"
            ) from e

    def delete_webhook(self, webhook_id: str) -> bool:
        try:
            response = self.table.delete_item(
                Key={'webhook_id': webhook_id},
                ReturnValues='ALL_OLD'
            )
        except ClientError as e:
            raise PersistenceError(f"Failed to delete webhook {webhook_id}: {e}") from e

        return 'Attributes' in response

    def get_active_webhooks(self, event_type: str) -> List[Webhook]:
        """
        Return active webhooks subscribed to event_type.

        Args:
            event_type: Domain event type, e.g. 'calendar.updated'

        Returns:
            List of matching Webhook objects
        """
        items = self._scan(FilterExpression=Attr('active').eq(True))
        webhooks = [self._item_to_webhook(item) for item in items]
        return [webhook for webhook in webhooks if webhook.subscribes_to(event_type)]

    def increment_failure_count(self, webhook_id: str) -> None:
        try:
            self.table.update_item(
                Key={'webhook_id': webhook_id},
                UpdateExpression='ADD failure_count :one',
                ConditionExpression=Attr('webhook_id').exists(),
                ExpressionAttributeValues={':one': 1}
            )
        except ClientError as e:
            raise PersistenceError(
                f"Failed to update failure count of webhook {webhook_id}: {e}"
            ) from e

    def mark_triggered(self, webhook_id: str, triggered_at: str) -> None:
        try:
            self.table.update_item(
                Key={'webhook_id': webhook_id},
                UpdateExpression='SET last_triggered = :triggered_at',
                ConditionExpression=Attr('webhook_id').exists(),
                ExpressionAttributeValues={':triggered_at': triggered_at}
            )
        except ClientError as e:
            raise PersistenceError(
                f"Failed to update last_triggered of webhook {webhook_id}: {e}"
            ) from e

    def _scan(self, **kwargs) -> list:
        try:
            response = self.table.scan(**kwargs)
            items = response.get('Items', [])
            while 'LastEvaluatedKey' in response:
                response = self.table.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey'], **kwargs
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            logger.error(f"Error scanning webhooks table: {e}")
            raise PersistenceError(f"Failed to scan {self.table_name}: {e}") from e
        return items

    @staticmethod
    def _item_to_webhook(item: dict) -> Webhook:
        return Webhook(
            webhook_id=item['webhook_id'],
            name=item['name'],
            url=item['url'],
            events=list(item.get('events', [])),
            active=bool(item.get('active', True)),
            secret=item.get('secret'),
            description=item.get('description'),
            headers=dict(item.get('headers', {})),
            retry_count=int(item.get('retry_count', 3)),
            timeout_ms=int(item.get('timeout_ms', 10000)),
            failure_count=int(item.get('failure_count', 0)),
            created_at=item.get('created_at'),
            last_triggered=item.get('last_triggered')
        )

    @staticmethod
    def _webhook_to_item(webhook: Webhook) -> dict:
        return compact_item({
            'webhook_id': webhook.webhook_id,
            'name': webhook.name,
            'url': webhook.url,
            'events': list(webhook.events),
            'active': webhook.active,
            'secret': webhook.secret,
            'description': webhook.description,
            'headers': dict(webhook.headers),
            'retry_count': webhook.retry_count,
            'timeout_ms': webhook.timeout_ms,
            'failure_count': webhook.failure_count,
            'created_at': webhook.created_at,
            'last_triggered': webhook.last_triggered
        })
