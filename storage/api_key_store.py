"""DynamoDB storage for issued API keys."""
import logging
from typing import List, Optional

import boto3
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from processor.errors import PersistenceError
from processor.models import ApiKey
from storage.dynamodb_manager import compact_item

logger = logging.getLogger(__name__)


class DynamoDBApiKeyStore:
    """API key store backed by a DynamoDB table keyed on key_id.

    Lookups by hash scan the table with a filter; the table holds a handful
    of keys.
    """

    def __init__(self, table_name: str, region_name: Optional[str] = None):
        self.table_name = table_name
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.table = self.dynamodb.Table(table_name)
        logger.info(f"Initialized DynamoDBApiKeyStore for table: {table_name}")

    def list_api_keys(self) -> List[ApiKey]:
        api_keys = [self._item_to_api_key(item) for item in self._scan()]
        return sorted(api_keys, key=lambda k: k.created_at or '', reverse=True)

    def put_api_key(self, api_key: ApiKey) -> None:
        try:
            self.table.put_item(Item=compact_item({
                'key_id': api_key.key_id,
                'name': api_key.name,
                'key_hash': api_key.key_hash,
                'permissions': list(api_key.permissions),
                'is_active': api_key.is_active,
                'created_at': api_key.created_at,
                'expires_at': api_key.expires_at,
                'last_used_at': api_key.last_used_at
            }))
        except ClientError as e:
            raise PersistenceError(f"Failed to write API key {api_key.key_id}: {e}") from e

    def get_api_key(self, key_id: str) -> Optional[ApiKey]:
        try:
            response = self.table.get_item(Key={'key_id': key_id})
        except ClientError as e:
            raise PersistenceError(f"Failed to read API key {key_id}: {e}") from e

        item = response.get('Item')
        return self._item_to_api_key(item) if item else None

    def find_api_key(self, key_hash: str) -> Optional[ApiKey]:
        """
        Find the key with a given hash.

        Args:
            key_hash: Hex sha256 of the plaintext key

        Returns:
            ApiKey or None if no key matches
        """
        items = self._scan(FilterExpression=Attr('key_hash').eq(key_hash))
        return self._item_to_api_key(items[0]) if items else None

    def delete_api_key(self, key_id: str) -> bool:
        try:
            response = self.table.delete_item(
                Key={'key_id': key_id},
                ReturnValues='ALL_OLD'
            )
        except ClientError as e:
            raise PersistenceError(f"Failed to delete API key {key_id}: {e}") from e

        return 'Attributes' in response

    def mark_api_key_used(self, key_id: str, used_at: str) -> None:
        try:
            self.table.update_item(
                Key={'key_id': key_id},
                UpdateExpression='SET last_used_at = :used_at',
                ConditionExpression=Attr('key_id').exists(),
                ExpressionAttributeValues={':used_at': used_at}
            )
        except ClientError as e:
            raise PersistenceError(
                f"Failed to update last_used_at of API key {key_id}: {e}"
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
            logger.error(f"Error scanning API keys table: {e}")
            raise PersistenceError(f"Failed to scan {self.table_name}: {e}") from e
        return items

    @staticmethod
    def _item_to_api_key(item: dict) -> ApiKey:
        return ApiKey(
            key_id=item['key_id'],
            name=item['name'],
            key_hash=item['key_hash'],
            permissions=list(item.get('permissions', [])),
            is_active=bool(item.get('is_active', True)),
            created_at=item.get('created_at'),
            expires_at=item.get('expires_at'),
            last_used_at=item.get('last_used_at')
        )
