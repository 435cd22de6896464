"""DynamoDB storage for sync run and webhook execution history.

Both tables are append-only: records are written once and never updated.
"""
import logging
from typing import List, Optional

import boto3
from boto3.dynamodb.conditions import Key
from botocore.exceptions import ClientError

from processor.errors import PersistenceError
from processor.models import SyncRun, WebhookExecution
from storage.dynamodb_manager import compact_item

logger = logging.getLogger(__name__)


class DynamoDBHistoryStore:
    """History store backed by two DynamoDB tables.

    The executions table uses webhook_id as partition key and
    ``<executed_at>#<execution_id>`` as sort key, so a descending query
    returns the most recent attempts first.
    """

    def __init__(
        self,
        executions_table: str,
        sync_runs_table: str,
        region_name: Optional[str] = None
    ):
        self.dynamodb = boto3.resource('dynamodb', region_name=region_name)
        self.executions = self.dynamodb.Table(executions_table)
        self.sync_runs = self.dynamodb.Table(sync_runs_table)

    def append_execution(self, execution: WebhookExecution) -> None:
        """
        Write a webhook execution record.

        Args:
            execution: WebhookExecution to store

        Raises:
            PersistenceError: If the write fails
        """
        item = compact_item(execution.to_dict())
        item['sort_key'] = f"{execution.executed_at}#{execution.execution_id}"
        try:
            self.executions.put_item(Item=item)
        except ClientError as e:
            raise PersistenceError(
                f"Failed to record execution {execution.execution_id}: {e}"
            ) from e

    def list_executions(self, webhook_id: str, limit: int = 20) -> List[WebhookExecution]:
        """
        Return the most recent executions of a webhook.

        Args:
            webhook_id: Webhook identifier
            limit: Maximum number of records

        Returns:
            WebhookExecution objects, most recent first
        """
        try:
            response = self.executions.query(
                KeyConditionExpression=Key('webhook_id').eq(webhook_id),
                ScanIndexForward=False,
                Limit=limit
            )
        except ClientError as e:
            raise PersistenceError(
                f"Failed to query executions of webhook {webhook_id}: {e}"
            ) from e

        return [self._item_to_execution(item) for item in response.get('Items', [])]

    def append_sync_run(self, run: SyncRun) -> None:
        try:
            self.sync_runs.put_item(Item=compact_item(run.to_dict()))
        except ClientError as e:
            raise PersistenceError(f"Failed to record sync run {run.run_id}: {e}") from e

    def list_sync_runs(self, limit: int = 20) -> List[SyncRun]:
        """Return the most recent sync runs."""
        try:
            response = self.sync_runs.scan()
            items = response.get('Items', [])
            while 'LastEvaluatedKey' in response:
                response = self.sync_runs.scan(
                    ExclusiveStartKey=response['LastEvaluatedKey']
                )
                items.extend(response.get('Items', []))
        except ClientError as e:
            raise PersistenceError(f"Failed to scan sync runs: {e}") from e

        runs = [self._item_to_sync_run(item) for item in items]
        runs.sort(key=lambda run: run.started_at, reverse=True)
        return runs[:limit]

    @staticmethod
    def _item_to_execution(item: dict) -> WebhookExecution:
        response_status = item.get('response_status')
        return WebhookExecution(
            execution_id=item['execution_id'],
            webhook_id=item['webhook_id'],
            event_type=item['event_type'],
            status=item['status'],
            retry_count=int(item.get('retry_count', 0)),
            executed_at=item['executed_at'],
            duration_ms=int(item.get('duration_ms', 0)),
            response_status=int(response_status) if response_status is not None else None,
            response_body=item.get('response_body'),
            error_message=item.get('error_message')
        )

    @staticmethod
    def _item_to_sync_run(item: dict) -> SyncRun:
        return SyncRun(
            run_id=item['run_id'],
            status=item['status'],
            source=item.get('source', ''),
            started_at=item['started_at'],
            completed_at=item['completed_at'],
            events_added=int(item.get('events_added', 0)),
            events_updated=int(item.get('events_updated', 0)),
            events_deleted=int(item.get('events_deleted', 0)),
            events_failed=int(item.get('events_failed', 0)),
            error_message=item.get('error_message')
        )
