"""
DynamoDB repository for tasks, submissions and escrow transactions.

Every update is a conditional write on the record's version attribute, and
reviews write the task and submission in one transact_write_items call.
A lost condition becomes ConcurrentModification; throttling and any other
service or connection failure becomes the retryable StoreUnavailable.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import BotoCoreError, ClientError

from taskblitz.config import config
from taskblitz.errors import ConcurrentModification, DuplicateSubmission, StoreUnavailable
from taskblitz.logging import logger
from taskblitz.models import (
    Submission, SubmissionStatus, Task, TaskStatus, Transaction, format_timestamp,
)
from taskblitz.repository import Repository

PAIR_PREFIX = 'PAIR#'

_serializer = TypeSerializer()


def serialize_item(item: Dict[str, Any]) -> Dict[str, Any]:
    """Convert a resource-style item to the low-level attribute format."""
    return {k: _serializer.serialize(v) for k, v in item.items()}


def is_condition_failure(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') == 'ConditionalCheckFailedException'


@contextmanager
def store_errors(action: str):
    """Re-raise DynamoDB failures that escape the block as StoreUnavailable."""
    try:
        yield
    except ClientError as e:
        code = e.response.get('Error', {}).get('Code', 'Unknown')
        logger.error(f"Could not {action}: {code}")
        raise StoreUnavailable(f"Could not {action}", code=code) from e
    except BotoCoreError as e:
        logger.error(f"Could not {action}: {e}")
        raise StoreUnavailable(f"Could not {action}") from e


def query(table, index_name: Optional[str] = None, key_condition: Optional[Any] = None,
          filter_expression: Optional[Any] = None, scan_forward: bool = True) -> List[Dict[str, Any]]:
    """
    Query a DynamoDB table or index, following pagination.

    Args:
        table: boto3 Table resource
        index_name: Optional GSI name
        key_condition: Key condition expression
        filter_expression: Optional filter expression
        scan_forward: True for ascending, False for descending

    Returns:
        All items matching the query
    """
    query_params = {
        'ScanIndexForward': scan_forward
    }

    if index_name:
        query_params['IndexName'] = index_name
    if key_condition is not None:
        query_params['KeyConditionExpression'] = key_condition
    if filter_expression is not None:
        query_params['FilterExpression'] = filter_expression

    items = []
    while True:
        response = table.query(**query_params)
        items.extend(response.get('Items', []))
        last_key = response.get('LastEvaluatedKey')
        if not last_key:
            return items
        query_params['ExclusiveStartKey'] = last_key


class DynamoRepository(Repository):
    """Repository over the tasks, submissions and transactions tables."""

    def __init__(self, dynamodb=None, tasks_table: str = None, submissions_table: str = None,
                 transactions_table: str = None):
        self._dynamodb = dynamodb
        self.tasks_table_name = tasks_table or config.TASKS_TABLE
        self.submissions_table_name = submissions_table or config.SUBMISSIONS_TABLE
        self.transactions_table_name = transactions_table or config.TRANSACTIONS_TABLE

    @property
    def dynamodb(self):
        """Get or create the DynamoDB resource."""
        if self._dynamodb is None:
            self._dynamodb = boto3.resource('dynamodb', region_name=config.AWS_REGION)
        return self._dynamodb

    @property
    def tasks(self):
        return self.dynamodb.Table(self.tasks_table_name)

    @property
    def submissions(self):
        return self.dynamodb.Table(self.submissions_table_name)

    @property
    def transactions(self):
        return self.dynamodb.Table(self.transactions_table_name)

    # =========================================================================
    # Tasks
    # =========================================================================

    def insert_task(self, task: Task) -> Task:
        with store_errors(f"insert task {task.task_id}"):
            try:
                self.tasks.put_item(
                    Item=task.to_item(),
                    ConditionExpression='attribute_not_exists(taskId)'
                )
            except ClientError as e:
                if is_condition_failure(e):
                    raise ConcurrentModification(f"Task {task.task_id} already exists")
                raise
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with store_errors(f"read task {task_id}"):
            response = self.tasks.get_item(Key={'taskId': task_id}, ConsistentRead=True)
        item = response.get('Item')
        return Task.from_item(item) if item else None

    def update_task(self, task: Task, expected_version: int) -> Task:
        item = task.to_item()
        item['version'] = expected_version + 1
        with store_errors(f"update task {task.task_id}"):
            try:
                self.tasks.put_item(
                    Item=item,
                    ConditionExpression=Attr('version').eq(expected_version)
                )
            except ClientError as e:
                if is_condition_failure(e):
                    raise ConcurrentModification(
                        f"Task {task.task_id} changed (expected version {expected_version})"
                    )
                raise
        return Task.from_item(item)

    def list_tasks_by_status(self, statuses: Iterable[str]) -> List[Task]:
        tasks = []
        for status in statuses:
            with store_errors(f"list {status} tasks"):
                items = query(self.tasks, index_name='StatusIndex', key_condition=Key('status').eq(status))
            tasks.extend(Task.from_item(item) for item in items)
        return tasks

    def list_unsettled_tasks(self) -> List[Task]:
        # SettlementIndex is sparse: only terminal, unsettled tasks carry settlementPending
        tasks = []
        for status in sorted(TaskStatus.TERMINAL):
            with store_errors(f"list unsettled {status} tasks"):
                items = query(self.tasks, index_name='SettlementIndex',
                              key_condition=Key('settlementPending').eq(status))
            tasks.extend(Task.from_item(item) for item in items)
        return tasks

    # =========================================================================
    # Submissions
    # =========================================================================

    def insert_submission(self, submission: Submission) -> Submission:
        client = self.dynamodb.meta.client
        with store_errors(f"insert submission {submission.submission_id}"):
            try:
                client.transact_write_items(
                    TransactItems=[
                        # Uniqueness guard for the (task, worker) pair
                        {
                            'Put': {
                                'TableName': self.submissions_table_name,
                                'Item': serialize_item({
                                    'submissionId': PAIR_PREFIX + submission.pair_key,
                                    'pairOf': submission.submission_id,
                                }),
                                'ConditionExpression': 'attribute_not_exists(submissionId)'
                            }
                        },
                        {
                            'Put': {
                                'TableName': self.submissions_table_name,
                                'Item': serialize_item(submission.to_item()),
                                'ConditionExpression': 'attribute_not_exists(submissionId)'
                            }
                        }
                    ]
                )
            except ClientError as e:
                reasons = e.response.get('CancellationReasons', [])
                if reasons and reasons[0].get('Code') == 'ConditionalCheckFailed':
                    raise DuplicateSubmission(
                        f"Worker {submission.worker_id} already submitted to task {submission.task_id}"
                    )
                raise
        return submission

    def get_submission(self, submission_id: str) -> Optional[Submission]:
        with store_errors(f"read submission {submission_id}"):
            response = self.submissions.get_item(Key={'submissionId': submission_id}, ConsistentRead=True)
        item = response.get('Item')
        if not item or 'pairOf' in item:
            return None
        return Submission.from_item(item)

    def save_review(self, task: Task, task_version: int,
                    submission: Submission, submission_version: int) -> Tuple[Task, Submission]:
        task_item = task.to_item()
        task_item['version'] = task_version + 1
        submission_item = submission.to_item()
        submission_item['version'] = submission_version + 1

        with store_errors(f"save review of submission {submission.submission_id}"):
            try:
                self.dynamodb.meta.client.transact_write_items(
                    TransactItems=[
                        {
                            'Put': {
                                'TableName': self.tasks_table_name,
                                'Item': serialize_item(task_item),
                                'ConditionExpression': 'version = :expected',
                                'ExpressionAttributeValues': {':expected': {'N': str(task_version)}}
                            }
                        },
                        {
                            'Put': {
                                'TableName': self.submissions_table_name,
                                'Item': serialize_item(submission_item),
                                'ConditionExpression': 'version = :expected',
                                'ExpressionAttributeValues': {':expected': {'N': str(submission_version)}}
                            }
                        }
                    ]
                )
            except ClientError as e:
                reasons = [r.get('Code') for r in e.response.get('CancellationReasons', [])]
                if 'ConditionalCheckFailed' in reasons:
                    logger.warning(f"Review write for submission {submission.submission_id} lost a race: {reasons}")
                    raise ConcurrentModification(
                        f"Task {task.task_id} or submission {submission.submission_id} changed"
                    )
                raise
        return Task.from_item(task_item), Submission.from_item(submission_item)

    def list_submissions(self, task_id: str) -> List[Submission]:
        with store_errors(f"list submissions of task {task_id}"):
            items = query(self.submissions, index_name='byTask', key_condition=Key('taskId').eq(task_id))
        return [Submission.from_item(item) for item in items]

    def list_pending_submissions(self, submitted_before: datetime) -> List[Submission]:
        with store_errors("list pending submissions"):
            items = query(
                self.submissions,
                index_name='StatusIndex',
                key_condition=Key('status').eq(SubmissionStatus.PENDING),
                filter_expression=Attr('submittedAt').lte(format_timestamp(submitted_before))
            )
        return [Submission.from_item(item) for item in items]

    # =========================================================================
    # Transactions
    # =========================================================================

    def record_transaction(self, transaction: Transaction) -> None:
        # transactionId is the ledger receipt id, so a repeated put rewrites the same row
        with store_errors(f"record {transaction.kind} transaction for task {transaction.task_id}"):
            self.transactions.put_item(Item=transaction.to_item())

    def list_transactions(self, task_id: str) -> List[Transaction]:
        with store_errors(f"list transactions of task {task_id}"):
            items = query(self.transactions, index_name='byTask', key_condition=Key('taskId').eq(task_id))
        return [Transaction.from_item(item) for item in items]
