"""
Retry Coordinator: turns a failed, retryable operation into a fresh attempt.

The failed record is never touched: a retry is a new record (new id) carrying the
same contact ids, the same requested value and retry_count + 1. Each failed
record is retried at most once (retry_of is unique), so retry_count along the
chain is what the retry ceiling counts. Retries are always explicit caller
actions; nothing here runs on a timer.
"""

import logging
import os

from operation_registry import OperationRegistry
from sync_errors import NotRetryableError
from sync_executor import SyncExecutor
from sync_operation import SyncOperation
from sync_status import SyncStatus

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = int(os.environ.get("SYNC_MAX_RETRIES", "3"))


def retry_budget_exhausted(operation: SyncOperation, max_retries: int = DEFAULT_MAX_RETRIES) -> bool:
    """True once an operation has used up its retries; callers treat it as a permanent failure."""
    return operation.retry_count >= max_retries


class RetryCoordinator:

    def __init__(self, registry: OperationRegistry, executor: SyncExecutor):
        self.registry = registry
        self.executor = executor

    async def retry(self, operation_id: str) -> SyncOperation:
        """
        Re-run a failed operation as a new record and return its terminal state.

        Raises:
            OperationNotFoundError: unknown operation id
            NotRetryableError: the operation is not failed, or its error is not retryable,
                or it was already retried
            SyncConflictError: another attempt for the same contact is still active
        """
        previous = await self.registry.get(operation_id)

        if previous.status != SyncStatus.FAILED:
            raise NotRetryableError(
                f"Operation {operation_id} is {previous.status}; only failed operations can be retried",
                details={"operationId": operation_id, "status": previous.status},
            )
        if previous.error is None or not previous.error.can_retry:
            raise NotRetryableError(
                f"Operation {operation_id} failed with a non-retryable error",
                details={
                    "operationId": operation_id,
                    "errorCode": previous.error.code if previous.error else None,
                },
            )

        successor = await self.registry.find_retry_of(operation_id)
        if successor is not None:
            raise NotRetryableError(
                f"Operation {operation_id} was already retried as {successor.id}",
                details={"operationId": operation_id, "retriedAs": successor.id},
            )

        attempt = previous.spawn_retry()
        await self.registry.create(attempt)
        logger.info(
            f"Retrying sync operation {operation_id} as {attempt.id} "
            f"(retry {attempt.retry_count})"
        )
        return await self.executor.run(attempt.id)
