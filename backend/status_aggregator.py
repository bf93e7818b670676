"""
Status Aggregator: per-status counts over the registry and the client poll cadence.

Poll cadence is a pure function of the records passed in, never a stored field:
    single operation still active          -> re-poll in 5s
    collection with any active operation   -> re-poll in 10s
    otherwise                              -> stop polling (None)
"""

from typing import Iterable, Optional

from operation_registry import OperationRegistry
from sync_operation import SyncOperation
from sync_status import SyncStatus

SINGLE_OPERATION_POLL_SECONDS = 5
COLLECTION_POLL_SECONDS = 10


def summarize(operations: Iterable[SyncOperation]) -> dict:
    counts = {
        SyncStatus.COMPLETED: 0,
        SyncStatus.IN_PROGRESS: 0,
        SyncStatus.FAILED: 0,
        SyncStatus.PENDING: 0,
    }
    total = 0
    for operation in operations:
        counts[operation.status] += 1
        total += 1
    return {
        "total": total,
        "completed": counts[SyncStatus.COMPLETED],
        "inProgress": counts[SyncStatus.IN_PROGRESS],
        "failed": counts[SyncStatus.FAILED],
        "pending": counts[SyncStatus.PENDING],
    }


def poll_interval_for_operation(operation: SyncOperation) -> Optional[int]:
    return SINGLE_OPERATION_POLL_SECONDS if operation.is_active else None


def poll_interval_for_collection(operations: Iterable[SyncOperation]) -> Optional[int]:
    return COLLECTION_POLL_SECONDS if any(op.is_active for op in operations) else None


class StatusAggregator:

    def __init__(self, registry: OperationRegistry):
        self.registry = registry

    async def summary(self) -> dict:
        return summarize(await self.registry.list_all())

    async def overview(self) -> tuple[list[SyncOperation], dict]:
        """Operations and their summary from the same snapshot."""
        operations = await self.registry.list_all()
        return operations, summarize(operations)

    async def get(self, operation_id: str) -> SyncOperation:
        return await self.registry.get(operation_id)
