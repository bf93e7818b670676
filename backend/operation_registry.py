"""
Operation Registry: durable storage for sync operation records.

Every method runs in its own short transaction, so concurrent request handlers
(or separate processes pointed at the same DATABASE_URL) only ever observe
committed, internally consistent rows. The single-flight rule is enforced by the
partial unique index on sync_operations.source_contact_id (active rows only):
the insert itself is the atomic check, there is no read-then-write window.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import SyncOperationRow
from sync_errors import NotRetryableError, OperationNotFoundError, SyncConflictError, SyncErrorCode
from sync_operation import SyncOperation
from sync_status import SyncStatus

logger = logging.getLogger(__name__)

# Terminal records older than this are purged by the cleanup loop
DEFAULT_RETENTION = timedelta(hours=24)

# Active records older than this are assumed orphaned by a crashed handler
DEFAULT_STALE_AFTER = timedelta(minutes=10)

# Insert attempts when a conflicting row finishes between the insert and the lookup
_CREATE_ATTEMPTS = 3

_COLUMNS = (
    "id", "source_contact_id", "target_contact_id", "status", "requested_value",
    "source_value", "target_value", "started_at", "completed_at", "retry_count",
    "initiated_by", "retry_of",
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we store is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_record(row: SyncOperationRow) -> SyncOperation:
    data = {name: getattr(row, name) for name in _COLUMNS}
    data["started_at"] = _aware(row.started_at)
    data["completed_at"] = _aware(row.completed_at)
    data["result"] = row.result
    data["error"] = row.error
    return SyncOperation.model_validate(data)


def _apply_record(row: SyncOperationRow, record: SyncOperation) -> None:
    for name in _COLUMNS:
        if name != "id":
            setattr(row, name, getattr(record, name))
    row.result = record.result.model_dump(mode="json") if record.result else None
    row.error = record.error.model_dump(mode="json") if record.error else None
    row.error_code = record.error.code if record.error else None
    row.error_message = record.error.message if record.error else None


class OperationRegistry:
    """Keyed storage of sync operations. The only component that writes them."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def create(self, record: SyncOperation) -> str:
        """
        Insert a new active record.

        Raises:
            SyncConflictError: another pending/in_progress record exists for the same
                source contact. Carries that record's id.
            NotRetryableError: the record retries an operation that already has a retry.
        """
        if not record.is_active:
            raise ValueError("Only pending or in_progress operations can be created")

        for _ in range(_CREATE_ATTEMPTS):
            try:
                async with self.session_factory() as session:
                    async with session.begin():
                        row = SyncOperationRow(id=record.id)
                        _apply_record(row, record)
                        session.add(row)
                logger.info(
                    f"Created sync operation {record.id} "
                    f"(contact={record.source_contact_id}, retry={record.retry_count})"
                )
                return record.id
            except IntegrityError:
                if record.retry_of is not None:
                    successor = await self.find_retry_of(record.retry_of)
                    if successor is not None:
                        raise NotRetryableError(
                            f"Operation {record.retry_of} was already retried as {successor.id}",
                            details={"operationId": record.retry_of, "retriedAs": successor.id},
                        )
                existing = await self.find_active_by_source(record.source_contact_id)
                if existing is not None:
                    logger.info(
                        f"Sync conflict for contact {record.source_contact_id}: "
                        f"operation {existing.id} is {existing.status}"
                    )
                    raise SyncConflictError(record.source_contact_id, existing.id)
                # The blocking row went terminal in the meantime; try again

        raise SyncConflictError(record.source_contact_id, "unknown")

    async def get(self, operation_id: str) -> SyncOperation:
        async with self.session_factory() as session:
            row = await session.get(SyncOperationRow, operation_id)
            if row is None:
                raise OperationNotFoundError(operation_id)
            return _row_to_record(row)

    async def find_active_by_source(self, source_contact_id: int) -> Optional[SyncOperation]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncOperationRow).where(
                    SyncOperationRow.source_contact_id == source_contact_id,
                    SyncOperationRow.status.in_(SyncStatus.ACTIVE),
                )
            )
            row = result.scalars().first()
            return _row_to_record(row) if row else None

    async def find_retry_of(self, operation_id: str) -> Optional[SyncOperation]:
        """The record that retried `operation_id`, if any."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncOperationRow).where(SyncOperationRow.retry_of == operation_id)
            )
            row = result.scalars().first()
            return _row_to_record(row) if row else None

    async def list_all(self) -> list[SyncOperation]:
        """All records, newest first. One query, so the snapshot is consistent."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncOperationRow).order_by(
                    SyncOperationRow.started_at.desc(), SyncOperationRow.id
                )
            )
            return [_row_to_record(row) for row in result.scalars().all()]

    async def list_active(self) -> list[SyncOperation]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncOperationRow)
                .where(SyncOperationRow.status.in_(SyncStatus.ACTIVE))
                .order_by(SyncOperationRow.started_at)
            )
            return [_row_to_record(row) for row in result.scalars().all()]

    async def update(
        self, operation_id: str, mutation: Callable[[SyncOperation], SyncOperation]
    ) -> SyncOperation:
        """
        Apply `mutation` to the stored record inside one transaction.

        The mutation receives the current record and returns the new one. Status
        may only move forward (see SyncStatus.TRANSITIONS); id, contact ids and
        started_at are immutable.
        """
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(SyncOperationRow)
                    .where(SyncOperationRow.id == operation_id)
                    .with_for_update()
                )
                row = result.scalar_one_or_none()
                if row is None:
                    raise OperationNotFoundError(operation_id)

                current = _row_to_record(row)
                updated = mutation(current)

                if not SyncStatus.can_transition(current.status, updated.status):
                    raise ValueError(
                        f"Illegal transition {current.status} -> {updated.status} "
                        f"for operation {operation_id}"
                    )
                if (
                    updated.id != current.id
                    or updated.source_contact_id != current.source_contact_id
                    or updated.target_contact_id != current.target_contact_id
                    or updated.retry_of != current.retry_of
                    or updated.started_at != current.started_at
                ):
                    raise ValueError(f"Immutable fields changed on operation {operation_id}")

                _apply_record(row, updated)

        if updated.status != current.status:
            logger.info(f"Sync operation {operation_id}: {current.status} -> {updated.status}")
        return updated

    async def fail_stale(self, older_than: timedelta = DEFAULT_STALE_AFTER) -> int:
        """Fail active records whose handler evidently died. Returns the count."""
        cutoff = datetime.now(timezone.utc) - older_than
        async with self.session_factory() as session:
            result = await session.execute(
                select(SyncOperationRow.id).where(
                    SyncOperationRow.status.in_(SyncStatus.ACTIVE),
                    SyncOperationRow.started_at < cutoff,
                )
            )
            stale_ids = [row[0] for row in result.all()]

        failed = 0
        for operation_id in stale_ids:
            try:
                await self.update(
                    operation_id,
                    lambda op: op.mark_failed(
                        SyncErrorCode.SYNC_FAILED,
                        "Operation did not finish before the stale timeout",
                        can_retry=True,
                        details={"staleAfterSeconds": int(older_than.total_seconds())},
                    )
                    if op.is_active
                    else op,
                )
                failed += 1
            except ValueError:
                # Finished on its own between the scan and the update
                continue
        if failed:
            logger.warning(f"Failed {failed} stale sync operation(s)")
        return failed

    async def purge_older_than(self, horizon: timedelta = DEFAULT_RETENTION) -> int:
        """Delete terminal records that finished before now - horizon. Returns the count."""
        cutoff = datetime.now(timezone.utc) - horizon
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(SyncOperationRow)
                    .where(
                        SyncOperationRow.status.in_(SyncStatus.TERMINAL),
                        SyncOperationRow.completed_at.is_not(None),
                        SyncOperationRow.completed_at < cutoff,
                    )
                    .execution_options(synchronize_session=False)
                )
                purged = result.rowcount or 0
        if purged:
            logger.info(f"Purged {purged} sync operation(s) older than {horizon}")
        return purged


# Track the running cleanup loop so shutdown can cancel it
_cleanup_task: Optional[asyncio.Task] = None


async def _cleanup_loop(
    registry: OperationRegistry,
    interval: float,
    retention: timedelta,
    stale_after: timedelta,
) -> None:
    while True:
        try:
            await registry.fail_stale(stale_after)
            await registry.purge_older_than(retention)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Sync operation cleanup failed: {e}")
        await asyncio.sleep(interval)


def start_cleanup_loop(
    registry: OperationRegistry,
    interval: float,
    retention: timedelta = DEFAULT_RETENTION,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> asyncio.Task:
    global _cleanup_task
    if _cleanup_task is not None and not _cleanup_task.done():
        return _cleanup_task
    _cleanup_task = asyncio.create_task(_cleanup_loop(registry, interval, retention, stale_after))
    logger.info(f"Started sync operation cleanup loop (every {interval}s)")
    return _cleanup_task


async def stop_cleanup_loop() -> None:
    global _cleanup_task
    if _cleanup_task is None:
        return
    _cleanup_task.cancel()
    try:
        await _cleanup_task
    except asyncio.CancelledError:
        pass
    _cleanup_task = None
