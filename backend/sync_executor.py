"""
Sync Executor: drives one email verification sync from Supabase to HubSpot.

Workflow for a request:
    1. validate the requested status        (no record on failure)
    2. create a pending record              (SyncConflictError if one is active)
    3. pending -> in_progress
    4. validate the Supabase contact        (read-only)
    5. validate the HubSpot contact exists  (read-only)
    6. write the new status to HubSpot      (the only remote write)
    7. completed with result | failed with a classified error

Steps 4-6 are each bounded by `step_timeout`. Failures from step 3 on never escape
to the caller: they are captured in the terminal record, which is what execute()
returns. If the failure write itself raises, the error propagates and the record
stays active until OperationRegistry.fail_stale() reaps it.
"""

import asyncio
import logging
import os
from typing import Callable, Optional

from operation_registry import OperationRegistry
from sync_backends import SourceContactStore, TargetCRM
from sync_errors import (
    ContactNotFoundFault,
    SourceStoreFault,
    StatusValidationError,
    SyncFault,
    TargetAPIFault,
    classify_error,
    error_details,
)
from sync_operation import SyncOperation, SyncResult
from sync_status import EmailVerificationStatus, InitiatedBy

logger = logging.getLogger(__name__)

DEFAULT_STEP_TIMEOUT = float(os.environ.get("SYNC_STEP_TIMEOUT", "12"))

SOURCE_STATUS_FIELD = "email_verification_status"


def validate_status(status) -> str:
    """Reject anything outside the closed set of email verification statuses."""
    if not EmailVerificationStatus.is_valid(status):
        raise StatusValidationError(
            "Invalid email verification status. Must be one of: "
            + ", ".join(EmailVerificationStatus.ORDERED),
            details={"field": "status", "value": status if isinstance(status, str) else repr(status)},
        )
    return status


class SyncExecutor:
    """Runs the validate -> fetch -> update workflow against injected backends."""

    def __init__(
        self,
        registry: OperationRegistry,
        source: SourceContactStore,
        target: TargetCRM,
        classifier: Callable[[Exception], tuple[str, bool]] = classify_error,
        step_timeout: float = DEFAULT_STEP_TIMEOUT,
    ):
        self.registry = registry
        self.source = source
        self.target = target
        self.classifier = classifier
        self.step_timeout = step_timeout

    async def execute(
        self,
        source_contact_id: int,
        target_contact_id: str,
        status: str,
        initiated_by: str = InitiatedBy.USER,
    ) -> SyncOperation:
        """
        Sync `status` for one contact pair and return the terminal record.

        Raises:
            StatusValidationError: status is outside the closed set (no record created)
            SyncConflictError: an operation for this source contact is still active
        """
        validate_status(status)

        operation = SyncOperation(
            source_contact_id=source_contact_id,
            target_contact_id=target_contact_id,
            requested_value=status,
            initiated_by=initiated_by,
        )
        await self.registry.create(operation)
        return await self.run(operation.id)

    async def run(self, operation_id: str) -> SyncOperation:
        """Drive an already-created pending record to a terminal state."""
        try:
            operation = await self.registry.update(operation_id, lambda op: op.mark_in_progress())

            source_contact = await self._step(
                "validate_source",
                self.source.validate_for_sync(operation.source_contact_id),
                on_timeout=SourceStoreFault,
            )
            source_value = source_contact.get(SOURCE_STATUS_FIELD)
            operation = await self.registry.update(
                operation_id, lambda op: op.model_copy(update={"source_value": source_value})
            )

            exists = await self._step(
                "validate_target",
                self.target.exists(operation.target_contact_id),
                on_timeout=TargetAPIFault,
            )
            if not exists:
                raise ContactNotFoundFault(
                    f"HubSpot contact {operation.target_contact_id} not found",
                    details={"targetContactId": operation.target_contact_id},
                )

            target_response = await self._step(
                "update_target",
                self.target.update_field(operation.target_contact_id, operation.requested_value),
                on_timeout=TargetAPIFault,
            )
            result = SyncResult(
                previous_value=None,
                new_value=operation.requested_value,
                target_response=target_response,
            )
            completed = await self.registry.update(operation_id, lambda op: op.mark_completed(result))
        except Exception as e:
            return await self._fail(operation_id, e)

        logger.info(
            f"Synced contact {completed.source_contact_id} -> HubSpot {completed.target_contact_id}: "
            f"{completed.target_value}"
        )
        return completed

    async def _step(self, name: str, awaitable, on_timeout: type[SyncFault]):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.step_timeout)
        except asyncio.TimeoutError:
            raise on_timeout(
                f"Step '{name}' timed out after {self.step_timeout:g}s",
                details={"step": name, "timeoutSeconds": self.step_timeout},
            )
        except SyncFault as fault:
            fault.details.setdefault("step", name)
            raise
        except Exception as e:
            # Untyped errors keep their identity for the classifier; remember the step
            setattr(e, "sync_step", name)
            raise

    async def _fail(self, operation_id: str, error: Exception) -> SyncOperation:
        code, can_retry = self.classifier(error)
        details = error_details(error)
        step = getattr(error, "sync_step", None)
        if step and "step" not in details:
            details["step"] = step

        if isinstance(error, SyncFault):
            logger.warning(f"Sync operation {operation_id} failed with {code}: {error.message}")
            message = error.message
        else:
            logger.error(f"Sync operation {operation_id} failed unexpectedly: {error}", exc_info=error)
            message = str(error) or type(error).__name__

        try:
            return await self.registry.update(
                operation_id,
                lambda op: op.mark_failed(code, message, can_retry=can_retry, details=details),
            )
        except Exception:
            logger.exception(
                f"Could not record failure of sync operation {operation_id}; left for stale cleanup"
            )
            raise
