"""
Operation Record: one attempt to propagate email_verification_status
from a Supabase contact to a HubSpot contact.

Field names are snake_case in Python and camelCase on the wire
(model_dump(by_alias=True)).
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from sync_errors import sanitize_details
from sync_status import SyncStatus, InitiatedBy


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_operation_id() -> str:
    return f"sync_{uuid.uuid4().hex}"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SyncResult(_CamelModel):
    previous_value: Optional[str] = None
    new_value: str
    target_response: Any = None


class SyncErrorInfo(_CamelModel):
    code: str
    message: str
    retry_count: int = 0
    can_retry: bool = False
    details: dict = Field(default_factory=dict)


class SyncOperation(_CamelModel):
    id: str = Field(default_factory=new_operation_id)
    source_contact_id: int
    target_contact_id: str
    status: str = SyncStatus.PENDING
    requested_value: str
    source_value: Optional[str] = None
    target_value: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    retry_count: int = Field(default=0, ge=0)
    retry_of: Optional[str] = None
    initiated_by: str = InitiatedBy.USER
    result: Optional[SyncResult] = None
    error: Optional[SyncErrorInfo] = None

    @model_validator(mode="after")
    def _check_invariants(self):
        if not SyncStatus.is_valid(self.status):
            raise ValueError(f"Unknown operation status: {self.status}")
        if self.initiated_by not in InitiatedBy.ALL:
            raise ValueError(f"initiated_by must be one of {sorted(InitiatedBy.ALL)}")

        if self.status == SyncStatus.COMPLETED:
            if self.result is None or self.error is not None:
                raise ValueError("A completed operation carries a result and no error")
        elif self.status == SyncStatus.FAILED:
            if self.error is None or self.result is not None:
                raise ValueError("A failed operation carries an error and no result")
        elif self.result is not None or self.error is not None:
            raise ValueError("An active operation carries neither result nor error")

        if self.status == SyncStatus.COMPLETED and self.target_value is None:
            raise ValueError("A completed operation records the value written to HubSpot")
        if self.status != SyncStatus.COMPLETED and self.target_value is not None:
            raise ValueError("target_value is set only on completed operations")

        if self.completed_at is not None:
            if not SyncStatus.is_terminal(self.status):
                raise ValueError("completed_at is set only on terminal operations")
            if self.completed_at < self.started_at:
                raise ValueError("completed_at must not precede started_at")
        elif SyncStatus.is_terminal(self.status):
            raise ValueError("A terminal operation must have completed_at")
        return self

    @property
    def is_active(self) -> bool:
        return self.status in SyncStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return SyncStatus.is_terminal(self.status)

    # ---- transitions (return new records; the registry persists them) ----

    def mark_in_progress(self) -> "SyncOperation":
        return self.model_copy(update={"status": SyncStatus.IN_PROGRESS})

    def mark_completed(self, result: SyncResult, at: Optional[datetime] = None) -> "SyncOperation":
        return self._finish(
            status=SyncStatus.COMPLETED,
            target_value=result.new_value,
            result=result,
            at=at,
        )

    def mark_failed(
        self,
        code: str,
        message: str,
        can_retry: bool,
        details: Optional[dict] = None,
        at: Optional[datetime] = None,
    ) -> "SyncOperation":
        error = SyncErrorInfo(
            code=code,
            message=message,
            retry_count=self.retry_count,
            can_retry=can_retry,
            details=details or {},
        )
        return self._finish(status=SyncStatus.FAILED, error=error, at=at)

    def _finish(self, status: str, at: Optional[datetime] = None, **fields) -> "SyncOperation":
        finished_at = max(at or utc_now(), self.started_at)
        data = self.model_dump()
        data.update(fields, status=status, completed_at=finished_at)
        # Re-validate so a bad transition can never be persisted
        return SyncOperation.model_validate(data)

    def spawn_retry(self) -> "SyncOperation":
        """A fresh pending attempt for the same contacts, one retry further along."""
        return SyncOperation(
            source_contact_id=self.source_contact_id,
            target_contact_id=self.target_contact_id,
            requested_value=self.requested_value,
            source_value=self.source_value,
            retry_count=self.retry_count + 1,
            retry_of=self.id,
            initiated_by=self.initiated_by,
        )

    def to_public(self, include_details: bool = False) -> dict:
        """JSON-ready camelCase dict; error details stripped unless requested."""
        data = self.model_dump(by_alias=True, mode="json")
        if data.get("error") is not None:
            if include_details:
                data["error"]["details"] = sanitize_details(data["error"].get("details") or {})
            else:
                data["error"].pop("details", None)
        return data
