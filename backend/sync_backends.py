"""
Capability interfaces for the two systems the sync orchestrator talks to.
The executor only ever sees these, so tests can swap in fakes.

Implementations raise SyncFault subclasses (sync_errors) for every failure.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional


class SourceContactStore(ABC):
    """System of record holding contacts keyed by integer id (Supabase)."""

    @abstractmethod
    async def get_by_id(self, contact_id: int) -> Optional[dict]:
        """Return the contact row, or None if it does not exist."""

    @abstractmethod
    async def validate_for_sync(self, contact_id: int) -> dict:
        """
        Return the contact if it exists and has every field sync needs.
        Raises ContactNotFoundFault or ValidationFault otherwise.
        """


class TargetCRM(ABC):
    """Downstream CRM receiving the propagated field, keyed by string id (HubSpot)."""

    @abstractmethod
    async def exists(self, contact_id: str) -> bool:
        """True if the contact exists in the CRM."""

    @abstractmethod
    async def update_field(self, contact_id: str, value: str) -> Any:
        """Write the new email verification status. Returns the raw CRM response."""
