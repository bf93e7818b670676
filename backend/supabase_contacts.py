"""
Supabase contact store: the source side of the email verification sync.

IMPORTANT: The supabase-py client is SYNCHRONOUS (httpx.Client, not AsyncClient).
Every .execute() call blocks the thread. All calls in this module go through
`_db(fn)`, which runs them in a thread pool via asyncio.to_thread().
"""

import asyncio
import logging
import os
from typing import Optional

from sync_backends import SourceContactStore
from sync_errors import ContactNotFoundFault, SourceStoreFault, ValidationFault

logger = logging.getLogger(__name__)

CONTACTS_TABLE = "contacts"

# Fields a contact needs before its status can be pushed to HubSpot
REQUIRED_SYNC_FIELDS = ("email_verification_status", "hs_object_id", "email")

# PostgREST "no rows" code for single-row reads
PGRST_NO_ROWS = "PGRST116"


async def _db(fn):
    """Run a synchronous Supabase call in a thread pool to avoid blocking the event loop."""
    return await asyncio.to_thread(fn)


def _error_code(error: Exception) -> Optional[str]:
    code = getattr(error, "code", None)
    if code is None and error.args and isinstance(error.args[0], dict):
        code = error.args[0].get("code")
    return code


class SupabaseContactStore(SourceContactStore):
    """Reads contacts from Supabase. Implements the source store interface."""

    def __init__(self, supabase):
        self.supabase = supabase

    async def get_by_id(self, contact_id: int) -> Optional[dict]:
        """Return the contact row, or None if no row has this id."""
        try:
            result = await _db(
                lambda: self.supabase.table(CONTACTS_TABLE)
                .select("*")
                .eq("id", contact_id)
                .limit(1)
                .execute()
            )
        except Exception as e:
            code = _error_code(e)
            if code == PGRST_NO_ROWS:
                return None
            logger.error(f"Supabase query for contact {contact_id} failed: {e}")
            raise SourceStoreFault(
                f"Supabase database query failed: {e}",
                details={"pgCode": code} if code else None,
            )

        rows = result.data or []
        return rows[0] if rows else None

    async def validate_for_sync(self, contact_id: int) -> dict:
        """
        Return the contact if it can be synced.

        Raises:
            ContactNotFoundFault: no such contact
            ValidationFault: one of REQUIRED_SYNC_FIELDS is empty
        """
        contact = await self.get_by_id(contact_id)
        if contact is None:
            raise ContactNotFoundFault(
                f"Supabase contact {contact_id} not found",
                details={"sourceContactId": contact_id},
            )

        missing = [field for field in REQUIRED_SYNC_FIELDS if not contact.get(field)]
        if missing:
            raise ValidationFault(
                f"Supabase contact {contact_id} is missing required fields: {', '.join(missing)}",
                details={"sourceContactId": contact_id, "missingFields": missing},
            )
        return contact

    async def get_contacts_needing_sync(self, limit: int = 100) -> list[dict]:
        """Contacts that have every field required for sync, most recently updated first."""
        try:
            result = await _db(
                lambda: self.supabase.table(CONTACTS_TABLE)
                .select("*")
                .not_.is_("email_verification_status", "null")
                .not_.is_("hs_object_id", "null")
                .not_.is_("email", "null")
                .order("updated_at", desc=True)
                .limit(limit)
                .execute()
            )
        except Exception as e:
            logger.error(f"Supabase query for contacts needing sync failed: {e}")
            raise SourceStoreFault(f"Supabase database query failed: {e}")
        return result.data or []


def create_contact_store() -> SupabaseContactStore:
    """Build a store from SUPABASE_URL / SUPABASE_SERVICE_KEY."""
    url = (os.environ.get("SUPABASE_URL") or "").strip()
    key = (os.environ.get("SUPABASE_SERVICE_KEY") or "").strip()
    if not (url and key):
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY environment variables are required")

    from supabase import create_client
    return SupabaseContactStore(create_client(url, key))
