"""
HubSpot CRM Integration Module.
Reads and writes the email_verification_status contact property via the CRM v3 API.
Every HTTP failure is raised as a typed SyncFault so the orchestrator can classify it.
"""

import httpx
import logging
import asyncio
import time
import os
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Tuple
from collections import defaultdict

from sync_backends import TargetCRM
from sync_errors import (
    AuthFault,
    ContactNotFoundFault,
    RateLimitedFault,
    TargetAPIFault,
    ValidationFault,
)
from sync_status import EmailVerificationStatus

logger = logging.getLogger(__name__)

HUBSPOT_API_BASE = "https://api.hubapi.com"
HUBSPOT_TIMEOUT = 30.0
HUBSPOT_MAX_REQUESTS_PER_SECOND = 5
HUBSPOT_RATE_LIMIT_WINDOW = 1.0
HUBSPOT_BATCH_LIMIT = 100

HUBSPOT_ACCESS_TOKEN = os.environ.get("HUBSPOT_ACCESS_TOKEN", "")

EMAIL_VERIFICATION_PROPERTY = "email_verification_status"
CONTACT_PROPERTIES = ["firstname", "lastname", "email", EMAIL_VERIFICATION_PROPERTY, "lastmodifieddate"]


class HubSpotRateLimiter:
    """Rate limiter for HubSpot API calls."""

    def __init__(self, max_requests: int = HUBSPOT_MAX_REQUESTS_PER_SECOND, window: float = HUBSPOT_RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window = window
        self._requests = defaultdict(list)
        self._lock = asyncio.Lock()

    async def acquire(self, key: str = "default"):
        async with self._lock:
            now = time.time()
            self._requests[key] = [t for t in self._requests[key] if now - t < self.window]
            if len(self._requests[key]) >= self.max_requests:
                oldest = min(self._requests[key])
                wait_time = self.window - (now - oldest)
                if wait_time > 0:
                    await asyncio.sleep(wait_time)
                    now = time.time()
                    self._requests[key] = [t for t in self._requests[key] if now - t < self.window]
            self._requests[key].append(now)


_hubspot_rate_limiter = HubSpotRateLimiter()


class HubSpotCRM(TargetCRM):
    """Client for the HubSpot CRM contacts API. Implements the target CRM interface."""

    def __init__(
        self,
        access_token: str = None,
        rate_limiter: HubSpotRateLimiter = None,
        transport: httpx.AsyncBaseTransport = None,
        timeout: float = HUBSPOT_TIMEOUT,
    ):
        self.access_token = access_token or HUBSPOT_ACCESS_TOKEN
        self.rate_limiter = rate_limiter or _hubspot_rate_limiter
        self.transport = transport
        self.timeout = timeout

    async def _call(self, method: str, path: str, data: dict = None, params: dict = None) -> dict:
        """Make authenticated API call to HubSpot."""
        await self.rate_limiter.acquire()

        url = f"{HUBSPOT_API_BASE}{path}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                if method.upper() == "GET":
                    response = await client.get(url, headers=headers, params=params)
                elif method.upper() == "POST":
                    response = await client.post(url, headers=headers, json=data)
                elif method.upper() == "PATCH":
                    response = await client.patch(url, headers=headers, json=data)
                else:
                    raise TargetAPIFault(f"Unsupported HubSpot method: {method}")

                if response.status_code == 401:
                    raise AuthFault("HubSpot authentication failed. Token may be expired", status_code=401)
                if response.status_code == 404:
                    raise ContactNotFoundFault(f"HubSpot resource not found: {path}", status_code=404)
                if response.status_code == 429:
                    raise RateLimitedFault(
                        "HubSpot API rate limit exceeded",
                        status_code=429,
                        details={"retryAfter": response.headers.get("Retry-After")},
                    )
                if response.status_code >= 400:
                    error_body = response.text[:500]
                    logger.error(f"HubSpot API error {response.status_code}: {error_body}")
                    raise TargetAPIFault(
                        f"HubSpot API error: {response.status_code}",
                        status_code=response.status_code,
                    )

                if response.status_code == 204:
                    return {}
                return response.json()

        except httpx.TimeoutException:
            raise TargetAPIFault("HubSpot connection timeout")
        except httpx.RequestError as e:
            raise TargetAPIFault(f"HubSpot connection error: {str(e)}")

    # ==================== Connection Test ====================

    async def test_connection(self) -> Dict[str, Any]:
        """Test the connection by fetching a single contact."""
        try:
            result = await self._call("GET", "/crm/v3/objects/contacts", params={"limit": 1})
            return {
                "ok": True,
                "message": "Connection successful!",
                "total_contacts": result.get("total", 0),
            }
        except Exception as e:
            return {"ok": False, "message": str(e)}

    # ==================== Contacts ====================

    async def get_contact(self, contact_id: str) -> Optional[Dict]:
        """Get a contact with its verification status. None if HubSpot has no such contact."""
        try:
            result = await self._call(
                "GET",
                f"/crm/v3/objects/contacts/{contact_id}",
                params={"properties": ",".join(CONTACT_PROPERTIES)},
            )
        except ContactNotFoundFault:
            return None
        return {"id": result.get("id", contact_id), "properties": result.get("properties", {})}

    async def exists(self, contact_id: str) -> bool:
        """True if the contact exists. Faults other than 404 propagate."""
        try:
            await self._call(
                "GET",
                f"/crm/v3/objects/contacts/{contact_id}",
                params={"properties": EMAIL_VERIFICATION_PROPERTY},
            )
            return True
        except ContactNotFoundFault:
            return False

    async def update_field(self, contact_id: str, value: str) -> Dict[str, Any]:
        """Set email_verification_status on a contact. Returns the response echoed for audit."""
        if not EmailVerificationStatus.is_valid(value):
            raise ValidationFault(f"Invalid email verification status: {value}")

        try:
            response = await self._call(
                "PATCH",
                f"/crm/v3/objects/contacts/{contact_id}",
                data={"properties": {EMAIL_VERIFICATION_PROPERTY: value}},
            )
        except ContactNotFoundFault:
            raise ContactNotFoundFault(f"HubSpot contact {contact_id} not found", status_code=404)

        logger.info(f"Updated HubSpot contact {contact_id}: {EMAIL_VERIFICATION_PROPERTY}={value}")
        return {
            "id": contact_id,
            "updatedAt": datetime.now(timezone.utc).isoformat(),
            "properties": {EMAIL_VERIFICATION_PROPERTY: value},
            **(response or {}),
        }

    async def batch_update_field(self, updates: List[Tuple[str, str]]) -> List[Dict[str, Any]]:
        """Set email_verification_status on many contacts, HUBSPOT_BATCH_LIMIT per request."""
        for _, value in updates:
            if not EmailVerificationStatus.is_valid(value):
                raise ValidationFault(f"Invalid email verification status: {value}")

        results = []
        for start in range(0, len(updates), HUBSPOT_BATCH_LIMIT):
            chunk = updates[start:start + HUBSPOT_BATCH_LIMIT]
            response = await self._call(
                "POST",
                "/crm/v3/objects/contacts/batch/update",
                data={
                    "inputs": [
                        {"id": contact_id, "properties": {EMAIL_VERIFICATION_PROPERTY: value}}
                        for contact_id, value in chunk
                    ]
                },
            )
            results.extend(response.get("results", []))

        logger.info(f"Batch updated {len(results)} HubSpot contact(s)")
        return results
