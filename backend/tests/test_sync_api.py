"""
Sync API Tests
===============
Runs the FastAPI app in-process (httpx.ASGITransport) with in-memory backends:
1. Submit sync: success, failure, validation, auth, conflict
2. Status endpoints: list with summary, single operation, unknown id
3. Retry endpoint
4. Response envelope and error detail sanitising

Run: pytest tests/test_sync_api.py -v
"""

import asyncio
import pytest
import pytest_asyncio
import sys
import os

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import FakeTargetCRM
from auth_service import issue_token
from sync_errors import AuthFault, TargetAPIFault
from sync_operation import SyncOperation
import server
from server import SyncService


def _service(registry, source, target, max_retries=3):
    return SyncService(registry, source, target, step_timeout=2.0, max_retries=max_retries)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {issue_token('user-1', email='ops@example.com')}"}


@pytest.fixture
def install_service():
    """Put a SyncService on the app for the duration of one test."""
    previous = getattr(server.app.state, "sync_service", None)

    def install(service):
        server.app.state.sync_service = service
        return service

    yield install
    server.app.state.sync_service = previous


@pytest_asyncio.fixture
async def client():
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def service(install_service, registry, source, target):
    return install_service(_service(registry, source, target))


def _submit_body(source_id=1, target_id="c1", status="verified"):
    return {"sourceContactId": source_id, "targetContactId": target_id, "status": status}


# ---------------------------------------------------------------------------
# 1. Submit sync
# ---------------------------------------------------------------------------

class TestSubmitSync:

    @pytest.mark.asyncio
    async def test_success(self, client, service, auth_headers, target):
        response = await client.post("/api/sync-email-verification", json=_submit_body(), headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["error"] is None
        assert body["data"]["status"] == "completed"
        assert body["data"]["targetValue"] == "verified"
        assert body["data"]["sourceContactId"] == 1
        assert body["data"]["targetContactId"] == "c1"
        assert body["data"]["id"].startswith("sync_")
        assert body["metadata"]["requestId"].startswith("req_")
        assert response.headers["X-Request-ID"] == body["metadata"]["requestId"]
        assert target.updates == [("c1", "verified")]

    @pytest.mark.asyncio
    async def test_missing_target_contact_is_404(self, client, service, auth_headers):
        response = await client.post(
            "/api/sync-email-verification", json=_submit_body(target_id="missing"), headers=auth_headers
        )

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "CONTACT_NOT_FOUND"
        assert body["error"]["canRetry"] is False
        assert body["error"]["details"]["operationId"] == body["data"]["id"]
        assert body["data"]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_invalid_status_creates_nothing(self, client, service, auth_headers, registry):
        response = await client.post(
            "/api/sync-email-verification", json=_submit_body(status="bogus"), headers=auth_headers
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert await registry.list_all() == []

    @pytest.mark.asyncio
    async def test_retryable_failure_is_200_with_success_false(self, client, install_service, registry, source, auth_headers):
        target = FakeTargetCRM({"c1": "unverified"}, update_error=TargetAPIFault("HubSpot API error: 503", status_code=503))
        install_service(_service(registry, source, target))

        response = await client.post("/api/sync-email-verification", json=_submit_body(), headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "TARGET_API_ERROR"
        assert body["error"]["canRetry"] is True
        assert body["data"]["error"]["code"] == "TARGET_API_ERROR"

    @pytest.mark.asyncio
    async def test_conflict_while_first_is_running(self, client, install_service, registry, source, auth_headers):
        gate = asyncio.Event()
        target = FakeTargetCRM({"c1": "unverified"}, gate=gate)
        install_service(_service(registry, source, target))

        first = asyncio.create_task(
            client.post("/api/sync-email-verification", json=_submit_body(), headers=auth_headers)
        )
        await asyncio.wait_for(target.update_started.wait(), timeout=2.0)

        second = await client.post(
            "/api/sync-email-verification", json=_submit_body(status="bounced"), headers=auth_headers
        )
        gate.set()
        first_response = await first

        assert second.status_code == 409
        assert second.json()["error"]["code"] == "SYNC_CONFLICT"
        assert second.json()["error"]["details"]["operationId"] == first_response.json()["data"]["id"]
        assert first_response.status_code == 200
        assert target.updates == [("c1", "verified")]

    @pytest.mark.asyncio
    async def test_legacy_field_names(self, client, service, auth_headers, target):
        response = await client.post(
            "/api/sync-email-verification",
            json={"supabaseContactId": 2, "hubspotContactId": "c2", "emailVerificationStatus": "bounced"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "completed"
        assert target.updates == [("c2", "bounced")]

    @pytest.mark.asyncio
    async def test_initiated_by_follows_token_kind(self, client, service, auth_headers):
        user_op = (await client.post("/api/sync-email-verification", json=_submit_body(), headers=auth_headers)).json()
        assert user_op["data"]["initiatedBy"] == "user"

        system_headers = {"Authorization": f"Bearer {issue_token('nightly-sync', kind='system')}"}
        system_op = (
            await client.post("/api/sync-email-verification", json=_submit_body(2, "c2"), headers=system_headers)
        ).json()
        assert system_op["data"]["initiatedBy"] == "system"

    @pytest.mark.asyncio
    async def test_requires_auth(self, client, service, target):
        response = await client.post("/api/sync-email-verification", json=_submit_body())

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"
        assert target.updates == []

    @pytest.mark.asyncio
    async def test_rejects_bad_token(self, client, service):
        response = await client.post(
            "/api/sync-email-verification", json=_submit_body(), headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_json(self, client, service, auth_headers):
        response = await client.post(
            "/api/sync-email-verification",
            content=b"{not json",
            headers={**auth_headers, "Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_JSON"

    @pytest.mark.asyncio
    async def test_non_object_body(self, client, service, auth_headers):
        response = await client.post("/api/sync-email-verification", json=[1, "c1", "verified"], headers=auth_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_mistyped_source_id(self, client, service, auth_headers, registry):
        response = await client.post(
            "/api/sync-email-verification", json=_submit_body(source_id="1"), headers=auth_headers
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"]["fields"] == ["sourceContactId"]
        assert await registry.list_all() == []

    @pytest.mark.asyncio
    async def test_missing_fields(self, client, service, auth_headers):
        response = await client.post(
            "/api/sync-email-verification", json={"sourceContactId": 1}, headers=auth_headers
        )
        assert response.status_code == 400
        assert response.json()["error"]["details"]["fields"] == ["status", "targetContactId"]


# ---------------------------------------------------------------------------
# 2. Status endpoints
# ---------------------------------------------------------------------------

class TestSyncStatus:

    @pytest.mark.asyncio
    async def test_list_with_summary(self, client, service, auth_headers):
        await client.post("/api/sync-email-verification", json=_submit_body(), headers=auth_headers)
        await client.post(
            "/api/sync-email-verification", json=_submit_body(2, "missing"), headers=auth_headers
        )

        response = await client.get("/api/sync-status")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["total"] == 2
        assert len(data["operations"]) == 2
        assert data["summary"] == {"total": 2, "completed": 1, "inProgress": 0, "failed": 1, "pending": 0}
        assert data["pollAfterSeconds"] is None

    @pytest.mark.asyncio
    async def test_empty_list(self, client, service):
        data = (await client.get("/api/sync-status")).json()["data"]
        assert data["operations"] == []
        assert data["summary"]["total"] == 0
        assert data["pollAfterSeconds"] is None

    @pytest.mark.asyncio
    async def test_list_polls_while_active(self, client, service, registry):
        await registry.create(SyncOperation(source_contact_id=1, target_contact_id="c1", requested_value="verified"))

        data = (await client.get("/api/sync-status")).json()["data"]
        assert data["summary"]["pending"] == 1
        assert data["pollAfterSeconds"] == 10

    @pytest.mark.asyncio
    async def test_single_operation(self, client, service, auth_headers):
        submitted = await client.post("/api/sync-email-verification", json=_submit_body(), headers=auth_headers)
        operation_id = submitted.json()["data"]["id"]

        response = await client.get(f"/api/sync-status/{operation_id}")

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["operation"]["id"] == operation_id
        assert data["operation"]["status"] == "completed"
        assert data["pollAfterSeconds"] is None

    @pytest.mark.asyncio
    async def test_unknown_operation(self, client, service):
        response = await client.get("/api/sync-status/sync_does_not_exist")

        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "OPERATION_NOT_FOUND"
        assert body["error"]["details"]["operationId"] == "sync_does_not_exist"

    @pytest.mark.asyncio
    async def test_details_hidden_unless_requested(self, client, install_service, registry, source, auth_headers):
        target = FakeTargetCRM(
            {"c1": "unverified"},
            update_error=AuthFault("HubSpot authentication failed", status_code=401, details={"accessToken": "pat-secret"}),
        )
        install_service(_service(registry, source, target))
        submitted = await client.post("/api/sync-email-verification", json=_submit_body(), headers=auth_headers)
        operation_id = submitted.json()["data"]["id"]

        plain = (await client.get(f"/api/sync-status/{operation_id}")).json()["data"]["operation"]
        assert plain["error"]["code"] == "AUTH_ERROR"
        assert "details" not in plain["error"]

        detailed = (
            await client.get(f"/api/sync-status/{operation_id}", params={"includeDetails": "true"})
        ).json()["data"]["operation"]
        assert detailed["error"]["details"]["step"] == "update_target"
        assert detailed["error"]["details"]["statusCode"] == 401
        assert "accessToken" not in detailed["error"]["details"]
        assert "pat-secret" not in str(detailed)

    @pytest.mark.asyncio
    async def test_service_not_ready(self, client, install_service):
        install_service(None)
        response = await client.get("/api/sync-status")
        assert response.status_code == 503


# ---------------------------------------------------------------------------
# 3. Retry
# ---------------------------------------------------------------------------

class TestRetryEndpoint:

    @pytest.mark.asyncio
    async def test_retry_failed_operation(self, client, install_service, registry, source, auth_headers):
        target = FakeTargetCRM({"c1": "unverified"}, update_error=TargetAPIFault("HubSpot API error: 503", status_code=503))
        install_service(_service(registry, source, target))
        failed = (await client.post("/api/sync-email-verification", json=_submit_body(), headers=auth_headers)).json()

        target.update_error = None
        response = await client.post(f"/api/sync-status/{failed['data']['id']}/retry", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["id"] != failed["data"]["id"]
        assert data["status"] == "completed"
        assert data["retryCount"] == 1

        original = (await client.get(f"/api/sync-status/{failed['data']['id']}")).json()["data"]["operation"]
        assert original["status"] == "failed"

    @pytest.mark.asyncio
    async def test_completed_operation_is_409(self, client, service, auth_headers):
        done = (await client.post("/api/sync-email-verification", json=_submit_body(), headers=auth_headers)).json()

        response = await client.post(f"/api/sync-status/{done['data']['id']}/retry", headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "NOT_RETRYABLE"

    @pytest.mark.asyncio
    async def test_budget_exhausted_is_409(self, client, install_service, registry, source, auth_headers):
        target = FakeTargetCRM({"c1": "unverified"}, update_error=TargetAPIFault("HubSpot API error: 503", status_code=503))
        install_service(_service(registry, source, target, max_retries=1))
        first = (await client.post("/api/sync-email-verification", json=_submit_body(), headers=auth_headers)).json()

        second = await client.post(f"/api/sync-status/{first['data']['id']}/retry", headers=auth_headers)
        assert second.json()["data"]["retryCount"] == 1

        third = await client.post(f"/api/sync-status/{second.json()['data']['id']}/retry", headers=auth_headers)
        assert third.status_code == 409
        assert third.json()["error"]["code"] == "NOT_RETRYABLE"
        assert third.json()["error"]["details"]["retryCount"] == 1

    @pytest.mark.asyncio
    async def test_same_failure_cannot_be_retried_twice(self, client, install_service, registry, source, auth_headers):
        target = FakeTargetCRM({"c1": "unverified"}, update_error=TargetAPIFault("HubSpot API error: 503", status_code=503))
        install_service(_service(registry, source, target, max_retries=3))
        failed = (await client.post("/api/sync-email-verification", json=_submit_body(), headers=auth_headers)).json()
        failed_id = failed["data"]["id"]

        first = await client.post(f"/api/sync-status/{failed_id}/retry", headers=auth_headers)
        assert first.json()["data"]["status"] == "failed"
        assert first.json()["data"]["retryOf"] == failed_id

        again = await client.post(f"/api/sync-status/{failed_id}/retry", headers=auth_headers)
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "NOT_RETRYABLE"
        assert again.json()["error"]["details"]["retriedAs"] == first.json()["data"]["id"]
        assert len(await registry.list_all()) == 2

    @pytest.mark.asyncio
    async def test_unknown_operation(self, client, service, auth_headers):
        response = await client.post("/api/sync-status/sync_nope/retry", headers=auth_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "OPERATION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_requires_auth(self, client, service):
        response = await client.post("/api/sync-status/sync_nope/retry")
        assert response.status_code == 401


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["error"] is None
        assert body["data"]["status"] == "healthy"
        assert "timestamp" in body["data"]
        assert body["metadata"]["requestId"]


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
