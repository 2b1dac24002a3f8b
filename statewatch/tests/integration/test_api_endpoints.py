from __future__ import annotations

from datetime import timedelta

from httpx import ASGITransport, AsyncClient

from statewatch.apps.api.main import create_app
from statewatch.core.config import get_settings
from statewatch.domain.models import TENANT_WIDE
from statewatch.persistence.db import SessionLocal
from statewatch.persistence.types import utc_now
from statewatch.services import audit as audit_service
from statewatch.services import notifications as notifications_service
from statewatch.services.audit import AuditEntryDraft
from statewatch.services.notifications import NotificationDraft
from statewatch.tests.utils.fixtures import seed_entity


def _headers(tenant_id: str = "t1", actor_id: str = "u1", role: str = "reader") -> dict[str, str]:
    return {"X-Tenant-Id": tenant_id, "X-Actor-Id": actor_id, "X-Role": role}


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def _notify(tenant_id: str, subject_id: str, audience: str = TENANT_WIDE) -> str:
    async with SessionLocal() as session:
        result = await notifications_service.create_notification(
            session,
            NotificationDraft(
                tenant_id=tenant_id,
                audience=audience,
                kind="entity-entered-state",
                subject_type="installment",
                subject_id=subject_id,
                epoch_token=f"epoch-{subject_id}",
                message=f"{subject_id} is overdue",
                deep_link="/payments/plans?status=overdue",
            ),
        )
        await session.commit()
        return result.notification.id


async def test_health_is_enveloped() -> None:
    async with _client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["data"] == {"status": "ok", "database": "ok"}
    assert body["meta"]["request_id"] == "req-1"
    assert "tenant_id" not in body["meta"]
    assert response.headers["X-Request-Id"] == "req-1"


async def test_identity_headers_are_required() -> None:
    async with _client() as client:
        response = await client.get("/v1/notifications", headers={"X-Actor-Id": "u1"})
        bad_role = await client.get("/v1/notifications", headers=_headers(role="owner"))
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
    assert bad_role.status_code == 400
    assert bad_role.json()["error"]["code"] == "AUTH_INVALID_ROLE"


async def test_notification_feed_and_read_lifecycle() -> None:
    first = await _notify("t1", "E1")
    await _notify("t1", "E2")
    await _notify("t1", "E3", audience="someone-else")
    await _notify("t2", "E4")

    async with _client() as client:
        listing = await client.get("/v1/notifications", params={"limit": 1}, headers=_headers())
        body = listing.json()["data"]
        assert listing.status_code == 200
        assert listing.json()["meta"]["tenant_id"] == "t1"
        assert len(body["items"]) == 1
        assert body["unread_count"] == 2
        assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "total_pages": 2}

        read = await client.patch(f"/v1/notifications/{first}/read", headers=_headers())
        again = await client.patch(f"/v1/notifications/{first}/read", headers=_headers())
        assert read.status_code == 200
        assert read.json()["data"]["is_read"] is True
        assert again.status_code == 200
        assert again.json()["data"]["read_at"] == read.json()["data"]["read_at"]

        count = await client.get("/v1/notifications/unread-count", headers=_headers())
        assert count.json()["data"] == {"unread_count": 1}

        unread = await client.get("/v1/notifications", params={"is_read": "false"}, headers=_headers())
        assert [item["subject_id"] for item in unread.json()["data"]["items"]] == ["E2"]


async def test_out_of_range_paging_is_clamped() -> None:
    await _notify("t1", "E1")
    await _notify("t1", "E2")
    async with _client() as client:
        response = await client.get(
            "/v1/notifications", params={"page": 0, "limit": 0}, headers=_headers()
        )
        oversized = await client.get("/v1/notifications", params={"limit": 10_000}, headers=_headers())
    assert response.status_code == 200
    body = response.json()["data"]
    assert body["pagination"] == {"page": 1, "limit": 1, "total": 2, "total_pages": 2}
    assert len(body["items"]) == 1
    assert oversized.status_code == 200
    assert oversized.json()["data"]["pagination"]["limit"] == get_settings().notifications_max_page_size


async def test_mark_read_across_tenants_is_404() -> None:
    notification_id = await _notify("t1", "E1")
    async with _client() as client:
        response = await client.patch(
            f"/v1/notifications/{notification_id}/read",
            headers=_headers(tenant_id="t2", actor_id="u2"),
        )
    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "NOT_FOUND"
    assert "E1" not in error["message"]


async def test_audit_entries_require_admin_and_paginate() -> None:
    async with SessionLocal() as session:
        for index in range(3):
            await audit_service.append(
                session,
                AuditEntryDraft(
                    tenant_id="t1",
                    subject_type="user",
                    subject_id="u-9",
                    action="update",
                    actor_id="admin-1",
                    after_state={"role": f"r{index}"},
                ),
            )
        await session.commit()

    async with _client() as client:
        forbidden = await client.get("/v1/audit/entries", headers=_headers(role="reader"))
        assert forbidden.status_code == 403
        assert forbidden.json()["error"]["code"] == "AUTH_FORBIDDEN"

        admin = _headers(role="admin")
        first = await client.get(
            "/v1/audit/entries", params={"subject_id": "u-9", "limit": 2}, headers=admin
        )
        page = first.json()["data"]
        assert [item["after_state"] for item in page["items"]] == [{"role": "r0"}, {"role": "r1"}]
        assert page["next_cursor"]

        second = await client.get(
            "/v1/audit/entries",
            params={"subject_id": "u-9", "limit": 2, "cursor": page["next_cursor"]},
            headers=admin,
        )
        assert [item["after_state"] for item in second.json()["data"]["items"]] == [{"role": "r2"}]
        assert second.json()["data"]["next_cursor"] is None

        entry_id = page["items"][0]["id"]
        single = await client.get(f"/v1/audit/entries/{entry_id}", headers=admin)
        assert single.json()["data"]["id"] == entry_id
        other_tenant = await client.get(
            f"/v1/audit/entries/{entry_id}", headers=_headers(tenant_id="t2", role="admin")
        )
        assert other_tenant.status_code == 404

        tampered = await client.get(
            "/v1/audit/entries", params={"cursor": "garbage"}, headers=admin
        )
        assert tampered.status_code == 400
        assert tampered.json()["error"]["code"] == "INVALID_CURSOR"


async def test_detector_trigger_requires_configured_token(monkeypatch) -> None:
    async with _client() as client:
        disabled = await client.post("/v1/detector/runs", json={})
    assert disabled.status_code == 403

    monkeypatch.setenv("DETECTOR_TRIGGER_TOKEN", "s3cret")
    get_settings.cache_clear()
    async with _client() as client:
        wrong = await client.post(
            "/v1/detector/runs", json={}, headers={"X-Detector-Token": "nope"}
        )
    assert wrong.status_code == 401


async def test_detector_trigger_runs_and_logs(monkeypatch) -> None:
    monkeypatch.setenv("DETECTOR_TRIGGER_TOKEN", "s3cret")
    get_settings.cache_clear()
    await seed_entity(
        tenant_id="t1",
        entity_id="E1",
        status="overdue",
        changed_at=utc_now() - timedelta(hours=1),
    )

    async with _client() as client:
        triggered = await client.post(
            "/v1/detector/runs",
            json={"tenant_id": "t1"},
            headers={"X-Detector-Token": "s3cret"},
        )
        summary = triggered.json()["data"]
        assert triggered.status_code == 200
        assert summary["entities_scanned"] == 1
        assert summary["audit_entries_written"] == 1
        assert summary["notifications_created"] == 1
        assert summary["errors"] == 0

        feed = await client.get("/v1/notifications", headers=_headers())
        assert [item["subject_id"] for item in feed.json()["data"]["items"]] == ["E1"]

        runs = await client.get("/v1/detector/runs", headers=_headers(role="admin"))
        assert runs.status_code == 200
        (run,) = runs.json()["data"]
        assert run["status"] == "success"
        assert run["notifications_created"] == 1

        other_tenant_runs = await client.get(
            "/v1/detector/runs", headers=_headers(tenant_id="t2", role="admin")
        )
        assert other_tenant_runs.json()["data"] == []

        bad_since = await client.post(
            "/v1/detector/runs",
            json={"tenant_id": "t1", "since": "2999-01-01T00:00:00Z"},
            headers={"X-Detector-Token": "s3cret"},
        )
        assert bad_since.status_code == 422
        assert bad_since.json()["error"]["code"] == "VALIDATION_ERROR"
