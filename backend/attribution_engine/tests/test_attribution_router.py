"""Internal API tests.

WHAT: Ingestion, pipeline trigger, read endpoints and header auth
WHY: Order webhooks and the pixel collector depend on these contracts
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from attribution_engine.deps import get_attribution_service
from attribution_engine.main import create_app
from attribution_engine.routers import attribution as attribution_router
from attribution_engine.tests.fakes import TENANT

HEADERS = {"X-Internal-Api-Key": "test-internal-key"}


@pytest.fixture
def client(service):
    app = create_app()
    app.dependency_overrides[get_attribution_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _ingest_journey(client):
    for occurred_at, channel in (
        ("2025-02-28T12:00:00Z", "meta"),
        ("2025-03-05T12:00:00Z", "google"),
        ("2025-03-09T12:00:00Z", "direct"),
    ):
        response = client.post(
            f"/tenants/{TENANT}/touchpoints",
            json={"visitor_id": "v1", "occurred_at": occurred_at, "channel": channel},
            headers=HEADERS,
        )
        assert response.status_code == 201


def _create_order(client, **overrides):
    body = {"order_id": "1001", "revenue_cents": 10000, "occurred_at": "2025-03-10T12:00:00Z", "visitor_id": "v1"}
    body.update(overrides)
    return client.post(f"/tenants/{TENANT}/conversions", json=body, headers=HEADERS)


class TestAuth:
    def test_health_is_public(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_missing_key_rejected(self, client):
        response = client.post(
            f"/tenants/{TENANT}/conversions",
            json={"order_id": "1001", "revenue_cents": 100, "occurred_at": "2025-03-10T12:00:00Z"},
        )
        assert response.status_code == 401

    def test_wrong_key_rejected(self, client):
        response = client.get(f"/tenants/{TENANT}/conversions/{uuid4()}", headers={"X-Internal-Api-Key": "nope"})
        assert response.status_code == 401


class TestIngestAndProcess:
    def test_full_flow(self, client, meta_client):
        _ingest_journey(client)
        created = _create_order(client)
        assert created.status_code == 200
        assert created.json()["created"] is True
        conversion_id = created.json()["conversion_id"]

        processed = client.post(f"/tenants/{TENANT}/conversions/{conversion_id}/process", headers=HEADERS)
        assert processed.status_code == 200
        assert processed.json()["status"] == "attributed"
        assert processed.json()["forwarding"] == {"meta": "sent", "ga4": "sent"}

        status = client.get(f"/tenants/{TENANT}/conversions/{conversion_id}", headers=HEADERS).json()
        assert status["status"] == "attributed"
        assert status["attributed_at"] is not None
        assert [f["platform"] for f in status["forwarding"]] == ["ga4", "meta"]

        linear = client.get(f"/tenants/{TENANT}/conversions/{conversion_id}/attribution/linear", headers=HEADERS)
        assert linear.status_code == 200
        assert [a["revenue_cents"] for a in linear.json()["allocations"]] == [3334, 3333, 3333]
        assert linear.json()["attribution_window"] == "30d"
        assert len(meta_client.calls) == 1

    def test_same_order_twice_is_idempotent(self, client):
        first = _create_order(client).json()
        second = _create_order(client, revenue_cents=1).json()

        assert second["created"] is False
        assert second["conversion_id"] == first["conversion_id"]

    def test_negative_revenue_rejected(self, client):
        assert _create_order(client, revenue_cents=-1).status_code == 422

    def test_enqueue_defers_to_worker(self, client, monkeypatch):
        enqueue = AsyncMock(return_value={"job_id": "process:x", "status": "enqueued"})
        monkeypatch.setattr(attribution_router, "enqueue_process_conversion", enqueue)
        conversion_id = _create_order(client).json()["conversion_id"]

        response = client.post(
            f"/tenants/{TENANT}/conversions/{conversion_id}/process",
            json={"enqueue": True},
            headers=HEADERS,
        )

        assert response.json() == {"job_id": "process:x", "status": "enqueued"}
        assert enqueue.await_args.args[0] == TENANT
        assert str(enqueue.await_args.args[1]) == conversion_id


class TestNotFound:
    def test_unknown_conversion(self, client):
        url = f"/tenants/{TENANT}/conversions/{uuid4()}"
        assert client.get(url, headers=HEADERS).status_code == 404
        assert client.post(f"{url}/process", headers=HEADERS).status_code == 404

    def test_other_tenants_conversion_is_invisible(self, client):
        conversion_id = _create_order(client).json()["conversion_id"]
        response = client.get(f"/tenants/shop-2/conversions/{conversion_id}", headers=HEADERS)
        assert response.status_code == 404

    def test_missing_model_result(self, client):
        conversion_id = _create_order(client).json()["conversion_id"]
        response = client.get(
            f"/tenants/{TENANT}/conversions/{conversion_id}/attribution/data_driven",
            headers=HEADERS,
        )
        assert response.status_code == 404


class TestReconciliationEndpoint:
    def test_stuck_sweep_report(self, client):
        response = client.post(f"/tenants/{TENANT}/reconciliation", json={"mode": "stuck"}, headers=HEADERS)
        assert response.status_code == 200
        assert response.json()["mode"] == "stuck"
        assert response.json()["scanned"] == 0

    def test_half_open_range_rejected(self, client):
        response = client.post(
            f"/tenants/{TENANT}/reconciliation",
            json={"mode": "recalculate", "start": "2025-03-01T00:00:00Z"},
            headers=HEADERS,
        )
        assert response.status_code == 400


class TestSharedLimits:
    def test_requests_share_the_app_limiter(self, db_session):
        app = create_app()
        with TestClient(app):
            limits = app.state.forwarding_limits
            request = SimpleNamespace(app=app)
            first = get_attribution_service(request, db_session)
            second = get_attribution_service(request, db_session)

        assert first.limits is limits
        assert second.limits is limits
