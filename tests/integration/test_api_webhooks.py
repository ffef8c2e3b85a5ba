"""Integration tests for /webhooks routes."""
import hashlib
import hmac
import json
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from mottahub.api.main import create_app
from mottahub.api.routes.sync import get_karbon_client
from mottahub.config import Settings
from mottahub.karbon.client import FetchResult
from mottahub.models.work import WorkItem

FIXTURES = Path(__file__).parent.parent / "fixtures"
WORK_ITEM_UPDATED = (FIXTURES / "webhook_work_item_updated.json").read_bytes()
WORK_ITEM = json.loads((FIXTURES / "karbon_work_items.json").read_text())["value"][0]


@pytest.fixture(name="karbon")
def karbon_fixture():
    client = AsyncMock()
    client.fetch_one = AsyncMock(return_value=FetchResult(records=[dict(WORK_ITEM)]))
    return client


def make_client(engine, karbon, secret=""):
    app = create_app(engine)
    app.dependency_overrides[get_karbon_client] = lambda: karbon
    settings = Settings(_env_file=None, karbon_webhook_secret=secret)
    return app, patch("mottahub.api.routes.webhooks.get_settings", return_value=settings)


@pytest.fixture(name="client")
def client_fixture(engine, karbon):
    app, settings_patch = make_client(engine, karbon)
    with settings_patch, TestClient(app) as c:
        yield c


@pytest.fixture(name="signed_client")
def signed_client_fixture(engine, karbon):
    app, settings_patch = make_client(engine, karbon, secret="s3cret")
    with settings_patch, TestClient(app) as c:
        yield c


def sign(body: bytes, secret: str = "s3cret") -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestPing:
    def test_ping(self, client):
        resp = client.get("/webhooks/karbon")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "active"
        assert body["webhook"] == "karbon"
        assert "timestamp" in body


class TestReceiveWebhook:
    def test_work_item_updated(self, client, engine):
        resp = client.post("/webhooks/karbon", content=WORK_ITEM_UPDATED)
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert body["action"] == "upserted"
        assert body["resourceKey"] == "W-1"
        assert body["synced"] == 1
        with Session(engine) as s:
            assert s.exec(select(WorkItem)).one().karbon_work_item_key == "W-1"

    def test_resource_envelope(self, client, karbon):
        body = json.dumps({
            "ResourceType": "WorkItem",
            "EventType": "Updated",
            "ResourcePermaKey": "W-1",
        }).encode()
        resp = client.post("/webhooks/karbon", content=body)
        assert resp.status_code == 200
        karbon.fetch_one.assert_awaited_once()

    def test_invalid_json_is_400(self, client):
        resp = client.post("/webhooks/karbon", content=b"{not json")
        assert resp.status_code == 400

    def test_missing_key_is_400(self, client):
        body = json.dumps({"EventType": "WorkItem.Updated", "Data": {}}).encode()
        resp = client.post("/webhooks/karbon", content=body)
        assert resp.status_code == 400

    def test_unhandled_event_acknowledged(self, client, karbon):
        body = json.dumps({"EventType": "Timesheet.Updated", "Data": {"TimesheetKey": "TS-1"}}).encode()
        resp = client.post("/webhooks/karbon", content=body)
        assert resp.status_code == 200
        assert resp.json()["action"] == "ignored"
        karbon.fetch_one.assert_not_awaited()

    def test_fetch_failure_is_502(self, client, karbon):
        karbon.fetch_one = AsyncMock(return_value=FetchResult(error="503: Service Unavailable", status_code=503))
        resp = client.post("/webhooks/karbon", content=WORK_ITEM_UPDATED)
        assert resp.status_code == 502
        assert resp.json()["action"] == "failed"
        assert resp.json()["error"] == "503: Service Unavailable"

    def test_store_unavailable_is_503(self, client):
        service = AsyncMock()
        service.handle_webhook = AsyncMock(
            side_effect=OperationalError("INSERT", {}, Exception("unable to open database file"))
        )
        with patch("mottahub.api.routes.webhooks.KarbonSyncService", return_value=service):
            resp = client.post("/webhooks/karbon", content=WORK_ITEM_UPDATED)
        assert resp.status_code == 503
        assert "unable to open database file" in resp.json()["detail"]


class TestSignatures:
    def test_valid_signature(self, signed_client):
        resp = signed_client.post(
            "/webhooks/karbon",
            content=WORK_ITEM_UPDATED,
            headers={"X-Karbon-Signature": sign(WORK_ITEM_UPDATED)},
        )
        assert resp.status_code == 200

    def test_alternate_header(self, signed_client):
        resp = signed_client.post(
            "/webhooks/karbon",
            content=WORK_ITEM_UPDATED,
            headers={"X-Webhook-Signature": sign(WORK_ITEM_UPDATED)},
        )
        assert resp.status_code == 200

    def test_bad_signature_is_401(self, signed_client, karbon):
        resp = signed_client.post(
            "/webhooks/karbon",
            content=WORK_ITEM_UPDATED,
            headers={"X-Karbon-Signature": sign(WORK_ITEM_UPDATED, "wrong")},
        )
        assert resp.status_code == 401
        karbon.fetch_one.assert_not_awaited()

    def test_missing_signature_is_401(self, signed_client):
        resp = signed_client.post("/webhooks/karbon", content=WORK_ITEM_UPDATED)
        assert resp.status_code == 401

    def test_signature_checked_before_parsing(self, signed_client):
        resp = signed_client.post(
            "/webhooks/karbon",
            content=b"{not json",
            headers={"X-Karbon-Signature": "deadbeef"},
        )
        assert resp.status_code == 401
