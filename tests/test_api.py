import asyncio
import base64
import types

import pytest
from fastapi.testclient import TestClient

from campaign_dispatch.api import API_TOKEN_HEADER_NAME, PIXEL_GIF, client_ip, create_app
from campaign_dispatch.batching import StoreReadError
from campaign_dispatch.core import DispatchReport
from campaign_dispatch.persistence import Persistence

API_TOKEN = "secret-token"


class DummyService:
    def __init__(self, persistence):
        self.persistence = persistence
        self.metrics = types.SimpleNamespace(generate_latest=lambda: b"cds_sent_total 1.0\n")
        self.runs = 0
        self.fail_read = False

    async def run_once(self):
        self.runs += 1
        if self.fail_read:
            raise StoreReadError("Unable to fetch pending messages: locked")
        return DispatchReport(fetched=3, sent=2, rate_limited=1, campaigns={"camp1": "sending"})

    async def reset_windows(self):
        return {"a": (True, False), "b": (True, True), "c": (False, False)}


@pytest.fixture
def persistence(tmp_path):
    p = Persistence(str(tmp_path / "api.db"))

    async def _seed():
        await p.init_db()
        await p.insert_messages(
            [
                {
                    "id": "m1",
                    "account_id": "acme",
                    "campaign_id": "camp1",
                    "from_email": "news@example.com",
                    "to_email": "r@dest.test",
                    "subject": "s",
                    "body": "b",
                }
            ]
        )

    asyncio.run(_seed())
    return p


@pytest.fixture
def client_and_service(persistence):
    svc = DummyService(persistence)
    client = TestClient(create_app(svc, api_token=API_TOKEN))
    return client, svc


def test_health_is_public(client_and_service):
    client, _ = client_and_service
    assert client.get("/health").json() == {"status": "ok"}


def test_commands_require_token(client_and_service):
    client, svc = client_and_service
    assert client.post("/commands/run-now").status_code == 401
    assert client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: "wrong"}).status_code == 401
    assert client.get("/metrics").status_code == 401
    assert svc.runs == 0


def test_no_token_configured_allows_commands(persistence):
    client = TestClient(create_app(DummyService(persistence)))
    assert client.post("/commands/run-now").status_code == 200


def test_run_now_returns_report(client_and_service):
    client, svc = client_and_service
    resp = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    body = resp.json()
    assert body["ok"] is True
    assert body["report"]["sent"] == 2
    assert body["report"]["campaigns"] == {"camp1": "sending"}
    assert svc.runs == 1


def test_run_now_reports_store_read_error(client_and_service):
    client, svc = client_and_service
    svc.fail_read = True
    body = client.post("/commands/run-now", headers={API_TOKEN_HEADER_NAME: API_TOKEN}).json()
    assert body["ok"] is False
    assert "locked" in body["error"]


def test_reset_windows(client_and_service):
    client, _ = client_and_service
    body = client.post("/commands/reset-windows", headers={API_TOKEN_HEADER_NAME: API_TOKEN}).json()
    assert body == {"ok": True, "hourly_reset": ["a", "b"], "daily_reset": ["b"]}


def test_metrics_endpoint(client_and_service):
    client, _ = client_and_service
    resp = client.get("/metrics", headers={API_TOKEN_HEADER_NAME: API_TOKEN})
    assert resp.status_code == 200
    assert b"cds_sent_total" in resp.content


def test_track_open_records_event_and_returns_pixel(client_and_service, persistence):
    client, _ = client_and_service
    resp = client.get(
        "/track/open",
        params={"id": "m1"},
        headers={"X-Forwarded-For": "203.0.113.5, 10.0.0.1", "User-Agent": "MailClient/1.0"},
    )
    assert resp.status_code == 200
    assert resp.headers["content-type"] == "image/gif"
    assert "no-cache" in resp.headers["cache-control"]
    assert resp.content == PIXEL_GIF
    assert PIXEL_GIF == base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")

    events = asyncio.run(persistence.list_events("open"))
    assert len(events) == 1
    assert events[0]["campaign_id"] == "camp1"
    assert events[0]["ip_address"] == "203.0.113.5"
    assert events[0]["user_agent"] == "MailClient/1.0"


def test_track_open_unknown_or_missing_id_still_returns_pixel(client_and_service, persistence):
    client, _ = client_and_service
    assert client.get("/track/open", params={"id": "nope"}).content == PIXEL_GIF
    assert client.get("/track/open").content == PIXEL_GIF
    assert asyncio.run(persistence.list_events("open")) == []


def test_track_open_survives_store_errors(persistence):
    async def broken(_msg_id):
        raise RuntimeError("db down")

    svc = DummyService(persistence)
    svc.persistence = types.SimpleNamespace(get_message_context=broken)
    client = TestClient(create_app(svc))
    resp = client.get("/track/open", params={"id": "m1"})
    assert resp.status_code == 200
    assert resp.content == PIXEL_GIF


def test_track_click_records_and_redirects(client_and_service, persistence):
    client, _ = client_and_service
    resp = client.get(
        "/track/click",
        params={"id": "m1", "url": "https://shop.test/p?a=1&b=2"},
        headers={"CF-Connecting-IP": "198.51.100.7"},
        follow_redirects=False,
    )
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://shop.test/p?a=1&b=2"

    events = asyncio.run(persistence.list_events("click"))
    assert events[0]["original_url"] == "https://shop.test/p?a=1&b=2"
    assert events[0]["ip_address"] == "198.51.100.7"


def test_track_click_unknown_id_redirects_without_event(client_and_service, persistence):
    client, _ = client_and_service
    resp = client.get("/track/click", params={"id": "nope", "url": "https://x.test/"}, follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://x.test/"
    assert asyncio.run(persistence.list_events("click")) == []


def test_track_click_missing_parameters(client_and_service):
    client, _ = client_and_service
    resp = client.get("/track/click", params={"id": "m1"})
    assert resp.status_code == 400
    assert resp.text == "Missing parameters"
    assert client.get("/track/click", params={"url": "https://x.test"}).status_code == 400


def test_client_ip_fallbacks():
    def request(headers, client=None):
        return types.SimpleNamespace(headers=headers, client=client)

    assert client_ip(request({"x-forwarded-for": "1.1.1.1, 2.2.2.2"})) == "1.1.1.1"
    assert client_ip(request({"cf-connecting-ip": "3.3.3.3"})) == "3.3.3.3"
    assert client_ip(request({}, types.SimpleNamespace(host="4.4.4.4"))) == "4.4.4.4"
    assert client_ip(request({})) == "unknown"
