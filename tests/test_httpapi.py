import json
import logging
from datetime import datetime, timezone
from uuid import UUID

from werkzeug.test import Client, EnvironBuilder
from werkzeug.wrappers import Request, Response

from booky.httpapi import (
    WebhookSignatureError,
    daily_close_handler,
    filing_mark_submitted_handler,
    filing_run_handler,
    filing_status_handler,
    health_handler,
    manual_tax_evidence_handler,
    method_not_allowed,
    new_router,
    stripe_webhook_handler,
    tax_case_handler,
    tax_case_rebuild_handler,
    with_bearer_auth,
    write_error,
    write_json,
)
from booky.models import NotFoundError

LOGGER = logging.getLogger("booky-tests")
CASE_ID = "11111111-1111-1111-1111-111111111111"


class StubSettings:
    admin_enabled = True
    admin_bearer_token = "token"
    company_id = "company-123"

    def location(self):
        return timezone.utc


def make_request(method, path, headers=None, data=None):
    return Request(EnvironBuilder(method=method, path=path, headers=headers, data=data).get_environ())


def no_content(request):
    return Response(status=204)


def body(response):
    return json.loads(response.get_data(as_text=True))


def test_bearer_auth_rejects_missing_token():
    handler = with_bearer_auth("token", no_content)
    response = handler(make_request("GET", "/admin/test"))
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == 'Bearer realm="booky-admin"'


def test_bearer_auth_allows_matching_token():
    handler = with_bearer_auth("token", no_content)
    response = handler(make_request("GET", "/admin/test", headers={"Authorization": "Bearer token"}))
    assert response.status_code == 204


def test_bearer_auth_allows_case_insensitive_scheme():
    handler = with_bearer_auth("token", no_content)
    response = handler(make_request("GET", "/admin/test", headers={"Authorization": "bearer token"}))
    assert response.status_code == 204


def test_bearer_auth_rejects_wrong_token_and_missing_configuration():
    wrong = with_bearer_auth("token", no_content)(
        make_request("GET", "/admin/test", headers={"Authorization": "Bearer secret"})
    )
    assert wrong.status_code == 401
    unconfigured = with_bearer_auth("", no_content)(
        make_request("GET", "/admin/test", headers={"Authorization": "Bearer token"})
    )
    assert unconfigured.status_code == 403
    assert body(unconfigured) == {"error": "request failed"}


def test_router_serves_health_with_json_headers():
    client = Client(new_router(StubSettings(), None, None, None, None, LOGGER))
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "application/json" in response.headers["Content-Type"]
    assert response.get_json()["status"] == "ok"


def test_router_protects_admin_route():
    client = Client(new_router(StubSettings(), None, None, None, None, LOGGER))
    response = client.post("/admin/runs/daily-close")
    assert response.status_code == 401


def test_router_unknown_path_is_not_found():
    client = Client(new_router(StubSettings(), None, None, None, None, LOGGER))
    response = client.get("/nowhere")
    assert response.status_code == 404
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_router_routes_tax_case_subtree():
    class Stripe:
        def get_tax_case(self, tax_case_id):
            return {"id": str(tax_case_id)}

    client = Client(new_router(StubSettings(), Stripe(), None, None, None, LOGGER))
    response = client.get(f"/admin/tax/cases/{CASE_ID}", headers={"Authorization": "Bearer token"})
    assert response.status_code == 200
    assert response.get_json() == {"id": CASE_ID}


def test_daily_close_rejects_invalid_date():
    handler = daily_close_handler(StubSettings(), LOGGER, None)
    response = handler(make_request("POST", "/admin/runs/daily-close?date=not-a-date"))
    assert response.status_code == 400
    assert "invalid date query param" in response.get_data(as_text=True)


def test_daily_close_runs_for_given_date():
    calls = []

    class Accounting:
        def run_daily_close(self, posting_date):
            calls.append(posting_date)

    handler = daily_close_handler(StubSettings(), LOGGER, Accounting())
    response = handler(make_request("POST", "/admin/runs/daily-close?date=2026-04-02"))
    assert response.status_code == 200
    assert body(response) == {"status": "completed", "posting_date": "2026-04-02"}
    assert calls == [datetime(2026, 4, 2, tzinfo=timezone.utc)]


def test_filing_status_requires_kind_and_period():
    response = filing_status_handler(LOGGER, None)(make_request("GET", "/admin/filings"))
    assert response.status_code == 400
    assert "kind and period query params are required" in response.get_data(as_text=True)


def test_filing_status_not_found_maps_to_404():
    class Filings:
        def get_status(self, kind, period):
            raise NotFoundError("filings are disabled")

    response = filing_status_handler(LOGGER, Filings())(
        make_request("GET", "/admin/filings?kind=oss_union&period=2026-Q1")
    )
    assert response.status_code == 404
    assert body(response) == {"error": "filings are disabled"}


def test_filing_run_reports_export_state():
    class Filings:
        def run_period(self, kind, period):
            return None

        def get_status(self, kind, period):
            return {"ready_entries": 1}

    response = filing_run_handler(LOGGER, Filings())(
        make_request("POST", "/admin/runs/filing?kind=oss_union&period=2026-Q1")
    )
    assert response.status_code == 200
    assert body(response) == {
        "status": "completed",
        "kind": "oss_union",
        "period": "2026-Q1",
        "export_sent": False,
        "latest_state": {"ready_entries": 1},
    }


def test_mark_submitted_parses_rfc3339_time():
    calls = []

    class Filings:
        def mark_submitted(self, kind, period, submitted_at):
            calls.append(submitted_at)

    handler = filing_mark_submitted_handler(LOGGER, Filings())
    response = handler(
        make_request(
            "POST",
            "/admin/filings/mark-submitted?kind=oss_union&period=2026-Q1&submitted_at=2026-04-20T12:30:00%2B02:00",
        )
    )
    assert response.status_code == 200
    assert body(response)["submitted_at"] == "2026-04-20T10:30:00Z"
    assert calls[0] == datetime(2026, 4, 20, 10, 30, tzinfo=timezone.utc)


def test_mark_submitted_rejects_bad_time():
    handler = filing_mark_submitted_handler(LOGGER, None)
    response = handler(
        make_request("POST", "/admin/filings/mark-submitted?kind=oss_union&period=2026-Q1&submitted_at=yesterday")
    )
    assert response.status_code == 400
    assert "invalid submitted_at query param" in body(response)["error"]


def test_stripe_webhook_rejects_wrong_method():
    response = stripe_webhook_handler(LOGGER, None)(make_request("GET", "/webhooks/stripe"))
    assert response.status_code == 405
    assert response.headers["Allow"] == "POST"


def test_stripe_webhook_future_signature_is_unauthorized():
    received = []

    class Stripe:
        def handle_webhook(self, payload, signature):
            received.append((payload, signature))
            raise WebhookSignatureError("webhook signature timestamp is in the future")

    raw = b'{"id":"evt_123","type":"charge.succeeded","data":{"object":{}}}'
    response = stripe_webhook_handler(LOGGER, Stripe())(
        make_request("POST", "/webhooks/stripe", headers={"Stripe-Signature": "t=9999999999,v1=deadbeef"}, data=raw)
    )
    assert response.status_code == 401
    assert received == [(raw, "t=9999999999,v1=deadbeef")]


def test_stripe_webhook_accepts_event():
    class Stripe:
        def handle_webhook(self, payload, signature):
            return None

    response = stripe_webhook_handler(LOGGER, Stripe())(make_request("POST", "/webhooks/stripe", data=b"{}"))
    assert response.status_code == 200
    assert body(response) == {"status": "accepted"}


def test_tax_case_handler_without_service_is_unavailable():
    response = tax_case_handler(LOGGER, None)(make_request("GET", "/admin/tax/cases/not-a-uuid"))
    assert response.status_code == 503
    assert body(response) == {"error": "Service Unavailable"}


def test_tax_case_rebuild_without_service_is_unavailable():
    response = tax_case_rebuild_handler(LOGGER, None)(make_request("POST", "/admin/tax/cases/rebuild"))
    assert response.status_code == 503


def test_tax_case_handler_rejects_invalid_id_and_maps_not_found():
    class Stripe:
        def get_tax_case(self, tax_case_id):
            raise NotFoundError("not found")

    handler = tax_case_handler(LOGGER, Stripe())
    invalid = handler(make_request("GET", "/admin/tax/cases/not-a-uuid"))
    assert invalid.status_code == 400
    assert body(invalid)["error"].startswith("invalid tax case id")
    missing = handler(make_request("GET", f"/admin/tax/cases/{CASE_ID}"))
    assert missing.status_code == 404


def test_tax_case_rebuild_requires_id():
    class Stripe:
        def rebuild_tax_case(self, tax_case_id):
            return {}

    response = tax_case_rebuild_handler(LOGGER, Stripe())(make_request("POST", "/admin/tax/cases/rebuild"))
    assert response.status_code == 400
    assert body(response) == {"error": "id query param is required"}


def test_manual_evidence_requires_tax_case_id_and_passes_uuid():
    recorded = []

    class Stripe:
        def record_manual_tax_evidence(self, evidence):
            recorded.append(evidence)
            return {"ok": True}

    handler = manual_tax_evidence_handler(LOGGER, Stripe())
    missing = handler(make_request("POST", "/admin/tax/cases/manual-evidence", data=b'{"country":"DE"}'))
    assert missing.status_code == 400
    assert body(missing) == {"error": "tax_case_id is required"}

    ok = handler(
        make_request("POST", "/admin/tax/cases/manual-evidence", data=json.dumps({"tax_case_id": CASE_ID}).encode())
    )
    assert ok.status_code == 200
    assert recorded[0]["tax_case_id"] == UUID(CASE_ID)


def test_health_rejects_post():
    response = health_handler()(make_request("POST", "/healthz"))
    assert response.status_code == 405
    assert response.headers["Allow"] == "GET"


def test_write_helpers():
    server = write_error(500, RuntimeError("db password leaked"))
    assert body(server) == {"error": "Internal Server Error"}
    client = write_error(400, ValueError("bad input"))
    assert body(client) == {"error": "bad input"}
    assert write_json(201, {"id": UUID(CASE_ID)}).get_data(as_text=True) == f'{{"id": "{CASE_ID}"}}\n'
    assert method_not_allowed("POST").status_code == 405