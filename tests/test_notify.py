import base64
import json
import threading
from datetime import date
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from booky.notify import (
    Attachment,
    Category,
    Notification,
    ResendConfig,
    ResendNotifier,
    Severity,
    build_body,
)


def _serve(status, reply=b""):
    received = []

    class Handler(BaseHTTPRequestHandler):
        def do_POST(self):
            length = int(self.headers.get("Content-Length", "0"))
            received.append(
                {
                    "path": self.path,
                    "auth": self.headers.get("Authorization"),
                    "body": json.loads(self.rfile.read(length)),
                }
            )
            self.send_response(status)
            self.send_header("Content-Length", str(len(reply)))
            self.end_headers()
            self.wfile.write(reply)

        def log_message(self, *args):
            pass

    server = HTTPServer(("127.0.0.1", 0), Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, received


@pytest.fixture
def accepting_server():
    server, received = _serve(202)
    yield f"http://127.0.0.1:{server.server_address[1]}", received
    server.shutdown()
    server.server_close()


@pytest.fixture
def failing_server():
    server, received = _serve(500, b"boom")
    yield f"http://127.0.0.1:{server.server_address[1]}", received
    server.shutdown()
    server.server_close()


def _notifier(base_url):
    return ResendNotifier(
        ResendConfig(
            api_key="placeholder",
            sender="bookkeeping@example.com",
            to=["finance@example.com"],
            base_url=base_url,
            subject_prefix="[booky]",
        )
    )


def test_send_uses_notification_overrides(accepting_server):
    base_url, received = accepting_server
    notification = Notification(
        severity=Severity.WARNING,
        category=Category.DAILY_CLOSE_WARNING,
        company_id="11111111-1111-1111-1111-111111111111",
        to=["override@example.com"],
        subject="Daily close warning",
        summary_lines=["One warning"],
        attachments=[Attachment("draft.txt", "text/plain", b"hello")],
    )
    _notifier(base_url).send(notification)
    assert len(received) == 1
    request = received[0]
    assert request["path"] == "/emails"
    assert request["auth"] == "Bearer placeholder"
    body = request["body"]
    assert body["from"] == "bookkeeping@example.com"
    assert body["to"] == ["override@example.com"]
    assert body["subject"] == "[booky] Daily close warning"
    assert body["text"] == build_body(notification)
    assert len(body["attachments"]) == 1
    assert base64.b64decode(body["attachments"][0]["content"]) == b"hello"
    assert body["attachments"][0]["content_type"] == "text/plain"


def test_send_falls_back_to_configured_recipients_and_skips_empty_attachments(accepting_server):
    base_url, received = accepting_server
    notification = Notification(
        severity=Severity.INFO,
        category=Category.FILING_DRAFT,
        subject="Draft",
        attachments=[Attachment("empty.txt", "text/plain", b"")],
    )
    _notifier(base_url).send(notification)
    body = received[0]["body"]
    assert body["to"] == ["finance@example.com"]
    assert "attachments" not in body
    assert body["text"] == build_body(notification)
    assert body["text"].startswith("Draft\n\n")


def test_send_raises_on_error_status(failing_server):
    base_url, _ = failing_server
    with pytest.raises(RuntimeError, match="resend api returned 500: boom"):
        _notifier(base_url).send(
            Notification(severity=Severity.ERROR, category=Category.FILING_FAILURE, subject="x")
        )


def test_build_body_includes_structured_sections():
    body = build_body(
        Notification(
            severity=Severity.ERROR,
            category=Category.DAILY_CLOSE_FAILURE,
            posting_date=date(2026, 4, 2),
            company_id="company-123",
            subject="Failure",
            summary_lines=["Summary line"],
            detail_lines=["Detail line"],
            action_lines=["Action line"],
        )
    )
    for wanted in [
        "Failure",
        "Posting date: 2026-04-02",
        "Company ID: company-123",
        "Severity: error",
        "Category: daily_close_failure",
        "Summary",
        "- Summary line",
        "Details",
        "- Detail line",
        "How to handle",
        "- Action line",
    ]:
        assert wanted in body


def test_build_body_omits_empty_optional_sections():
    body = build_body(
        Notification(severity=Severity.INFO, category=Category.SCHEDULER_CONFIG, subject="S")
    )
    assert "Details" not in body
    assert "How to handle" not in body
    assert "Posting date" not in body