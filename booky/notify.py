"""Operator notifications and the Resend e-mail delivery client."""

from __future__ import annotations

import base64
import json
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Protocol
from urllib.parse import urlsplit, urlunsplit


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Category(str, Enum):
    DAILY_CLOSE_FAILURE = "daily_close_failure"
    DAILY_CLOSE_WARNING = "daily_close_warning"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"
    WEBHOOK_INGESTION_ERROR = "webhook_ingestion_error"
    WEBHOOK_REVIEW_REQUIRED = "webhook_review_required"
    SCHEDULER_FAILURE = "scheduler_failure"
    SCHEDULER_CONFIG = "scheduler_config"
    FILING_DRAFT = "filing_draft"
    FILING_ZERO_REMINDER = "filing_zero_reminder"
    FILING_FAILURE = "filing_failure"


@dataclass
class Attachment:
    filename: str
    content_type: str = ""
    content: bytes = b""


@dataclass
class Notification:
    severity: Severity
    category: Category
    posting_date: date | None = None
    company_id: str = ""
    to: list[str] = field(default_factory=list)
    subject: str = ""
    summary_lines: list[str] = field(default_factory=list)
    detail_lines: list[str] = field(default_factory=list)
    action_lines: list[str] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)


class Notifier(Protocol):
    """Anything that can deliver a notification."""

    def send(self, notification: Notification) -> None:
        """Deliver the notification or raise on failure."""


def _text(value: Any) -> str:
    return value.value if isinstance(value, Enum) else str(value)


def build_body(notification: Notification) -> str:
    """Render the plain-text e-mail body for a notification."""
    parts = [notification.subject, "\n\n"]
    if notification.posting_date is not None:
        parts.append(f"Posting date: {notification.posting_date.strftime('%Y-%m-%d')}\n")
    parts.append(f"Company ID: {notification.company_id}\n")
    parts.append(f"Severity: {_text(notification.severity)}\n")
    parts.append(f"Category: {_text(notification.category)}\n")
    parts.append("\nSummary\n")
    parts.extend(f"- {line}\n" for line in notification.summary_lines)
    if notification.detail_lines:
        parts.append("\nDetails\n")
        parts.extend(f"- {line}\n" for line in notification.detail_lines)
    if notification.action_lines:
        parts.append("\nHow to handle\n")
        parts.extend(f"- {line}\n" for line in notification.action_lines)
    return "".join(parts)


@dataclass
class ResendConfig:
    api_key: str = ""
    sender: str = ""
    to: list[str] = field(default_factory=list)
    base_url: str = ""
    subject_prefix: str = ""


class ResendNotifier:
    """Sends notifications as e-mails through the Resend HTTP API."""

    def __init__(self, config: ResendConfig, timeout: float = 30.0) -> None:
        self._base_url = config.base_url.rstrip("/")
        self._api_key = config.api_key
        self._sender = config.sender
        self._to = list(config.to)
        self._subject_prefix = config.subject_prefix
        self._timeout = timeout

    def send(self, notification: Notification) -> None:
        subject = notification.subject.strip()
        if self._subject_prefix:
            subject = f"{self._subject_prefix} {subject}".strip()
        recipients = list(notification.to) if notification.to else list(self._to)
        payload: dict[str, Any] = {
            "from": self._sender,
            "to": recipients,
            "subject": subject,
            "text": build_body(notification),
        }
        attachments = []
        for attachment in notification.attachments:
            if not attachment.filename or not attachment.content:
                continue
            part = {
                "filename": attachment.filename,
                "content": base64.b64encode(attachment.content).decode("ascii"),
            }
            if attachment.content_type:
                part["content_type"] = attachment.content_type
            attachments.append(part)
        if attachments:
            payload["attachments"] = attachments

        request = urllib.request.Request(
            self._endpoint("/emails"),
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                response.read()
        except urllib.error.HTTPError as err:
            detail = err.read().decode("utf-8", "replace").strip()
            raise RuntimeError(f"resend api returned {err.code}: {detail}") from err
        except (urllib.error.URLError, OSError, ValueError) as err:
            raise RuntimeError(f"call resend api: {err}") from err

    def _endpoint(self, endpoint: str) -> str:
        base = urlsplit(self._base_url)
        path = base.path.rstrip("/") + "/" + endpoint.lstrip("/")
        return urlunsplit((base.scheme, base.netloc, path, base.query, base.fragment))