"""HTTP API: health check, Stripe webhook and bearer-protected admin endpoints."""

from __future__ import annotations

import base64
import dataclasses
import hmac
import json
import logging
import re
import time
from collections.abc import Callable, Mapping
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from werkzeug.http import HTTP_STATUS_CODES
from werkzeug.utils import redirect
from werkzeug.wrappers import Request, Response

from booky.models import NotFoundError

Handler = Callable[[Request], Response]

_MAX_WEBHOOK_BYTES = 4 << 20
_AUTH_CHALLENGE = 'Bearer realm="booky-admin"'
_DATE = re.compile(r"\d{4}-\d{2}-\d{2}")
_RFC3339 = re.compile(
    r"(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(?P<frac>\d+))?"
    r"(?:(?P<utc>Z)|(?P<sign>[+-])(?P<hh>\d{2}):(?P<mm>\d{2}))"
)
_NIL_UUID = UUID(int=0)


class WebhookSignatureError(Exception):
    """The webhook signature is missing, malformed, mismatched, expired or in the future."""


class InvalidEventError(Exception):
    """The webhook body is not a usable event."""


def _jsonable(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {item.name: _jsonable(getattr(value, item.name)) for item in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    return value


def write_json(status: int, payload: Any) -> Response:
    """Return a JSON response with the given status."""
    body = json.dumps(_jsonable(payload), ensure_ascii=False) + "\n"
    return Response(body, status=status, mimetype="application/json")


def write_error(status: int, error: BaseException | None) -> Response:
    """Return a JSON error; client errors carry their message, server errors only the status text."""
    message = "request failed"
    if error is not None and 400 <= status < 500:
        message = str(error)
    elif status >= 500:
        message = HTTP_STATUS_CODES.get(status, "")
    return write_json(status, {"error": message})


def method_not_allowed(allowed: str) -> Response:
    response = write_json(405, {"error": "method not allowed"})
    response.headers["Allow"] = allowed
    return response


def with_bearer_auth(token: str, handler: Handler) -> Handler:
    """Guard a handler with a constant-time bearer token check."""

    def guarded(request: Request) -> Response:
        if not token:
            return write_error(403, None)
        header = request.headers.get("Authorization", "").strip()
        scheme, sep, provided = header.partition(" ")
        if not sep or scheme.strip().lower() != "bearer":
            return _unauthorized()
        if not hmac.compare_digest(token.encode("utf-8"), provided.strip().encode("utf-8")):
            return _unauthorized()
        return handler(request)

    return guarded


def _unauthorized() -> Response:
    response = write_error(401, None)
    response.headers["WWW-Authenticate"] = _AUTH_CHALLENGE
    return response


def health_handler() -> Handler:
    def handle(request: Request) -> Response:
        if request.method != "GET":
            return method_not_allowed("GET")
        return write_json(200, {"status": "ok"})

    return handle


def daily_close_handler(settings: Any, logger: logging.Logger, service: Any) -> Handler:
    """Run the daily close for ?date=YYYY-MM-DD, or for today."""

    def handle(request: Request) -> Response:
        if request.method != "POST":
            return method_not_allowed("POST")
        try:
            loc = settings.location()
        except (ValueError, KeyError) as err:
            return write_error(500, err)

        raw = request.args.get("date", "")
        posting_date = datetime.now(loc)
        if raw:
            try:
                if not _DATE.fullmatch(raw):
                    raise ValueError(f'parsing time "{raw}" as "YYYY-MM-DD": cannot parse')
                parsed = datetime.strptime(raw, "%Y-%m-%d")
            except ValueError as err:
                return write_error(400, ValueError(f"invalid date query param: {err}"))
            posting_date = parsed.replace(tzinfo=loc)

        day = posting_date.strftime("%Y-%m-%d")
        try:
            service.run_daily_close(posting_date)
        except Exception as err:  # noqa: BLE001 - reported to the caller
            logger.error("daily close failed posting_date=%s error=%s", day, err)
            return write_error(500, err)
        return write_json(200, {"status": "completed", "posting_date": day})

    return handle


def bokio_check_handler(logger: logging.Logger, client: Any) -> Handler:
    def handle(request: Request) -> Response:
        if request.method != "GET":
            return method_not_allowed("GET")
        try:
            result = client.check()
        except Exception as err:  # noqa: BLE001 - reported to the caller
            logger.error("bokio check failed: %s", err)
            return write_error(502, err)
        return write_json(200, {"status": "ok", "bokio": result})

    return handle


def _filing_query(request: Request) -> tuple[str, str] | None:
    kind = request.args.get("kind", "")
    period = request.args.get("period", "")
    if not kind or not period:
        return None
    return kind, period


def _missing_filing_query() -> Response:
    return write_error(400, ValueError("kind and period query params are required"))


def filing_status_handler(logger: logging.Logger, service: Any) -> Handler:
    def handle(request: Request) -> Response:
        if request.method != "GET":
            return method_not_allowed("GET")
        params = _filing_query(request)
        if params is None:
            return _missing_filing_query()
        kind, period = params
        try:
            status = service.get_status(kind, period)
        except NotFoundError as err:
            return write_error(404, err)
        except Exception as err:  # noqa: BLE001 - reported to the caller
            logger.error("filing status failed kind=%s period=%s error=%s", kind, period, err)
            return write_error(500, err)
        return write_json(200, status)

    return handle


def filing_run_handler(logger: logging.Logger, service: Any) -> Handler:
    def handle(request: Request) -> Response:
        if request.method != "POST":
            return method_not_allowed("POST")
        params = _filing_query(request)
        if params is None:
            return _missing_filing_query()
        kind, period = params
        try:
            export = service.run_period(kind, period)
        except Exception as err:  # noqa: BLE001 - reported to the caller
            logger.error("filing run failed kind=%s period=%s error=%s", kind, period, err)
            return write_error(500, err)
        try:
            status = service.get_status(kind, period)
        except Exception as err:  # noqa: BLE001 - reported to the caller
            logger.error("filing status after run failed kind=%s period=%s error=%s", kind, period, err)
            return write_error(500, err)
        return write_json(
            200,
            {
                "status": "completed",
                "kind": kind,
                "period": period,
                "export_sent": export is not None,
                "latest_state": status,
            },
        )

    return handle


def _parse_rfc3339(raw: str) -> datetime:
    match = _RFC3339.fullmatch(raw)
    if match is None:
        raise ValueError(f'parsing time "{raw}" as RFC3339: cannot parse')
    base = datetime.strptime(match.group("base"), "%Y-%m-%dT%H:%M:%S")
    micro = int((match.group("frac") or "0").ljust(6, "0")[:6])
    if match.group("utc"):
        tz = timezone.utc
    else:
        offset = timedelta(hours=int(match.group("hh")), minutes=int(match.group("mm")))
        tz = timezone(-offset if match.group("sign") == "-" else offset)
    return base.replace(microsecond=micro, tzinfo=tz)


def filing_mark_submitted_handler(logger: logging.Logger, service: Any) -> Handler:
    def handle(request: Request) -> Response:
        if request.method != "POST":
            return method_not_allowed("POST")
        params = _filing_query(request)
        if params is None:
            return _missing_filing_query()
        kind, period = params
        submitted_at = datetime.now(timezone.utc)
        raw = request.args.get("submitted_at", "")
        if raw:
            try:
                submitted_at = _parse_rfc3339(raw)
            except ValueError as err:
                return write_error(400, ValueError(f"invalid submitted_at query param: {err}"))
        try:
            service.mark_submitted(kind, period, submitted_at)
        except Exception as err:  # noqa: BLE001 - reported to the caller
            logger.error("filing mark submitted failed kind=%s period=%s error=%s", kind, period, err)
            return write_error(500, err)
        return write_json(
            200,
            {
                "status": "submitted",
                "kind": kind,
                "period": period,
                "submitted_at": submitted_at.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            },
        )

    return handle


def stripe_webhook_handler(logger: logging.Logger, service: Any) -> Handler:
    """Accept a signed Stripe event and hand it to the webhook service."""

    def handle(request: Request) -> Response:
        if request.method != "POST":
            return method_not_allowed("POST")
        if service is None:
            return write_error(503, RuntimeError("stripe service is not configured"))

        try:
            payload = request.stream.read(_MAX_WEBHOOK_BYTES + 1)
        except OSError as err:
            return write_error(400, err)
        if len(payload) > _MAX_WEBHOOK_BYTES:
            return write_error(400, ValueError("http: request body too large"))

        signature = request.headers.get("Stripe-Signature", "")
        try:
            service.handle_webhook(payload, signature)
        except Exception as err:  # noqa: BLE001 - mapped onto a status code
            logger.error("stripe webhook failed: %s", err)
            status = 500
            if isinstance(err, WebhookSignatureError):
                status = 401
            elif isinstance(err, (InvalidEventError, EOFError, json.JSONDecodeError)):
                status = 400
            return write_error(status, err)
        return write_json(200, {"status": "accepted"})

    return handle


def _parse_tax_case_id(raw: str, missing: str) -> UUID | Response:
    if not raw:
        return write_error(400, ValueError(missing))
    try:
        return UUID(raw)
    except ValueError as err:
        return write_error(400, ValueError(f"invalid tax case id: {err}"))


def tax_case_handler(logger: logging.Logger, service: Any) -> Handler:
    def handle(request: Request) -> Response:
        if request.method != "GET":
            return method_not_allowed("GET")
        if service is None:
            return write_error(503, RuntimeError("stripe service is not configured"))
        raw = request.path
        if raw.startswith("/admin/tax/cases/"):
            raw = raw[len("/admin/tax/cases/"):]
        parsed = _parse_tax_case_id(raw.strip("/").strip(), "tax case id is required")
        if isinstance(parsed, Response):
            return parsed
        try:
            payload = service.get_tax_case(parsed)
        except NotFoundError as err:
            return write_error(404, err)
        except Exception as err:  # noqa: BLE001 - reported to the caller
            logger.error("get tax case failed tax_case_id=%s error=%s", parsed, err)
            return write_error(500, err)
        return write_json(200, payload)

    return handle


def tax_case_rebuild_handler(logger: logging.Logger, service: Any) -> Handler:
    def handle(request: Request) -> Response:
        if request.method != "POST":
            return method_not_allowed("POST")
        if service is None:
            return write_error(503, RuntimeError("stripe service is not configured"))
        parsed = _parse_tax_case_id(request.args.get("id", "").strip(), "id query param is required")
        if isinstance(parsed, Response):
            return parsed
        try:
            payload = service.rebuild_tax_case(parsed)
        except Exception as err:  # noqa: BLE001 - reported to the caller
            logger.error("rebuild tax case failed tax_case_id=%s error=%s", parsed, err)
            return write_error(500, err)
        return write_json(200, payload)

    return handle


def manual_tax_evidence_handler(logger: logging.Logger, service: Any) -> Handler:
    """Record manually supplied tax evidence given as a JSON object."""

    def handle(request: Request) -> Response:
        if request.method != "POST":
            return method_not_allowed("POST")
        if service is None:
            return write_error(503, RuntimeError("stripe service is not configured"))
        try:
            evidence = json.loads(request.get_data())
            if not isinstance(evidence, dict):
                raise ValueError("manual tax evidence must be a JSON object")
            raw_id = evidence.get("tax_case_id") or ""
            if not isinstance(raw_id, str):
                raise ValueError("tax_case_id must be a string")
            tax_case_id = UUID(raw_id) if raw_id else _NIL_UUID
        except ValueError as err:
            return write_error(400, err)
        if tax_case_id == _NIL_UUID:
            return write_error(400, ValueError("tax_case_id is required"))
        evidence["tax_case_id"] = tax_case_id
        try:
            payload = service.record_manual_tax_evidence(evidence)
        except Exception as err:  # noqa: BLE001 - reported to the caller
            logger.error("manual tax evidence failed tax_case_id=%s error=%s", tax_case_id, err)
            return write_error(500, err)
        return write_json(200, payload)

    return handle


class _Router:
    """WSGI application routing exact paths and path subtrees to handlers."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger
        self._exact: dict[str, Handler] = {}
        self._subtrees: dict[str, Handler] = {}

    def handle(self, pattern: str, handler: Handler) -> None:
        if pattern.endswith("/"):
            self._subtrees[pattern] = handler
        else:
            self._exact[pattern] = handler

    def _dispatch(self, request: Request) -> Response:
        path = request.path
        handler = self._exact.get(path)
        if handler is not None:
            return handler(request)
        prefixes = [prefix for prefix in self._subtrees if path.startswith(prefix)]
        if prefixes:
            return self._subtrees[max(prefixes, key=len)](request)
        if path + "/" in self._subtrees:
            target = path + "/"
            if request.query_string:
                target += "?" + request.query_string.decode("latin-1")
            return redirect(target, 301)
        return Response("404 page not found\n", status=404, mimetype="text/plain")

    def __call__(self, environ: dict, start_response: Callable) -> Any:
        request = Request(environ)
        started = time.monotonic()
        try:
            response = self._dispatch(request)
        finally:
            self._logger.info(
                "http request method=%s path=%s duration=%.6fs",
                request.method,
                request.path,
                time.monotonic() - started,
            )
        response.headers["X-Content-Type-Options"] = "nosniff"
        return response(environ, start_response)


def new_router(
    settings: Any,
    stripe_service: Any,
    accounting_service: Any,
    filings_service: Any,
    bokio_client: Any,
    logger: logging.Logger | None,
) -> _Router:
    """Build the WSGI application; admin routes exist when ``settings.admin_enabled`` is set."""
    logger = logger or logging.getLogger(__name__)
    router = _Router(logger)
    router.handle("/healthz", health_handler())
    router.handle("/webhooks/stripe", stripe_webhook_handler(logger, stripe_service))
    if getattr(settings, "admin_enabled", False):
        token = getattr(settings, "admin_bearer_token", "") or ""
        admin_routes = {
            "/admin/runs/daily-close": daily_close_handler(settings, logger, accounting_service),
            "/admin/runs/filing": filing_run_handler(logger, filings_service),
            "/admin/filings": filing_status_handler(logger, filings_service),
            "/admin/filings/mark-submitted": filing_mark_submitted_handler(logger, filings_service),
            "/admin/bokio/check": bokio_check_handler(logger, bokio_client),
            "/admin/tax/cases/rebuild": tax_case_rebuild_handler(logger, stripe_service),
            "/admin/tax/cases/manual-evidence": manual_tax_evidence_handler(logger, stripe_service),
            "/admin/tax/cases/": tax_case_handler(logger, stripe_service),
        }
        for pattern, handler in admin_routes.items():
            router.handle(pattern, with_bearer_auth(token, handler))
    return router