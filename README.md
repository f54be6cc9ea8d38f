# booky

booky takes the accounting facts recorded for card payments and turns them
into Swedish VAT filings: the EU One-Stop-Shop union return (OSS) and the
monthly periodic summary (*periodisk sammanställning*). It also builds and
sends notification e-mails, runs a periodic scheduler and provides a small
admin API as a WSGI application.

## Installing

```
pip install .
pip install ".[test]"   # adds pytest for the test suite
```

The only runtime dependency is `werkzeug`, which the HTTP API uses.

## Modules

| Module             | Contents                                                                 |
|--------------------|--------------------------------------------------------------------------|
| `booky.models`     | `Settings`, the domain records (`AccountingFact`, `TaxCase`, `OSSUnionEntry`, `PeriodicSummaryEntry`, `FilingPeriod`, `FilingExport`), payload shapes, the enums `FilingKind`, `ReviewState`, `FilingPeriodStatus`, and `NotFoundError` |
| `booky.periods`    | Period strings, period boundaries, deadlines and first-send times        |
| `booky.render`     | `render_oss_union`, `render_periodic_summary`, `RenderedFile` and format helpers |
| `booky.helpers`    | Candidate checks, payload decoding, VAT rate resolution and filters      |
| `booky.entries`    | `EntryBuilder`, `MemorySource`, `RepositorySource`, `summarize_facts`, `ore_to_whole_sek` |
| `booky.service`    | `FilingService` and `PeriodStatus`                                       |
| `booky.notify`     | `Notification`, `Attachment`, `Severity`, `Category`, `build_body`, `ResendConfig`, `ResendNotifier` |
| `booky.scheduler`  | `Scheduler` and `should_ignore_schedule_error`                           |
| `booky.httpapi`    | `new_router` and the individual request handlers                         |
| `booky.pdf_format` | Amount and label formatting for journal draft reports                    |

## How filings are built

- **Entries.** `EntryBuilder.build_entries` groups facts whose source group
  starts with `refund:` or ends with `:sale`. For each group it looks up the
  tax case. A tax status of the form `EU_*_B2C` gives an OSS entry, filed by
  quarter. A status of the form `EU_*_B2B` that has a buyer VAT number gives a
  periodic summary entry, filed by month. An entry is set to review, and left
  out of the files, when any of these holds: the tax case is missing, the tax
  case is not reportable, the row type is unknown, the settled SEK amount is
  missing, or the text cannot be written in ISO-8859-1. A refund that falls in
  a later quarter than its sale becomes an OSS correction.
- **Rendering.** `render_oss_union` writes the `OSS_001` file and
  `render_periodic_summary` writes the `SKV574008` file. Both use ISO-8859-1
  and CRLF line endings.
- **Deadlines.** An OSS return is due on the 30th of the month after the
  quarter ends. A periodic summary is due on the 25th of the following month.
  The first draft is sent `filings.lead_time_days` days before the deadline,
  at `filings.send_time_local` in the configured time zone.

## Examples

Period strings and amount formatting:

```python
from datetime import datetime, timezone

from booky.periods import month_period, quarter_period
from booky.render import compact_quarter_period, format_decimal_cents, ps_period_code
from booky.entries import ore_to_whole_sek

moment = datetime(2026, 1, 15, 12, tzinfo=timezone.utc)
quarter_period(moment)            # "2026-Q1"
month_period(moment)              # "2026-01"
compact_quarter_period("2025-Q4") # "2025Q4"
ps_period_code("2026-03")         # "2603"
format_decimal_cents(-3800)       # "-38,00"
ore_to_whole_sek(-250)            # -3
```

Building entries from facts and the tax cases delivered with them:

```python
from booky.models import Settings
from booky.service import FilingService

service = FilingService(settings, repository, notifier)
oss_entries, ps_entries, periods = service.build_webhook_entries(tax_cases, facts)
```

The body of a notification e-mail:

```python
from booky.notify import Category, Notification, Severity, build_body

text = build_body(Notification(
    severity=Severity.ERROR,
    category=Category.DAILY_CLOSE_FAILURE,
    company_id="company-123",
    subject="Failure",
    summary_lines=["Summary line"],
))
```

Sending it through the Resend API:

```python
from booky.notify import ResendConfig, ResendNotifier

notifier = ResendNotifier(ResendConfig(
    api_key="placeholder",
    sender="bookkeeping@example.com",
    to=["finance@example.com"],
    base_url="https://api.resend.com",
    subject_prefix="[booky]",
))
```

The admin API, served by any WSGI server:

```python
from booky.httpapi import new_router

app = new_router(settings, stripe_service, accounting_service,
                 filings_service, bokio_client, logger)
```

`/healthz` and `/webhooks/stripe` are always served. The admin routes are
added only when `settings.admin_enabled` is set:

- `/admin/runs/daily-close`
- `/admin/runs/filing`
- `/admin/filings`
- `/admin/filings/mark-submitted`
- `/admin/bokio/check`
- `/admin/tax/cases/rebuild`
- `/admin/tax/cases/manual-evidence`
- `/admin/tax/cases/<id>`

Requests to these routes must send `Authorization: Bearer token`, where the
token matches `settings.admin_bearer_token`. The scheme name is matched
without regard to case. If no token is configured, every request gets 403.

## Filing workflow

1. When a webhook is processed, call `FilingService.sync_webhook_entries`. It
   replaces the stored entries of the affected source groups.
2. `Scheduler.try_run` runs the daily close for yesterday. If the cutoff time
   has passed, it also runs the close for today. It then calls
   `FilingService.evaluate_due_periods`. `Scheduler.run(stop)` repeats this
   at every interval until the `threading.Event` is set.
3. When a period's first-send time has passed, a draft e-mail goes out with
   the rendered file attached. If an OSS quarter has no ready entries, a
   nil-return reminder is sent instead. If the file has not changed since the
   last export, nothing is sent. If it has changed, a new revision supersedes
   the earlier one.
4. `FilingService.run_period` rebuilds a period and evaluates it straight
   away. `FilingService.get_status` reports the stored state of a period.
5. After filing, call `FilingService.mark_submitted`, or use the
   `/admin/filings/mark-submitted` route. No further drafts or reminders are
   then sent for that period.

## What the package does not include

booky contains no storage of its own. `FilingService` and `RepositorySource`
work with a repository object that you provide. It needs these read methods:

- `list_filing_relevant_facts_by_date_range`
- `list_due_filing_periods`
- `get_filing_period`
- `get_latest_filing_export`
- `list_oss_union_entries_by_period`
- `list_periodic_summary_entries_by_period`
- `list_entry_periods`
- `get_tax_case`

It also needs a `transaction()` context manager. The object the transaction
yields must provide these write methods:

- `delete_oss_union_entries_by_source_groups`
- `delete_periodic_summary_entries_by_source_groups`
- `upsert_oss_union_entries`
- `upsert_periodic_summary_entries`
- `upsert_filing_periods`
- `update_filing_period_evaluation`
- `create_filing_export`
- `mark_filing_export_superseded`
- `mark_filing_period_submitted`

Any lookup that finds nothing must raise `NotFoundError`.

The following services are also passed in by the caller. booky implements
none of them:

- the payment webhook service, which verifies signatures and records events
  and tax cases;
- the accounting service, which runs the daily close;
- the Bokio client.

`booky.pdf_format` only formats text for journal reports. It does not produce
PDF files.

There is no command-line program. To serve the API, hand the application
returned by `new_router` to a WSGI server.