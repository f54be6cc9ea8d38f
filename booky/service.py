"""Filing workflow: keeping entries in sync, evaluating due periods and sending drafts."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any
from uuid import uuid4

from booky.entries import EntryBuilder, MemorySource, RepositorySource
from booky.helpers import (
    filing_source_groups,
    filter_oss_period_entries,
    filter_periods,
    filter_ps_period_entries,
    period_key,
)
from booky.models import (
    AccountingFact,
    FilingExport,
    FilingKind,
    FilingPeriod,
    FilingPeriodStatus,
    NotFoundError,
    OSSUnionEntry,
    PeriodicSummaryEntry,
    ReviewState,
    Settings,
    TaxCase,
)
from booky.notify import Attachment, Category, Notification, Notifier, Severity
from booky.periods import (
    completed_quarter_periods,
    filing_deadline,
    month_period,
    period_date_range,
)
from booky.render import RenderedFile, render_oss_union, render_periodic_summary

_ZERO_REMINDER_CHECKSUM = "zero-reminder"
_BACKFILL_WINDOW = timedelta(days=60)


def _location(settings: Settings) -> tzinfo:
    try:
        return settings.location()
    except ValueError:
        return timezone.utc


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _kind_text(kind: Any) -> str:
    return getattr(kind, "value", kind)


def _join_errors(errors: Iterable[BaseException | None]) -> BaseException | None:
    present = [err for err in errors if err is not None]
    if not present:
        return None
    if len(present) == 1:
        return present[0]
    return RuntimeError("\n".join(str(err) for err in present))


@dataclass
class PeriodStatus:
    """The stored state of one filing period with its entry counts."""

    period: FilingPeriod
    ready_entries: int = 0
    review_entries: int = 0
    latest_export: FilingExport | None = None


def next_export_version(latest: FilingExport | None) -> int:
    """Return the version number the next export of a period gets."""
    return 1 if latest is None else latest.version + 1


def checksum_bytes(content: bytes) -> str:
    return hashlib.sha1(content).hexdigest()


def filing_label(kind: str) -> str:
    if kind == FilingKind.OSS_UNION:
        return "OSS union filing"
    if kind == FilingKind.PERIODIC_SUMMARY:
        return "Periodisk sammanstallning"
    return _kind_text(kind)


class FilingService:
    """Builds, stores and sends OSS union returns and periodic summaries.

    The repository offers read methods directly and a ``transaction()``
    context manager whose object carries the write methods.
    """

    def __init__(
        self,
        settings: Settings,
        repository: Any,
        notifier: Notifier | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.notifier = notifier
        self.logger = logger or logging.getLogger(__name__)
        self._builder = EntryBuilder(settings)

    @property
    def _company_id(self) -> Any:
        return self.settings.company_id

    def enabled(self) -> bool:
        return self.settings.filings.enabled

    def build_webhook_entries(
        self, tax_cases: Iterable[TaxCase], facts: Iterable[AccountingFact]
    ) -> tuple[list[OSSUnionEntry], list[PeriodicSummaryEntry], list[FilingPeriod]]:
        """Build entries for facts delivered together with their tax cases."""
        return self._builder.build_entries(list(facts), MemorySource(tax_cases))

    def sync_webhook_entries(self, tax_cases: Iterable[TaxCase], facts: Iterable[AccountingFact]) -> None:
        """Replace the stored entries of the facts' source groups."""
        if not self.enabled():
            return
        facts = list(facts)
        source_groups = filing_source_groups(facts)
        oss_entries, ps_entries, periods = self.build_webhook_entries(tax_cases, facts)
        with self.repository.transaction() as tx:
            tx.delete_oss_union_entries_by_source_groups(source_groups)
            tx.delete_periodic_summary_entries_by_source_groups(source_groups)
            if oss_entries:
                tx.upsert_oss_union_entries(oss_entries)
            if ps_entries:
                tx.upsert_periodic_summary_entries(ps_entries)
            if periods:
                tx.upsert_filing_periods(periods)

    def backfill_upcoming(self, now: datetime) -> None:
        """Rebuild every period whose deadline falls within the next 60 days."""
        if not self.enabled():
            return
        for candidate in self._backfill_candidates(now, now + _BACKFILL_WINDOW):
            self.backfill_period(candidate.kind, candidate.period)

    def backfill_period(self, kind: str, period: str) -> None:
        """Rebuild the stored entries of one period from its accounting facts."""
        if not self.enabled():
            return
        start, end = period_date_range(kind, period, self.settings)
        facts = list(self.repository.list_filing_relevant_facts_by_date_range(self._company_id, start, end))
        if not facts:
            if kind == FilingKind.OSS_UNION:
                with self.repository.transaction() as tx:
                    tx.upsert_filing_periods([self._builder.period_for_kind(kind, period)])
            return

        oss_entries, ps_entries, periods = self._builder.build_entries(facts, RepositorySource(self.repository))
        target_groups = filing_source_groups(facts)
        filtered_oss = filter_oss_period_entries(oss_entries, kind, period)
        filtered_ps = filter_ps_period_entries(ps_entries, kind, period)
        filtered_periods = filter_periods(periods, kind, period) or [self._builder.period_for_kind(kind, period)]

        with self.repository.transaction() as tx:
            if kind == FilingKind.OSS_UNION:
                tx.delete_oss_union_entries_by_source_groups(target_groups)
                if filtered_oss:
                    tx.upsert_oss_union_entries(filtered_oss)
            elif kind == FilingKind.PERIODIC_SUMMARY:
                tx.delete_periodic_summary_entries_by_source_groups(target_groups)
                if filtered_ps:
                    tx.upsert_periodic_summary_entries(filtered_ps)
            else:
                raise ValueError(f"unsupported filing kind {_kind_text(kind)!r}")
            tx.upsert_filing_periods(filtered_periods)

    def evaluate_due_periods(self, now: datetime) -> None:
        """Evaluate every stored period whose first send time has passed."""
        if not self.enabled():
            return
        self._ensure_scheduled_periods(now)
        errors: list[BaseException] = []
        for due in self.repository.list_due_filing_periods(self._company_id, now):
            try:
                self._evaluate_period(due.kind, due.period, False, now)
            except Exception as err:  # noqa: BLE001 - every period is attempted
                errors.append(err)
        joined = _join_errors(errors)
        if joined is not None:
            raise joined

    def run_period(self, kind: str, period: str) -> FilingExport | None:
        """Backfill a period and evaluate it now, regardless of its send time."""
        if not self.enabled():
            return None
        self.backfill_period(kind, period)
        return self._evaluate_period(kind, period, True, datetime.now(_location(self.settings)))

    def mark_submitted(self, kind: str, period: str, submitted_at: datetime) -> None:
        if not self.enabled():
            return
        with self.repository.transaction() as tx:
            tx.mark_filing_period_submitted(self._company_id, _kind_text(kind), period, _utc(submitted_at))

    def get_status(self, kind: str, period: str) -> PeriodStatus:
        """Return the stored state of a period; NotFoundError when filings are off."""
        if not self.enabled():
            raise NotFoundError("filings are disabled")
        self._ensure_period(kind, period)
        filing_period = self.repository.get_filing_period(self._company_id, _kind_text(kind), period)
        ready, review = self._period_entry_counts(kind, period)
        return PeriodStatus(
            period=filing_period,
            ready_entries=ready,
            review_entries=review,
            latest_export=self._latest_export(kind, period),
        )

    def _latest_export(self, kind: str, period: str) -> FilingExport | None:
        try:
            return self.repository.get_latest_filing_export(self._company_id, _kind_text(kind), period)
        except NotFoundError:
            return None

    def _mark_evaluated(self, kind: str, period: str, status: FilingPeriodStatus, now: datetime) -> None:
        with self.repository.transaction() as tx:
            tx.update_filing_period_evaluation(
                self._company_id, _kind_text(kind), period, status.value, _utc(now), None
            )

    def _evaluate_period(self, kind: str, period: str, force: bool, now: datetime) -> FilingExport | None:
        self._ensure_period(kind, period)
        filing_period = self.repository.get_filing_period(self._company_id, _kind_text(kind), period)
        if filing_period.submitted_at is not None:
            return None
        if not force and filing_period.first_send_at is not None and now < filing_period.first_send_at:
            return None

        latest = self._latest_export(kind, period)

        if kind == FilingKind.OSS_UNION:
            lister, renderer = self.repository.list_oss_union_entries_by_period, render_oss_union
        elif kind == FilingKind.PERIODIC_SUMMARY:
            lister, renderer = self.repository.list_periodic_summary_entries_by_period, render_periodic_summary
        else:
            raise ValueError(f"unsupported filing kind {_kind_text(kind)!r}")

        try:
            entries = list(lister(self._company_id, period))
        except Exception as err:  # noqa: BLE001 - recorded and reported before re-raising
            raise self._fail_evaluation(kind, period, now, err)
        ready = [entry for entry in entries if entry.review_state == ReviewState.READY]
        review_count = len(entries) - len(ready)

        if not ready:
            if kind == FilingKind.OSS_UNION and filing_period.zero_reminder_sent_at is None:
                return self._send_zero_reminder(filing_period, review_count, latest, now)
            self._mark_evaluated(kind, period, FilingPeriodStatus.UNCHANGED, now)
            return None

        try:
            rendered = renderer(self.settings, period, ready)
        except Exception as err:  # noqa: BLE001 - recorded and reported before re-raising
            raise self._fail_evaluation(kind, period, now, err)
        return self._send_rendered_export(filing_period, rendered, len(ready), review_count, latest, now)

    def _fail_evaluation(self, kind: str, period: str, now: datetime, cause: BaseException) -> BaseException:
        update_error: BaseException | None = None
        notify_error: BaseException | None = None
        try:
            self._mark_evaluated(kind, period, FilingPeriodStatus.EVALUATION_FAILED, now)
        except Exception as err:  # noqa: BLE001
            update_error = err
        try:
            self._send_failure_notification(kind, period, cause)
        except Exception as err:  # noqa: BLE001
            notify_error = err
        return _join_errors([cause, update_error, notify_error]) or cause

    def _store_export(
        self,
        filing_period: FilingPeriod,
        export: FilingExport,
        latest: FilingExport | None,
        status: FilingPeriodStatus,
        now: datetime,
        zero_sent: datetime | None,
    ) -> None:
        with self.repository.transaction() as tx:
            tx.create_filing_export(export)
            if latest is not None:
                tx.mark_filing_export_superseded(latest.id, export.id)
            tx.update_filing_period_evaluation(
                self._company_id, filing_period.kind, filing_period.period, status.value, _utc(now), zero_sent
            )

    def _send_zero_reminder(
        self, filing_period: FilingPeriod, review_entries: int, latest: FilingExport | None, now: datetime
    ) -> FilingExport | None:
        if latest is not None and latest.checksum == _ZERO_REMINDER_CHECKSUM:
            self._mark_evaluated(filing_period.kind, filing_period.period, FilingPeriodStatus.UNCHANGED, now)
            return None

        export = FilingExport(
            id=uuid4(),
            kind=filing_period.kind,
            period=filing_period.period,
            bokio_company_id=self._company_id,
            version=next_export_version(latest),
            checksum=_ZERO_REMINDER_CHECKSUM,
            summary={
                "kind": filing_period.kind,
                "period": filing_period.period,
                "ready_entries": 0,
                "review_entries": review_entries,
                "zero_return": True,
            },
            emailed_at=_utc(now),
        )
        try:
            self._send_zero_reminder_notification(filing_period, review_entries)
        except Exception as err:  # noqa: BLE001 - recorded and reported before re-raising
            raise self._fail_evaluation(filing_period.kind, filing_period.period, now, err)
        self._store_export(filing_period, export, latest, FilingPeriodStatus.NO_DATA_REMINDER, now, _utc(now))
        return export

    def _send_rendered_export(
        self,
        filing_period: FilingPeriod,
        rendered: RenderedFile,
        ready_entries: int,
        review_entries: int,
        latest: FilingExport | None,
        now: datetime,
    ) -> FilingExport | None:
        checksum = checksum_bytes(rendered.content)
        if latest is not None and latest.checksum == checksum:
            self._mark_evaluated(filing_period.kind, filing_period.period, FilingPeriodStatus.UNCHANGED, now)
            return None

        version = next_export_version(latest)
        export = FilingExport(
            id=uuid4(),
            kind=filing_period.kind,
            period=filing_period.period,
            bokio_company_id=self._company_id,
            version=version,
            checksum=checksum,
            filename=rendered.filename,
            content=rendered.content,
            summary={
                "kind": filing_period.kind,
                "period": filing_period.period,
                "ready_entries": ready_entries,
                "review_entries": review_entries,
                "filename": rendered.filename,
                "checksum": checksum,
                "version": version,
            },
            emailed_at=_utc(now),
        )
        try:
            self._send_draft_notification(filing_period, rendered, ready_entries, review_entries, version)
        except Exception as err:  # noqa: BLE001 - recorded and reported before re-raising
            raise self._fail_evaluation(filing_period.kind, filing_period.period, now, err)
        self._store_export(filing_period, export, latest, FilingPeriodStatus.EXPORTED, now, None)
        return export

    def _deadline_text(self, filing_period: FilingPeriod) -> str:
        if filing_period.deadline_date is None:
            return "0001-01-01"
        return filing_period.deadline_date.astimezone(_location(self.settings)).strftime("%Y-%m-%d")

    def _notification(self, severity: Severity, category: Category, subject: str, **lines: Any) -> Notification:
        return Notification(
            severity=severity,
            category=category,
            company_id=str(self._company_id),
            to=list(self.settings.filings.email_to),
            subject=subject,
            **lines,
        )

    def _send_draft_notification(
        self,
        filing_period: FilingPeriod,
        rendered: RenderedFile,
        ready_entries: int,
        review_entries: int,
        version: int,
    ) -> None:
        if self.notifier is None:
            return
        label = filing_label(filing_period.kind)
        subject = f"{label} draft ready for {filing_period.period}"
        if version > 1:
            subject = f"{label} revision {version} ready for {filing_period.period}"
        self.notifier.send(
            self._notification(
                Severity.INFO,
                Category.FILING_DRAFT,
                subject,
                summary_lines=[
                    f"Period: {filing_period.period}",
                    f"Deadline: {self._deadline_text(filing_period)}",
                    f"Ready entries: {ready_entries}",
                    f"Review entries excluded from the file: {review_entries}",
                ],
                detail_lines=[
                    f"Attached file: {rendered.filename}",
                    f"Draft version: {version}",
                ],
                action_lines=[
                    "Review the attachment before filing it with Skatteverket.",
                    "Use POST /admin/filings/mark-submitted?kind=...&period=... after the filing has been "
                    "submitted so no further reminders are sent for the same period.",
                ],
                attachments=[
                    Attachment(filename=rendered.filename, content_type="text/plain", content=rendered.content)
                ],
            )
        )

    def _send_zero_reminder_notification(self, filing_period: FilingPeriod, review_entries: int) -> None:
        if self.notifier is None:
            return
        self.notifier.send(
            self._notification(
                Severity.INFO,
                Category.FILING_ZERO_REMINDER,
                f"OSS nil return reminder for {filing_period.period}",
                summary_lines=[
                    f"No OSS-ready sales were found for {filing_period.period}, "
                    "but a nil OSS return is still due.",
                    f"Deadline: {self._deadline_text(filing_period)}",
                    f"Review entries excluded from export: {review_entries}",
                ],
                action_lines=[
                    "File the nil OSS return in Skatteverket's e-service before the deadline.",
                    "Use POST /admin/filings/mark-submitted?kind=oss_union&period=... after submitting it.",
                ],
            )
        )

    def _send_failure_notification(self, kind: str, period: str, cause: BaseException | None) -> None:
        if self.notifier is None or cause is None:
            return
        label = filing_label(kind)
        self.notifier.send(
            self._notification(
                Severity.ERROR,
                Category.FILING_FAILURE,
                f"{label} generation failed for {period}",
                summary_lines=[
                    f"Automatic filing generation failed for {label} {period}.",
                    f"Error: {cause}",
                ],
                action_lines=[
                    "Check the application logs and the stored Stripe evidence for the affected period.",
                    "Rerun the export through POST /admin/runs/filing?kind=...&period=... "
                    "after correcting the issue.",
                ],
            )
        )

    def _ensure_scheduled_periods(self, now: datetime) -> None:
        periods: dict[str, FilingPeriod] = {}
        if self.settings.filings.oss_union.enabled:
            local_now = now.astimezone(_location(self.settings))
            for period in completed_quarter_periods(local_now, 8):
                periods[period_key(FilingKind.OSS_UNION, period)] = self._builder.period_for_kind(
                    FilingKind.OSS_UNION, period
                )
        if self.settings.filings.periodic_summary.enabled:
            kind = FilingKind.PERIODIC_SUMMARY
            for period in self.repository.list_entry_periods(self._company_id, kind.value):
                periods[period_key(kind, period)] = self._builder.period_for_kind(kind, period)
        if not periods:
            return
        with self.repository.transaction() as tx:
            tx.upsert_filing_periods(list(periods.values()))

    def _ensure_period(self, kind: str, period: str) -> None:
        period_date_range(kind, period, self.settings)
        try:
            self.repository.get_filing_period(self._company_id, _kind_text(kind), period)
            return
        except NotFoundError:
            pass
        with self.repository.transaction() as tx:
            tx.upsert_filing_periods([self._builder.period_for_kind(kind, period)])

    def _backfill_candidates(self, now: datetime, until: datetime) -> list[FilingPeriod]:
        loc = _location(self.settings)
        now = now.astimezone(loc)
        until = until.astimezone(loc)

        def in_window(deadline: datetime) -> bool:
            return not deadline < now and not deadline > until

        periods: list[FilingPeriod] = []
        if self.settings.filings.oss_union.enabled:
            for period in completed_quarter_periods(now, 6):
                try:
                    deadline = filing_deadline(FilingKind.OSS_UNION, period, loc)
                except ValueError:
                    continue
                if in_window(deadline):
                    periods.append(self._builder.period_for_kind(FilingKind.OSS_UNION, period))
        if self.settings.filings.periodic_summary.enabled:
            base = now.year * 12 + now.month - 1
            for offset in range(-6, 0):
                year, month0 = divmod(base + offset, 12)
                period = month_period(datetime(year, month0 + 1, 1, tzinfo=loc))
                try:
                    deadline = filing_deadline(FilingKind.PERIODIC_SUMMARY, period, loc)
                except ValueError:
                    continue
                if in_window(deadline):
                    periods.append(self._builder.period_for_kind(FilingKind.PERIODIC_SUMMARY, period))
        return sorted(periods, key=lambda item: (item.kind, item.period))

    def _period_entry_counts(self, kind: str, period: str) -> tuple[int, int]:
        if kind == FilingKind.OSS_UNION:
            entries = self.repository.list_oss_union_entries_by_period(self._company_id, period)
        elif kind == FilingKind.PERIODIC_SUMMARY:
            entries = self.repository.list_periodic_summary_entries_by_period(self._company_id, period)
        else:
            raise ValueError(f"unsupported filing kind {_kind_text(kind)!r}")
        states = [entry.review_state for entry in entries]
        return (
            sum(1 for state in states if state == ReviewState.READY),
            sum(1 for state in states if state == ReviewState.REVIEW),
        )