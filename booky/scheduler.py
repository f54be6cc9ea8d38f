"""Background scheduler that runs daily closes and evaluates due filings."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from datetime import date, datetime, timedelta
from typing import Any

from booky.notify import Category, Notification, Severity

_IGNORED_FRAGMENTS = ("already exists", "already running", "already completed")


def should_ignore_schedule_error(error: BaseException | None) -> bool:
    """Tell whether a failed scheduled run is expected and needs no alert."""
    if error is None:
        return True
    if isinstance(error, (asyncio.CancelledError, concurrent.futures.CancelledError)):
        return True
    text = str(error)
    return any(fragment in text for fragment in _IGNORED_FRAGMENTS)


def _seconds(interval: Any) -> float:
    if isinstance(interval, timedelta):
        return interval.total_seconds()
    return float(interval)


class Scheduler:
    """Runs the daily close for yesterday and, after the cutoff, today.

    The settings object provides ``location()``, ``cutoff_hour_minute()``,
    ``scheduler_interval()``, ``company_id`` and ``scheduler_enabled``.
    The accounting service provides ``run_daily_close(posting_date)`` and a
    ``notifier`` used for alerts.
    """

    def __init__(
        self,
        settings: Any,
        service: Any,
        filings: Any = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings
        self.service = service
        self.filings = filings
        self.logger = logger or logging.getLogger(__name__)

    def run(self, stop: threading.Event) -> None:
        """Run once immediately, then once per interval until ``stop`` is set."""
        if not getattr(self.settings, "scheduler_enabled", False):
            return
        interval = _seconds(self.settings.scheduler_interval())
        self.try_run()
        while not stop.wait(interval):
            self.try_run()

    def try_run(self) -> None:
        """Perform one scheduled pass, reporting failures instead of raising."""
        try:
            loc = self.settings.location()
        except (ValueError, KeyError) as err:
            self.logger.error("scheduler timezone error: %s", err)
            self._notify_issue(
                Severity.CRITICAL,
                Category.SCHEDULER_CONFIG,
                "Scheduler configuration error",
                [
                    f"Scheduler could not resolve configured timezone: {err}",
                    "Automatic bookkeeping runs are not executing until this is corrected.",
                ],
            )
            return

        now = datetime.now(loc)
        today = datetime(now.year, now.month, now.day, tzinfo=loc)
        previous: date = today.date() - timedelta(days=1)
        yesterday = datetime(previous.year, previous.month, previous.day, tzinfo=loc)

        to_run = [yesterday]
        try:
            hour, minute = self.settings.cutoff_hour_minute()
        except ValueError:
            pass
        else:
            if (now.hour, now.minute) >= (hour, minute):
                to_run.append(today)

        if self.service is not None:
            for posting_date in to_run:
                try:
                    self.service.run_daily_close(posting_date)
                except Exception as err:  # noqa: BLE001 - every failure is reported
                    if should_ignore_schedule_error(err):
                        continue
                    day = posting_date.strftime("%Y-%m-%d")
                    self.logger.error("scheduled daily close failed posting_date=%s error=%s", day, err)
                    self._notify_issue(
                        Severity.ERROR,
                        Category.SCHEDULER_FAILURE,
                        f"Scheduled daily close failed for {day}",
                        [
                            f"Scheduled run failed: {err}",
                            "Investigate promptly so bookkeeping is completed without delay.",
                        ],
                        posting_date,
                    )

        if self.filings is not None and self.filings.enabled():
            try:
                self.filings.evaluate_due_periods(now)
            except Exception as err:  # noqa: BLE001 - every failure is reported
                if not should_ignore_schedule_error(err):
                    self.logger.error("scheduled filing evaluation failed: %s", err)
                    self._notify_issue(
                        Severity.ERROR,
                        Category.SCHEDULER_FAILURE,
                        "Scheduled filing evaluation failed",
                        [
                            f"Automatic filing evaluation failed: {err}",
                            "Investigate promptly so filing drafts are sent before the reporting deadline.",
                        ],
                    )

    def _notify_issue(
        self,
        severity: Severity,
        category: Category,
        subject: str,
        summary: list[str],
        posting_date: datetime | None = None,
    ) -> None:
        notifier = getattr(self.service, "notifier", None) if self.service is not None else None
        if notifier is None:
            return
        try:
            notifier.send(
                Notification(
                    severity=severity,
                    category=category,
                    posting_date=posting_date,
                    company_id=str(getattr(self.settings, "company_id", "")),
                    subject=subject,
                    summary_lines=list(summary),
                )
            )
        except Exception as err:  # noqa: BLE001 - alerting must never stop the scheduler
            self.logger.error("send scheduler notification category=%s error=%s", category.value, err)