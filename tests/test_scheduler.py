import threading
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from uuid import uuid4

from booky.notify import Category, Severity
from booky.scheduler import Scheduler, should_ignore_schedule_error


class RecordingNotifier:
    def __init__(self):
        self.notifications = []

    def send(self, notification):
        self.notifications.append(notification)


class StubSettings:
    def __init__(self, valid_timezone=True, cutoff=(0, 0), scheduler_enabled=True):
        self.valid_timezone = valid_timezone
        self.cutoff = cutoff
        self.scheduler_enabled = scheduler_enabled
        self.company_id = uuid4()

    def location(self):
        if not self.valid_timezone:
            raise ValueError("unknown time zone Bad/Timezone")
        return timezone.utc

    def cutoff_hour_minute(self):
        if self.cutoff is None:
            raise ValueError("invalid cutoff")
        return self.cutoff

    def scheduler_interval(self):
        return timedelta(seconds=60)


class RecordingService:
    def __init__(self, error=None):
        self.notifier = RecordingNotifier()
        self.error = error
        self.calls = []

    def run_daily_close(self, posting_date):
        self.calls.append(posting_date)
        if self.error is not None:
            raise self.error


def test_notifies_on_timezone_configuration_error():
    service = RecordingService()
    scheduler = Scheduler(StubSettings(valid_timezone=False), service)

    scheduler.try_run()

    assert len(service.notifier.notifications) == 1
    got = service.notifier.notifications[0]
    assert got.category == Category.SCHEDULER_CONFIG
    assert got.severity == Severity.CRITICAL
    assert service.calls == []


def test_runs_yesterday_and_today_after_cutoff():
    service = RecordingService()
    Scheduler(StubSettings(cutoff=(0, 0)), service).try_run()

    assert len(service.calls) == 2
    yesterday, today = service.calls
    assert today - yesterday == timedelta(days=1)
    assert (today.hour, today.minute) == (0, 0)
    assert today.date() == datetime.now(timezone.utc).date()


def test_runs_only_yesterday_when_cutoff_unreadable():
    service = RecordingService()
    Scheduler(StubSettings(cutoff=None), service).try_run()

    assert len(service.calls) == 1
    assert service.calls[0].date() == datetime.now(timezone.utc).date() - timedelta(days=1)


def test_failed_daily_close_sends_failure_notification():
    service = RecordingService(error=RuntimeError("boom"))
    Scheduler(StubSettings(cutoff=None), service).try_run()

    assert len(service.notifier.notifications) == 1
    got = service.notifier.notifications[0]
    assert got.category == Category.SCHEDULER_FAILURE
    assert got.severity == Severity.ERROR
    assert got.posting_date == service.calls[0]
    assert "Scheduled run failed: boom" in got.summary_lines[0]


def test_ignored_daily_close_error_is_not_reported():
    service = RecordingService(error=RuntimeError("posting run already exists"))
    Scheduler(StubSettings(), service).try_run()

    assert len(service.calls) == 2
    assert service.notifier.notifications == []


def test_failed_filing_evaluation_is_reported():
    class FailingFilings:
        def enabled(self):
            return True

        def evaluate_due_periods(self, now):
            raise RuntimeError("database down")

    service = RecordingService()
    Scheduler(StubSettings(cutoff=None), service, FailingFilings()).try_run()

    subjects = [item.subject for item in service.notifier.notifications]
    assert subjects == ["Scheduled filing evaluation failed"]


def test_run_does_nothing_when_disabled():
    service = RecordingService()
    stop = threading.Event()
    Scheduler(StubSettings(scheduler_enabled=False), service).run(stop)
    assert service.calls == []


def test_run_performs_one_pass_before_stopping():
    service = RecordingService()
    stop = threading.Event()
    stop.set()
    Scheduler(StubSettings(cutoff=(0, 0)), service).run(stop)
    assert len(service.calls) == 2


def test_should_ignore_schedule_error():
    assert should_ignore_schedule_error(None) is True
    assert should_ignore_schedule_error(RuntimeError("run already running")) is True
    assert should_ignore_schedule_error(RuntimeError("day already completed")) is True
    assert should_ignore_schedule_error(RuntimeError("boom")) is False


def test_notification_failure_is_swallowed():
    class BrokenNotifier:
        def send(self, notification):
            raise RuntimeError("mail down")

    service = SimpleNamespace(notifier=BrokenNotifier(), calls=[])
    scheduler = Scheduler(StubSettings(valid_timezone=False), service)
    scheduler.try_run()
    assert service.calls == []