"""Test suite for backupctl - Scheduled VM Backup Engine."""

import logging
import signal
import sys
import threading
from datetime import datetime, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo

import httpx
import pytest
import respx
from click.testing import CliRunner
from pydantic import ValidationError

from backupctl import cli as cli_module
from backupctl.credentials import (
    FernetCredentialProvider,
    StaticCredentialProvider,
    generate_key,
)
from backupctl.errors import (
    AuthenticationError,
    ConfigurationError,
    DispatchError,
    PersistenceError,
    RemoteJobError,
)
from backupctl.executor import ActionExecutor, BackupExecutor
from backupctl.models import (
    ActionSchedule,
    BackupOptions,
    BackupTarget,
    Cluster,
    Config,
    HistoryRecord,
    HistoryStatus,
    RetentionKind,
    RunStatus,
    Schedule,
    ScheduleType,
    VMAction,
)
from backupctl.notifier import SmtpNotifier, render_backup_result
from backupctl.orchestrator import Orchestrator
from backupctl.proxmox import ProxmoxClient, TaskStatus
from backupctl.retention import RetentionEnforcer
from backupctl.storage import Storage
from backupctl.triggers import (
    FAR_FUTURE,
    CronTrigger,
    FallbackTrigger,
    compute_next_run,
    initial_next_run,
    parse_trigger,
)
from backupctl.worker import CycleWorker

UTC = timezone.utc
# A Tuesday
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

OK = TaskStatus(terminal=True, success=True, exit_status="OK")
RUNNING = TaskStatus(terminal=False, success=False)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeSession:
    def __init__(self, cluster: Cluster):
        self.cluster = cluster
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.closed = True


class FakeClient:
    """Scripted stand-in for ProxmoxClient."""

    def __init__(self, polls: Optional[List[TaskStatus]] = None, fail_auth_for=(), dispatch_error=None):
        self.polls = list(polls or [OK])
        self.fail_auth_for = set(fail_auth_for)
        self.dispatch_error = dispatch_error
        self.submitted = []
        self.poll_count = 0
        self.actions = []
        self.snapshots = []
        self.created = []
        self.deleted = []
        self.on_poll = None

    def authenticate(self, cluster, password):
        if cluster.id in self.fail_auth_for:
            raise AuthenticationError(f"Authentication to {cluster.name} failed: 401")
        return FakeSession(cluster)

    def submit_backup(self, session, target, options):
        if self.dispatch_error:
            raise DispatchError(self.dispatch_error)
        self.submitted.append((target.vmid, options.to_params()))
        return f"UPID:{target.node}:{len(self.submitted)}:vzdump"

    def poll_status(self, session, target, upid):
        self.poll_count += 1
        if self.on_poll is not None:
            self.on_poll(self.poll_count)
        if len(self.polls) > 1:
            return self.polls.pop(0)
        return self.polls[0]

    def vm_action(self, session, target, action):
        self.actions.append((target.vmid, action))
        return "UPID:action"

    def list_snapshots(self, session, target):
        return list(self.snapshots)

    def create_snapshot(self, session, target, name, description=""):
        self.created.append(name)
        return "UPID:snap"

    def delete_snapshot(self, session, target, name):
        self.deleted.append(name)
        return "UPID:delsnap"


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.sent = []
        self.fail = fail

    def send(self, recipient, subject, html_body):
        if self.fail:
            raise RuntimeError("smtp down")
        self.sent.append((recipient, subject, html_body))


# ---------------------------------------------------------------------------
# Fixtures and helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock(NOW)


@pytest.fixture
def storage(tmp_path):
    s = Storage(str(tmp_path / "data"))
    s.add_cluster(Cluster(id="c1", name="main", host="pve1.example", password_encrypted="x"))
    s.add_cluster(Cluster(id="c2", name="backup", host="pve2.example", password_encrypted="x"))
    return s


def make_schedule(schedule_id="s1", cluster_id="c1", next_run=None, **kwargs) -> Schedule:
    fields = dict(
        id=schedule_id,
        name=f"nightly-{schedule_id}",
        target=BackupTarget(cluster_id=cluster_id, node="pve1", vmid=100, vm_name="web01"),
        schedule_type=ScheduleType.DAILY,
        schedule_value="02:00",
        next_run=next_run or NOW - timedelta(hours=1),
    )
    fields.update(kwargs)
    return Schedule(**fields)


def make_engine(storage, clock, client, notifier=None, config=None) -> Orchestrator:
    config = config or Config()
    storage.set_config(config)
    credentials = StaticCredentialProvider({c.id: "secret" for c in storage.get_all_clusters()})

    cancel = threading.Event()

    def wait(seconds):
        if cancel.is_set():
            return True
        clock.advance(seconds)
        return False

    backup = BackupExecutor(
        storage, client, credentials, notifier or RecordingNotifier(),
        clock=clock, config=config, cancel=cancel, wait=wait,
    )
    actions = ActionExecutor(storage, client, credentials, clock=clock)
    return Orchestrator(
        storage, backup, actions, RetentionEnforcer(storage, clock),
        clock=clock, config=config, cancel=cancel,
    )


def add_history(storage, schedule_id, started_at, status, record_id=None) -> str:
    record = HistoryRecord(schedule_id=schedule_id, started_at=started_at, status=status)
    if record_id:
        record.id = record_id
    return storage.create_history(record)


# ---------------------------------------------------------------------------
# Trigger calculator
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("hour, minute", [(0, 0), (1, 59), (2, 0), (2, 1), (12, 0), (23, 59)])
def test_daily_next_run_is_strictly_after_now_at_the_given_time(hour, minute):
    now = NOW.replace(hour=hour, minute=minute)
    result = compute_next_run("daily", "02:00", now)
    assert (result.hour, result.minute, result.second) == (2, 0, 0)
    assert result > now
    assert result - now <= timedelta(days=1)


def test_daily_rolls_to_tomorrow_when_time_has_passed():
    assert compute_next_run("daily", "02:00", NOW) == datetime(2026, 3, 11, 2, 0, tzinfo=UTC)
    early = NOW.replace(hour=1)
    assert compute_next_run("daily", "02:00", early) == datetime(2026, 3, 10, 2, 0, tzinfo=UTC)


def test_daily_exact_instant_is_not_reused():
    now = NOW.replace(hour=2, minute=0)
    assert compute_next_run("daily", "02:00", now) == datetime(2026, 3, 11, 2, 0, tzinfo=UTC)


@pytest.mark.parametrize("day_of_week", range(7))
@pytest.mark.parametrize("offset_days", range(7))
def test_weekly_returns_requested_weekday_after_now(day_of_week, offset_days):
    now = NOW + timedelta(days=offset_days, hours=3)
    result = compute_next_run("weekly", str(day_of_week), now)
    assert result > now
    assert (result.weekday() + 1) % 7 == day_of_week
    assert (result.hour, result.minute) == (0, 0)
    assert result - now <= timedelta(days=7)


def test_weekly_same_weekday_moves_a_full_week():
    # NOW is a Tuesday (2)
    assert compute_next_run("weekly", "2", NOW) == datetime(2026, 3, 17, tzinfo=UTC)


def test_monthly_this_month_or_next():
    assert compute_next_run("monthly", "15", NOW) == datetime(2026, 3, 15, tzinfo=UTC)
    assert compute_next_run("monthly", "5", NOW) == datetime(2026, 4, 5, tzinfo=UTC)
    assert compute_next_run("monthly", "10", NOW) == datetime(2026, 4, 10, tzinfo=UTC)


def test_monthly_clamps_to_short_months():
    april = datetime(2026, 4, 5, 8, 0, tzinfo=UTC)
    assert compute_next_run("monthly", "31", april) == datetime(2026, 4, 30, tzinfo=UTC)
    end_of_january = datetime(2026, 1, 31, 12, 0, tzinfo=UTC)
    assert compute_next_run("monthly", "31", end_of_january) == datetime(2026, 2, 28, tzinfo=UTC)
    december = datetime(2026, 12, 20, tzinfo=UTC)
    assert compute_next_run("monthly", "1", december) == datetime(2027, 1, 1, tzinfo=UTC)


def test_hourly_and_once():
    now = NOW.replace(minute=34, second=56)
    assert compute_next_run("hourly", None, now) == datetime(2026, 3, 10, 13, 0, tzinfo=UTC)
    once = compute_next_run("once", None, NOW)
    assert once == FAR_FUTURE.replace(tzinfo=UTC)


def test_hourly_steps_through_repeated_dst_hour():
    # 2026-11-01 01:00-02:00 occurs twice in New York
    eastern = ZoneInfo("America/New_York")
    first_pass = datetime(2026, 11, 1, 1, 30, tzinfo=eastern)  # EDT, 05:30 UTC

    result = compute_next_run("hourly", None, first_pass)
    assert result.astimezone(UTC) == datetime(2026, 11, 1, 6, 0, tzinfo=UTC)
    assert (result.hour, result.fold) == (1, 1)

    second_pass = datetime(2026, 11, 1, 1, 30, fold=1, tzinfo=eastern)  # EST, 06:30 UTC
    after = compute_next_run("hourly", None, second_pass)
    assert after.astimezone(UTC) == datetime(2026, 11, 1, 7, 0, tzinfo=UTC)


def test_hourly_with_half_hour_offset():
    kolkata = ZoneInfo("Asia/Kolkata")
    result = compute_next_run("hourly", None, datetime(2026, 3, 10, 12, 34, tzinfo=kolkata))
    assert result == datetime(2026, 3, 10, 13, 0, tzinfo=kolkata)


def test_cron_expressions_are_evaluated():
    now = NOW.replace(minute=5)
    assert isinstance(parse_trigger("cron", "*/15 * * * *"), CronTrigger)
    assert compute_next_run("cron", "*/15 * * * *", now) == datetime(2026, 3, 10, 12, 15, tzinfo=UTC)


@pytest.mark.parametrize(
    "schedule_type, value",
    [("fortnightly", "1"), ("daily", "25:99"), ("weekly", "9"), ("monthly", "abc"), ("cron", "not a cron")],
)
def test_malformed_schedules_fall_back_to_one_day(schedule_type, value):
    assert isinstance(parse_trigger(schedule_type, value), FallbackTrigger)
    assert compute_next_run(schedule_type, value, NOW) == NOW + timedelta(days=1)


def test_missing_values_use_type_defaults():
    assert compute_next_run("daily", None, NOW) == NOW + timedelta(days=1)
    assert compute_next_run("weekly", "", NOW) == NOW + timedelta(days=7)
    assert compute_next_run("monthly", None, NOW) == datetime(2026, 4, 1, tzinfo=UTC)


def test_initial_next_run_for_once_uses_given_instant():
    assert initial_next_run("once", "2026-04-01T03:30:00", NOW) == datetime(2026, 4, 1, 3, 30, tzinfo=UTC)
    assert initial_next_run("once", None, NOW) == NOW
    assert initial_next_run("daily", "02:00", NOW) == datetime(2026, 3, 11, 2, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


def test_schedule_rejects_invalid_values():
    with pytest.raises(ValueError):
        make_schedule(schedule_value="2am")
    with pytest.raises(ValueError):
        make_schedule(schedule_type=ScheduleType.CRON, schedule_value="* * *")
    with pytest.raises(ValueError):
        make_schedule(retention_days=0)


def test_retention_policy_precedence():
    assert make_schedule(retention_days=7, retention_count=3).retention.kind == RetentionKind.DAYS
    assert make_schedule(retention_count=3).retention.kind == RetentionKind.COUNT
    assert make_schedule().retention.kind == RetentionKind.NONE


@pytest.mark.parametrize(
    "field, value",
    [("max_poll_attempts", 0), ("poll_interval", 0), ("poll_interval", -5), ("max_workers", -3), ("lease_seconds", 0)],
)
def test_config_rejects_out_of_range_tunables(field, value):
    with pytest.raises(ValidationError):
        Config(**{field: value})

    config = Config()
    with pytest.raises(ValidationError):
        setattr(config, field, value)


def test_backup_options_defaults():
    assert BackupOptions().to_params() == {"compress": "zstd", "mode": "snapshot", "storage": "local", "remove": 0}
    assert BackupOptions(mode="stop", include_ram=True).to_params()["mode"] == "suspend"


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


def test_find_due_selects_only_enabled_and_reached(storage):
    storage.add_schedule(make_schedule("past", next_run=NOW - timedelta(minutes=1)))
    storage.add_schedule(make_schedule("exact", next_run=NOW))
    storage.add_schedule(make_schedule("future", next_run=NOW + timedelta(seconds=1)))
    storage.add_schedule(make_schedule("off", next_run=NOW - timedelta(days=1), enabled=False))

    due = [s.id for s in storage.find_due(NOW)]
    assert due == ["past", "exact"]


def test_schedule_persists_across_instances(storage):
    storage.add_schedule(make_schedule("persist1", retention_count=4))
    reopened = Storage(str(storage.data_dir))
    sched = reopened.get_schedule("persist1")
    assert sched is not None
    assert sched.retention_count == 4
    assert sched.next_run == NOW - timedelta(hours=1)


def test_config_persistence(storage):
    storage.set_config(Config(max_poll_attempts=120, max_workers=3))
    config = Storage(str(storage.data_dir)).get_config()
    assert config.max_poll_attempts == 120
    assert config.max_workers == 3


def test_lease_blocks_second_claim_until_released(storage):
    storage.add_schedule(make_schedule("s1"))
    until = NOW + timedelta(minutes=15)
    assert storage.claim_schedule("s1", NOW, until)
    assert not storage.claim_schedule("s1", NOW, until)
    # expired lease can be taken over
    assert storage.claim_schedule("s1", until + timedelta(seconds=1), until + timedelta(minutes=15))

    storage.update_trigger("s1", last_run=NOW, next_run=NOW + timedelta(days=1), last_status=RunStatus.SUCCESS)
    assert storage.get_schedule("s1").claimed_until is None
    assert storage.claim_schedule("s1", NOW, until)


def test_corrupt_store_raises_persistence_error(storage):
    storage.schedules_file.write_text("{not json")
    with pytest.raises(PersistenceError):
        storage.find_due(NOW)


def test_stats(storage):
    storage.add_schedule(make_schedule("a"))
    storage.add_schedule(make_schedule("b", enabled=False))
    add_history(storage, "a", NOW, HistoryStatus.COMPLETED)
    add_history(storage, "a", NOW, HistoryStatus.FAILED)
    stats = storage.get_stats()
    assert stats["schedules"] == 2
    assert stats["enabled"] == 1
    assert stats["completed"] == 1
    assert stats["failed"] == 1
    assert stats["history"] == 2


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


def test_day_retention_deletes_only_old_completed_records(storage, clock):
    old = add_history(storage, "s1", NOW - timedelta(days=10), HistoryStatus.COMPLETED)
    recent = add_history(storage, "s1", NOW - timedelta(days=3), HistoryStatus.COMPLETED)
    result = RetentionEnforcer(storage, clock).enforce(make_schedule("s1", retention_days=7))

    remaining = {r.id for r in storage.get_history_for("s1")}
    assert result.deleted == 1
    assert old not in remaining
    assert recent in remaining


def test_day_retention_keeps_failed_and_running(storage, clock):
    failed = add_history(storage, "s1", NOW - timedelta(days=30), HistoryStatus.FAILED)
    running = add_history(storage, "s1", NOW - timedelta(days=30), HistoryStatus.RUNNING)
    expired = add_history(storage, "s1", NOW - timedelta(days=30), HistoryStatus.EXPIRED)
    other = add_history(storage, "other", NOW - timedelta(days=30), HistoryStatus.COMPLETED)

    RetentionEnforcer(storage, clock).enforce(make_schedule("s1", retention_days=7))

    remaining = {r.id for r in storage.get_all_history()}
    assert failed in remaining
    assert running in remaining
    assert expired not in remaining
    assert other in remaining


def test_count_retention_keeps_newest_records(storage, clock):
    statuses = [HistoryStatus.COMPLETED, HistoryStatus.FAILED, HistoryStatus.RUNNING, HistoryStatus.EXPIRED]
    ids = []
    for i in range(8):
        ids.append(add_history(storage, "s1", NOW - timedelta(days=i), statuses[i % 4]))

    result = RetentionEnforcer(storage, clock).enforce(make_schedule("s1", retention_count=5))

    remaining = [r.id for r in storage.get_history_for("s1")]
    assert result.deleted == 3
    assert remaining == ids[:5]


def test_count_retention_with_fewer_records_is_noop(storage, clock):
    for i in range(3):
        add_history(storage, "s1", NOW - timedelta(days=i), HistoryStatus.COMPLETED)
    assert RetentionEnforcer(storage, clock).enforce(make_schedule("s1", retention_count=5)).deleted == 0
    assert len(storage.get_history_for("s1")) == 3


def test_expire_stale_running_records(storage, clock):
    stale = add_history(storage, "s1", NOW - timedelta(hours=2), HistoryStatus.RUNNING)
    fresh = add_history(storage, "s1", NOW - timedelta(minutes=1), HistoryStatus.RUNNING)

    expired = RetentionEnforcer(storage, clock).expire_stale("s1", timedelta(minutes=15))

    assert expired == [stale]
    assert storage.get_history(stale).status == HistoryStatus.EXPIRED
    assert storage.get_history(fresh).status == HistoryStatus.RUNNING


# ---------------------------------------------------------------------------
# Executor and orchestrator
# ---------------------------------------------------------------------------


def test_daily_schedule_success_cycle(storage, clock):
    storage.add_schedule(make_schedule("s1"))
    client = FakeClient(polls=[OK])
    report = make_engine(storage, clock, client).run_cycle()

    assert report.due == 1
    assert report.succeeded == 1
    history = storage.get_history_for("s1")
    assert len(history) == 1
    assert history[0].status == HistoryStatus.COMPLETED
    assert history[0].task_id == "UPID:pve1:1:vzdump"
    assert history[0].duration_seconds == 5

    sched = storage.get_schedule("s1")
    assert sched.last_status == RunStatus.SUCCESS
    assert sched.last_error is None
    assert sched.next_run == datetime(2026, 3, 11, 2, 0, tzinfo=UTC)
    assert sched.claimed_until is None
    assert client.submitted == [(100, {"compress": "zstd", "mode": "snapshot", "storage": "local", "remove": 0})]


def test_poll_ceiling_marks_failure_and_still_advances(storage, clock):
    storage.add_schedule(make_schedule("s1"))
    client = FakeClient(polls=[RUNNING])
    report = make_engine(storage, clock, client).run_cycle()

    assert report.failed == 1
    assert client.poll_count == 60
    record = storage.get_history_for("s1")[0]
    assert record.status == HistoryStatus.FAILED
    assert record.error_message.startswith("Backup timed out: task UPID:pve1:1:vzdump still running after 60")
    assert record.duration_seconds == 300

    sched = storage.get_schedule("s1")
    assert sched.last_status == RunStatus.FAILED
    assert sched.next_run > NOW
    assert sched.next_run == datetime(2026, 3, 11, 2, 0, tzinfo=UTC)


def test_terminal_failure_status_is_recorded(storage, clock):
    storage.add_schedule(make_schedule("s1"))
    client = FakeClient(polls=[RUNNING, RUNNING, TaskStatus(terminal=True, success=False, exit_status="job errors")])
    make_engine(storage, clock, client).run_cycle()

    assert client.poll_count == 3
    record = storage.get_history_for("s1")[0]
    assert record.status == HistoryStatus.FAILED
    assert "job errors" in record.error_message


def test_dispatch_error_finalizes_history_and_notifies(storage, clock):
    storage.add_schedule(make_schedule("s1", notification_email="ops@example.com"))
    notifier = RecordingNotifier()
    client = FakeClient(dispatch_error="storage 'local' does not exist")
    make_engine(storage, clock, client, notifier=notifier).run_cycle()

    record = storage.get_history_for("s1")[0]
    assert record.status == HistoryStatus.FAILED
    assert record.completed_at is not None
    assert "does not exist" in record.error_message
    assert notifier.sent[0][0] == "ops@example.com"
    assert notifier.sent[0][1] == "Backup Failed to Start: web01"
    assert client.poll_count == 0


def test_auth_failure_does_not_block_next_schedule(storage, clock):
    storage.add_schedule(make_schedule("bad", cluster_id="c1", next_run=NOW - timedelta(hours=2)))
    storage.add_schedule(make_schedule("good", cluster_id="c2", next_run=NOW - timedelta(hours=1)))
    client = FakeClient(fail_auth_for={"c1"})
    report = make_engine(storage, clock, client).run_cycle()

    assert [o.schedule_id for o in report.outcomes] == ["bad", "good"]
    assert report.failed == 1
    assert report.succeeded == 1

    bad = storage.get_schedule("bad")
    assert bad.last_status == RunStatus.FAILED
    assert "Authentication" in bad.last_error
    assert bad.next_run > NOW
    assert storage.get_history_for("bad") == []

    good = storage.get_schedule("good")
    assert good.last_status == RunStatus.SUCCESS
    assert storage.get_history_for("good")[0].status == HistoryStatus.COMPLETED


def test_missing_cluster_is_a_failed_outcome(storage, clock):
    storage.add_schedule(make_schedule("s1", cluster_id="nope"))
    report = make_engine(storage, clock, FakeClient()).run_cycle()
    assert report.failed == 1
    assert "not found" in storage.get_schedule("s1").last_error


def test_executor_crash_is_isolated(storage, clock, monkeypatch):
    storage.add_schedule(make_schedule("first", next_run=NOW - timedelta(hours=2)))
    storage.add_schedule(make_schedule("second", next_run=NOW - timedelta(hours=1)))
    engine = make_engine(storage, clock, FakeClient())
    original = engine.backup_executor.execute

    def flaky(schedule):
        if schedule.id == "first":
            raise RuntimeError("boom")
        return original(schedule)

    monkeypatch.setattr(engine.backup_executor, "execute", flaky)
    report = engine.run_cycle()

    assert report.failed == 1
    assert report.succeeded == 1
    first = storage.get_schedule("first")
    assert first.last_status == RunStatus.FAILED
    assert first.last_error == "boom"
    assert first.next_run > NOW


def test_notifier_failure_does_not_change_outcome(storage, clock):
    storage.add_schedule(make_schedule("s1", notification_email="ops@example.com", notify_on_success=True))
    report = make_engine(storage, clock, FakeClient(), notifier=RecordingNotifier(fail=True)).run_cycle()
    assert report.succeeded == 1
    assert storage.get_history_for("s1")[0].status == HistoryStatus.COMPLETED


def test_success_notification_respects_flags(storage, clock):
    storage.add_schedule(make_schedule("quiet", notification_email="ops@example.com"))
    storage.add_schedule(make_schedule("loud", notification_email="ops@example.com", notify_on_success=True))
    notifier = RecordingNotifier()
    make_engine(storage, clock, FakeClient(), notifier=notifier).run_cycle()
    assert [subject for _, subject, _ in notifier.sent] == ["Backup Completed: web01"]


def test_fatal_query_error_propagates(storage, clock):
    engine = make_engine(storage, clock, FakeClient())
    storage.schedules_file.write_text("[{broken")
    with pytest.raises(PersistenceError):
        engine.run_cycle()


def test_leased_schedule_is_skipped(storage, clock):
    storage.add_schedule(make_schedule("s1"))
    storage.claim_schedule("s1", NOW, NOW + timedelta(minutes=30))
    client = FakeClient()
    report = make_engine(storage, clock, client).run_cycle()

    assert report.skipped == 1
    assert client.submitted == []
    assert storage.get_history_for("s1") == []
    assert storage.get_schedule("s1").next_run == NOW - timedelta(hours=1)


def test_cancelled_poll_expires_history(storage, clock):
    schedule = make_schedule("s1", notification_email="ops@example.com")
    storage.add_schedule(schedule)
    credentials = StaticCredentialProvider({"c1": "secret"})
    notifier = RecordingNotifier()
    executor = BackupExecutor(
        storage, FakeClient(polls=[RUNNING]), credentials, notifier,
        clock=clock, wait=lambda seconds: True,
    )
    outcome = executor.execute(schedule)

    assert outcome.cancelled
    assert not outcome.success
    record = storage.get_history_for("s1")[0]
    assert record.status == HistoryStatus.EXPIRED
    assert "cancelled by shutdown" in record.error_message
    assert notifier.sent == []


def test_shutdown_during_poll_leaves_schedule_for_rerun(storage, clock):
    storage.add_schedule(make_schedule(
        "s1", schedule_type=ScheduleType.WEEKLY, schedule_value="2",
        notification_email="ops@example.com",
    ))
    client = FakeClient(polls=[RUNNING, OK])
    notifier = RecordingNotifier()
    engine = make_engine(storage, clock, client, notifier=notifier)
    worker = CycleWorker(engine, install_signals=False)
    # SIGTERM arrives while the first status check is in flight
    client.on_poll = lambda count: worker._handle_shutdown(signal.SIGTERM, None)

    report = engine.run_cycle()

    assert client.poll_count == 1
    assert (report.cancelled, report.failed, report.succeeded) == (1, 0, 0)
    record = storage.get_history_for("s1")[0]
    assert record.status == HistoryStatus.EXPIRED
    assert record.task_id == "UPID:pve1:1:vzdump"
    assert "cancelled by shutdown" in record.error_message
    assert notifier.sent == []

    sched = storage.get_schedule("s1")
    assert sched.last_status is None
    assert sched.next_run == NOW - timedelta(hours=1)
    assert sched.claimed_until > clock()

    # A restarted worker leaves it alone until the lease runs out, then reruns it
    engine.cancel.clear()
    client.on_poll = None
    assert engine.run_cycle().skipped == 1
    clock.advance(engine.lease.total_seconds() + 1)
    rerun = engine.run_cycle()

    assert rerun.succeeded == 1
    sched = storage.get_schedule("s1")
    assert sched.last_status == RunStatus.SUCCESS
    assert sched.next_run > clock()


def test_retention_runs_after_failed_run(storage, clock):
    storage.add_schedule(make_schedule("s1", retention_count=2))
    for i in range(4):
        add_history(storage, "s1", NOW - timedelta(days=i + 1), HistoryStatus.COMPLETED)
    make_engine(storage, clock, FakeClient(dispatch_error="no space")).run_cycle()

    history = storage.get_history_for("s1")
    assert len(history) == 2
    assert history[0].status == HistoryStatus.FAILED


def test_per_cluster_concurrency(storage, clock):
    storage.add_schedule(make_schedule("a1", cluster_id="c1"))
    storage.add_schedule(make_schedule("a2", cluster_id="c1", next_run=NOW - timedelta(minutes=5)))
    storage.add_schedule(make_schedule("b1", cluster_id="c2"))
    engine = make_engine(storage, clock, FakeClient(), config=Config(max_workers=4))
    report = engine.run_cycle()

    assert report.due == 3
    assert report.succeeded == 3
    assert {o.schedule_id for o in report.outcomes} == {"a1", "a2", "b1"}


def test_action_schedule_power_action(storage, clock):
    storage.add_action(ActionSchedule(
        id="act1",
        name="night-stop",
        target=BackupTarget(cluster_id="c1", node="pve1", vmid=100, vm_name="web01"),
        action=VMAction.SHUTDOWN,
        schedule_type=ScheduleType.DAILY,
        schedule_value="23:00",
        next_run=NOW - timedelta(minutes=1),
    ))
    client = FakeClient()
    report = make_engine(storage, clock, client).run_cycle()

    assert report.succeeded == 1
    assert client.actions == [(100, VMAction.SHUTDOWN)]
    action = storage.get_action("act1")
    assert action.last_status == RunStatus.SUCCESS
    assert action.next_run == datetime(2026, 3, 10, 23, 0, tzinfo=UTC)


def test_action_snapshot_rotates_own_snapshots(storage, clock):
    storage.add_action(ActionSchedule(
        id="snap1",
        name="hourly-snap",
        target=BackupTarget(cluster_id="c1", node="pve1", vmid=100),
        action=VMAction.SNAPSHOT,
        schedule_type=ScheduleType.HOURLY,
        retention_count=3,
        next_run=NOW,
    ))
    client = FakeClient()
    client.snapshots = [
        {"name": "current"},
        {"name": "auto-snap1-b", "snaptime": 200},
        {"name": "auto-snap1-a", "snaptime": 100},
        {"name": "auto-snap1-c", "snaptime": 300},
        {"name": "manual-keep", "snaptime": 50},
    ]
    make_engine(storage, clock, client).run_cycle()

    assert client.deleted == ["auto-snap1-a"]
    assert client.created == ["auto-snap1-2026-03-10T12-00-00"]


def test_cycle_worker_runs_bounded_cycles(storage, clock):
    storage.add_schedule(make_schedule("s1"))
    client = FakeClient()
    worker = CycleWorker(make_engine(storage, clock, client), install_signals=False)
    worker.run(interval=0, max_cycles=2)

    assert worker.cycles == 2
    # second cycle finds nothing due
    assert len(client.submitted) == 1


def test_cycle_worker_stops_when_cancelled(storage, clock):
    engine = make_engine(storage, clock, FakeClient())
    worker = CycleWorker(engine, install_signals=False)
    engine.cancel.set()
    worker.run(interval=0)
    assert worker.cycles == 0


# ---------------------------------------------------------------------------
# Proxmox client
# ---------------------------------------------------------------------------

BASE = "https://pve1.example:8006/api2/json"


@pytest.fixture
def mock_api():
    with respx.mock(base_url=BASE, assert_all_called=False) as router:
        yield router


@pytest.fixture
def cluster():
    return Cluster(id="c1", name="main", host="pve1.example", password_encrypted="x")


def _login(mock_api):
    return mock_api.post("/access/ticket").mock(return_value=httpx.Response(
        200, json={"data": {"ticket": "PVE:root@pam:TICKET", "CSRFPreventionToken": "CSRF123"}}
    ))


def test_client_authenticates_submits_and_polls(mock_api, cluster):
    login = _login(mock_api)
    vzdump = mock_api.post("/nodes/pve1/vzdump").mock(
        return_value=httpx.Response(200, json={"data": "UPID:pve1:0001:vzdump"})
    )
    mock_api.get("/nodes/pve1/tasks/UPID:pve1:0001:vzdump/status").mock(side_effect=[
        httpx.Response(200, json={"data": {"status": "running"}}),
        httpx.Response(200, json={"data": {"status": "stopped", "exitstatus": "OK"}}),
    ])
    target = BackupTarget(cluster_id="c1", node="pve1", vmid=100)
    client = ProxmoxClient()

    with client.authenticate(cluster, "secret") as session:
        assert b"username=root%40pam" in login.calls.last.request.content
        upid = client.submit_backup(session, target, BackupOptions())
        first = client.poll_status(session, target, upid)
        second = client.poll_status(session, target, upid)

    assert upid == "UPID:pve1:0001:vzdump"
    request = vzdump.calls.last.request
    assert request.headers["CSRFPreventionToken"] == "CSRF123"
    assert "PVEAuthCookie=PVE:root@pam:TICKET" in request.headers["Cookie"]
    assert b"compress=zstd" in request.content
    assert b"vmid=100" in request.content
    assert not first.terminal
    assert second.terminal and second.success


def test_client_authentication_failure(mock_api, cluster):
    mock_api.post("/access/ticket").mock(return_value=httpx.Response(401, json={"data": None}))
    with pytest.raises(AuthenticationError):
        ProxmoxClient().authenticate(cluster, "wrong")


def test_client_unreachable_cluster_is_authentication_error(mock_api, cluster):
    mock_api.post("/access/ticket").mock(side_effect=httpx.ConnectError("refused"))
    with pytest.raises(AuthenticationError):
        ProxmoxClient().authenticate(cluster, "secret")


def test_client_dispatch_rejection(mock_api, cluster):
    _login(mock_api)
    mock_api.post("/nodes/pve1/vzdump").mock(return_value=httpx.Response(
        500, json={"data": None, "errors": {"storage": "storage 'nas' does not exist"}}
    ))
    client = ProxmoxClient()
    with client.authenticate(cluster, "secret") as session:
        with pytest.raises(DispatchError) as exc_info:
            client.submit_backup(session, BackupTarget(cluster_id="c1", node="pve1", vmid=100), BackupOptions())
    assert "does not exist" in str(exc_info.value)


def test_client_status_transport_error(mock_api, cluster):
    _login(mock_api)
    mock_api.get("/nodes/pve1/tasks/UPID:x/status").mock(side_effect=httpx.ReadTimeout("slow"))
    client = ProxmoxClient()
    with client.authenticate(cluster, "secret") as session:
        with pytest.raises(RemoteJobError):
            client.poll_status(session, BackupTarget(cluster_id="c1", node="pve1", vmid=100), "UPID:x")


def test_client_snapshot_listing_skips_current(mock_api, cluster):
    _login(mock_api)
    mock_api.get("/nodes/pve1/qemu/100/snapshot").mock(return_value=httpx.Response(
        200, json={"data": [{"name": "current"}, {"name": "auto-1-x", "snaptime": 1}]}
    ))
    client = ProxmoxClient()
    with client.authenticate(cluster, "secret") as session:
        snaps = client.list_snapshots(session, BackupTarget(cluster_id="c1", node="pve1", vmid=100))
    assert [s["name"] for s in snaps] == ["auto-1-x"]


# ---------------------------------------------------------------------------
# Credentials and notifications
# ---------------------------------------------------------------------------


def test_fernet_credentials_roundtrip_and_wrong_key():
    provider = FernetCredentialProvider(generate_key())
    cluster = Cluster(name="main", host="h", password_encrypted=provider.encrypt("s3cret"))
    assert provider.password_for(cluster) == "s3cret"

    with pytest.raises(AuthenticationError):
        FernetCredentialProvider(generate_key()).password_for(cluster)
    with pytest.raises(ConfigurationError):
        FernetCredentialProvider("")


def test_render_escapes_html():
    schedule = make_schedule(target=BackupTarget(cluster_id="c1", node="pve1", vmid=7, vm_name="<db>"))
    subject, body = render_backup_result(
        schedule, None, success=False, started_at=NOW, duration_seconds=12, error="disk <full>"
    )
    assert subject == "Backup Failed: <db>"
    assert "&lt;db&gt;" in body
    assert "disk &lt;full&gt;" in body
    assert "12 seconds" in body


def test_smtp_notifier_swallows_errors(monkeypatch):
    def refuse(*args, **kwargs):
        raise ConnectionRefusedError("no smtp here")

    monkeypatch.setattr("backupctl.notifier.smtplib.SMTP", refuse)
    SmtpNotifier("localhost", "noreply@example.com").send("ops@example.com", "hi", "<p>x</p>")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.setenv("BACKUPCTL_DATA_DIR", str(tmp_path / "cli-data"))
    monkeypatch.setenv("BACKUPCTL_ENCRYPTION_KEY", generate_key())
    cli_module.get_settings.cache_clear()
    cli_module._storage = None
    yield CliRunner()
    cli_module.get_settings.cache_clear()
    cli_module._storage = None
    # setup_logging bound a handler to the runner's captured stderr
    logging.getLogger("backupctl").handlers.clear()


def test_cli_cluster_schedule_and_run(cli_env):
    runner = cli_env
    result = runner.invoke(cli_module.cli, ["cluster", "add", "--name", "main", "--host", "10.0.0.10", "--password", "pw"])
    assert result.exit_code == 0, result.output
    cluster_id = cli_module.get_storage().get_all_clusters()[0].id

    result = runner.invoke(cli_module.cli, [
        "schedule", "add", "--name", "nightly", "--cluster", cluster_id, "--node", "pve1",
        "--vmid", "100", "--type", "daily", "--value", "02:00", "--retention-days", "7",
    ])
    assert result.exit_code == 0, result.output
    assert "✓ Schedule" in result.output

    result = runner.invoke(cli_module.cli, ["schedule", "list"])
    assert "nightly" in result.output

    # Nothing is due yet, so a cycle touches no cluster
    result = runner.invoke(cli_module.cli, ["run"])
    assert result.exit_code == 0, result.output
    assert "0 due" in result.output


def test_cli_rejects_bad_schedule_value(cli_env):
    runner = cli_env
    runner.invoke(cli_module.cli, ["cluster", "add", "--name", "main", "--host", "h", "--password", "pw"])
    cluster_id = cli_module.get_storage().get_all_clusters()[0].id
    result = runner.invoke(cli_module.cli, [
        "schedule", "add", "--name", "bad", "--cluster", cluster_id, "--node", "pve1",
        "--vmid", "1", "--type", "daily", "--value", "7pm",
    ])
    assert result.exit_code == 1
    assert "HH:MM" in result.output


def test_cli_run_exits_nonzero_on_fatal_error(cli_env):
    cli_module.get_storage().schedules_file.write_text("garbage")
    result = cli_env.invoke(cli_module.cli, ["run"])
    assert result.exit_code == 1


def test_cli_config_set(cli_env):
    result = cli_env.invoke(cli_module.cli, ["config", "set", "max-workers", "3"])
    assert result.exit_code == 0
    assert cli_module.get_storage().get_config().max_workers == 3
    result = cli_env.invoke(cli_module.cli, ["config", "set", "nope", "1"])
    assert result.exit_code == 1


@pytest.mark.parametrize("key, value", [("max-poll-attempts", "0"), ("poll-interval", "-5"), ("max-workers", "-3")])
def test_cli_config_set_rejects_out_of_range(cli_env, key, value):
    result = cli_env.invoke(cli_module.cli, ["config", "set", "--", key, value])
    assert result.exit_code == 1
    assert "✗ Invalid value for" in result.output
    assert cli_module.get_storage().get_config() == Config()


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-v"]))
