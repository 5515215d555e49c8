"""One scheduling cycle: select due schedules, run them, advance triggers."""

import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from .credentials import CredentialProvider, FernetCredentialProvider
from .executor import ActionExecutor, BackupExecutor
from .models import (
    ActionSchedule,
    Config,
    CycleReport,
    ExecutionOutcome,
    RunStatus,
    Schedule,
)
from .notifier import Notifier, NullNotifier, SmtpNotifier
from .proxmox import ProxmoxClient
from .retention import RetentionEnforcer
from .settings import Settings
from .storage import Storage
from .triggers import compute_next_run

logger = logging.getLogger(__name__)


class Orchestrator:
    """Entry point invoked on an external cadence; ``run_cycle`` is one pass.

    Per-schedule failures are isolated: they are recorded on the schedule and
    never raised. Only a failure of the due-schedule query escapes.
    """

    def __init__(
        self,
        storage: Storage,
        backup_executor: BackupExecutor,
        action_executor: ActionExecutor,
        retention: RetentionEnforcer,
        *,
        clock: Callable[[], datetime],
        config: Optional[Config] = None,
        cancel: Optional[threading.Event] = None,
    ):
        self.storage = storage
        self.backup_executor = backup_executor
        self.action_executor = action_executor
        self.retention = retention
        self.clock = clock
        self.config = config or storage.get_config()
        self.cancel = cancel or threading.Event()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        storage: Optional[Storage] = None,
        *,
        client: Optional[ProxmoxClient] = None,
        credentials: Optional[CredentialProvider] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> "Orchestrator":
        """Wire the engine from environment settings."""
        storage = storage or Storage(settings.data_dir)
        config = storage.get_config()
        clock = clock or settings.clock()
        cancel = cancel or threading.Event()
        client = client or ProxmoxClient(timeout=settings.http_timeout)
        credentials = credentials or FernetCredentialProvider(settings.encryption_key)
        if notifier is None:
            if settings.smtp_host:
                notifier = SmtpNotifier(
                    settings.smtp_host,
                    settings.smtp_from,
                    smtp_port=settings.smtp_port,
                    smtp_user=settings.smtp_user,
                    smtp_password=settings.smtp_password,
                    use_tls=settings.smtp_tls,
                )
            else:
                notifier = NullNotifier()

        backup_executor = BackupExecutor(
            storage, client, credentials, notifier, clock=clock, config=config, cancel=cancel
        )
        action_executor = ActionExecutor(storage, client, credentials, clock=clock)
        retention = RetentionEnforcer(storage, clock)
        return cls(
            storage, backup_executor, action_executor, retention,
            clock=clock, config=config, cancel=cancel,
        )

    @property
    def lease(self) -> timedelta:
        """Lease length; never shorter than the longest possible poll."""
        poll_window = self.config.poll_interval * self.config.max_poll_attempts + 60
        return timedelta(seconds=max(self.config.lease_seconds, poll_window))

    def run_cycle(self) -> CycleReport:
        """Process every currently due backup and action schedule once."""
        now = self.clock()
        report = CycleReport(started_at=now)

        # Failure here is fatal to the cycle and propagates to the caller
        due = self.storage.find_due(now)
        due_actions = self.storage.find_due_actions(now)
        report.due = len(due) + len(due_actions)
        logger.info("Found %d backup schedule(s) and %d action(s) due", len(due), len(due_actions))

        self._dispatch(due, self.process_backup, report)
        self._dispatch(due_actions, self.process_action, report)

        report.finished_at = self.clock()
        logger.info(
            "Cycle finished: %d succeeded, %d failed, %d skipped, %d cancelled",
            report.succeeded, report.failed, report.skipped, report.cancelled,
        )
        return report

    def _dispatch(self, items: Sequence, process: Callable, report: CycleReport) -> None:
        """Run items sequentially, or per cluster on a bounded pool."""
        if self.config.max_workers <= 1 or len(items) <= 1:
            for outcome in self._run_group(items, process):
                report.record(outcome)
            return

        groups = OrderedDict()
        for item in items:
            groups.setdefault(item.target.cluster_id, []).append(item)

        workers = min(self.config.max_workers, len(groups))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="backupctl") as pool:
            futures = [pool.submit(self._run_group, group, process) for group in groups.values()]
            for future in futures:
                for outcome in future.result():
                    report.record(outcome)

    def _run_group(self, items: Sequence, process: Callable) -> List[ExecutionOutcome]:
        outcomes = []
        for item in items:
            if self.cancel.is_set():
                logger.info("Shutdown requested, leaving %s for the next cycle", item.id)
                break
            outcomes.append(process(item))
        return outcomes

    def process_backup(self, schedule: Schedule) -> ExecutionOutcome:
        """Claim, execute, advance the trigger and apply retention for one schedule."""
        return self._process(
            schedule,
            claim=self.storage.claim_schedule,
            execute=self.backup_executor.execute,
            update=self.storage.update_trigger,
            after=self._apply_retention,
        )

    def process_action(self, schedule: ActionSchedule) -> ExecutionOutcome:
        return self._process(
            schedule,
            claim=self.storage.claim_action,
            execute=self.action_executor.execute,
            update=self.storage.update_action_trigger,
        )

    def _process(self, schedule, *, claim, execute, update, after=None) -> ExecutionOutcome:
        logger.info("Processing schedule %s: %s (%s)", schedule.id, schedule.name, schedule.target.label)
        now = self.clock()
        try:
            if not claim(schedule.id, now, now + self.lease):
                logger.info("Schedule %s is claimed by another cycle, skipping", schedule.id)
                return ExecutionOutcome(
                    schedule_id=schedule.id, success=False, skipped=True,
                    message="Claimed by another cycle",
                )
        except Exception as e:
            logger.exception("Could not claim schedule %s", schedule.id)
            return ExecutionOutcome(schedule_id=schedule.id, success=False, message=str(e))

        try:
            outcome = execute(schedule)
        except Exception as e:
            logger.exception("Executor raised for schedule %s", schedule.id)
            outcome = ExecutionOutcome(schedule_id=schedule.id, success=False, message=str(e))

        if outcome.cancelled:
            # next_run and last_status stay as they were; the lease runs out on
            # its own, after the remote task's poll window
            logger.warning("Schedule %s interrupted by shutdown, rerun once its lease expires", schedule.id)
            return outcome

        finished = self.clock()
        next_run = compute_next_run(schedule.schedule_type.value, schedule.schedule_value, finished)
        try:
            update(
                schedule.id,
                last_run=finished,
                next_run=next_run,
                last_status=RunStatus.SUCCESS if outcome.success else RunStatus.FAILED,
                last_error=None if outcome.success else outcome.message,
            )
            logger.info("Next run of %s scheduled for %s", schedule.id, next_run.isoformat())
        except Exception:
            # The lease expires on its own; the schedule is retried after it does
            logger.exception("Could not update trigger of schedule %s", schedule.id)

        if after is not None:
            after(schedule)
        return outcome

    def _apply_retention(self, schedule: Schedule) -> None:
        try:
            self.retention.expire_stale(schedule.id, self.lease)
            self.retention.enforce(schedule)
        except Exception:
            logger.exception("Failed to apply retention for schedule %s", schedule.id)
