"""Executors that run one due schedule against its cluster."""

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from .credentials import CredentialProvider
from .errors import (
    AuthenticationError,
    BackupCtlError,
    DispatchError,
    PollingCancelledError,
    PollingTimeoutError,
    RemoteTerminalFailure,
)
from .models import (
    ActionSchedule,
    BackupTarget,
    Cluster,
    Config,
    ExecutionOutcome,
    HistoryRecord,
    HistoryStatus,
    Schedule,
    VMAction,
)
from .notifier import Notifier, render_backup_result, should_notify
from .proxmox import ProxmoxClient, ProxmoxSession
from .storage import Storage

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
# Waits up to N seconds; returns True when the wait was cut short by cancellation.
Waiter = Callable[[float], bool]


class _RemoteExecutor:
    """Cluster lookup and authentication shared by both executors."""

    def __init__(
        self,
        storage: Storage,
        client: ProxmoxClient,
        credentials: CredentialProvider,
        *,
        clock: Clock,
    ):
        self.storage = storage
        self.client = client
        self.credentials = credentials
        self.clock = clock

    def _resolve_cluster(self, target: BackupTarget) -> Optional[Cluster]:
        return self.storage.get_cluster(target.cluster_id)

    def _connect(self, cluster: Cluster) -> ProxmoxSession:
        """Authenticate to ``cluster``. Raises AuthenticationError."""
        password = self.credentials.password_for(cluster)
        return self.client.authenticate(cluster, password)


class BackupExecutor(_RemoteExecutor):
    """Runs one backup schedule: authenticate, submit, poll, record, notify.

    ``execute`` never raises; every failure becomes a failed outcome (and a
    failed history record once one exists). A poll interrupted by shutdown
    ends as a cancelled outcome with an expired record, since the remote task
    may still succeed. It never touches the schedule's trigger fields either;
    that is the orchestrator's job.
    """

    def __init__(
        self,
        storage: Storage,
        client: ProxmoxClient,
        credentials: CredentialProvider,
        notifier: Notifier,
        *,
        clock: Clock,
        config: Optional[Config] = None,
        cancel: Optional[threading.Event] = None,
        wait: Optional[Waiter] = None,
    ):
        super().__init__(storage, client, credentials, clock=clock)
        self.notifier = notifier
        self.config = config or Config()
        self.cancel = cancel or threading.Event()
        self.wait = wait or self.cancel.wait

    def execute(self, schedule: Schedule) -> ExecutionOutcome:
        """Execute a single backup schedule."""
        try:
            return self._execute(schedule)
        except Exception as e:
            logger.exception("Unexpected error executing schedule %s", schedule.id)
            return ExecutionOutcome(schedule_id=schedule.id, success=False, message=str(e))

    def _execute(self, schedule: Schedule) -> ExecutionOutcome:
        target = schedule.target
        cluster = self._resolve_cluster(target)
        if cluster is None:
            message = f"Cluster {target.cluster_id} not found"
            logger.error("Schedule %s: %s", schedule.id, message)
            return ExecutionOutcome(schedule_id=schedule.id, success=False, message=message)

        try:
            session = self._connect(cluster)
        except AuthenticationError as e:
            logger.error("Schedule %s: %s", schedule.id, e)
            self._notify(schedule, cluster, False, self.clock(), 0, str(e), started=False)
            return ExecutionOutcome(schedule_id=schedule.id, success=False, message=str(e))

        with session:
            return self._run_job(schedule, cluster, session)

    def _run_job(self, schedule: Schedule, cluster: Cluster, session: ProxmoxSession) -> ExecutionOutcome:
        params = schedule.options.to_params()
        started_at = self.clock()
        record = HistoryRecord(
            schedule_id=schedule.id,
            vm_name=schedule.target.label,
            node=schedule.target.node,
            backup_mode=params["mode"],
            compression=params["compress"],
            started_at=started_at,
            status=HistoryStatus.RUNNING,
        )
        history_id = self.storage.create_history(record)

        task_id = None
        started = False
        error = None
        cancelled = False
        try:
            task_id = self.client.submit_backup(session, schedule.target, schedule.options)
            started = True
            logger.info("Backup task started for %s: %s", schedule.target.label, task_id)
            self.storage.update_history(history_id, task_id=task_id)
            attempts = self._wait_for_task(session, schedule.target, task_id)
            logger.debug("Task %s finished after %d status checks", task_id, attempts)
        except PollingCancelledError as e:
            cancelled = True
            error = str(e)
            logger.warning("Backup of %s interrupted: %s", schedule.target.label, error)
        except DispatchError as e:
            error = str(e)
            logger.error("Backup failed to start for %s: %s", schedule.target.label, error)
        except BackupCtlError as e:
            error = str(e)
            logger.error("Backup failed for %s: %s", schedule.target.label, error)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            logger.exception("Backup error for %s", schedule.target.label)

        success = error is None
        completed_at = self.clock()
        duration = int((completed_at - started_at).total_seconds())
        if cancelled:
            status = HistoryStatus.EXPIRED
        elif success:
            status = HistoryStatus.COMPLETED
        else:
            status = HistoryStatus.FAILED
        self.storage.update_history(
            history_id,
            completed_at=completed_at,
            status=status,
            error_message=error,
            duration_seconds=duration,
        )

        if cancelled:
            return ExecutionOutcome(
                schedule_id=schedule.id,
                success=False,
                cancelled=True,
                message=error,
                history_id=history_id,
                task_id=task_id,
                duration_seconds=duration,
            )

        self._notify(schedule, cluster, success, started_at, duration, error, started=started)

        return ExecutionOutcome(
            schedule_id=schedule.id,
            success=success,
            message="Backup completed" if success else error,
            history_id=history_id,
            task_id=task_id,
            duration_seconds=duration,
        )

    def _wait_for_task(self, session: ProxmoxSession, target: BackupTarget, task_id: str) -> int:
        """Poll until the task is terminal. Returns the number of status checks.

        Bounded by ``max_poll_attempts`` ticks of ``poll_interval`` seconds.
        Raises RemoteTerminalFailure, PollingTimeoutError or
        PollingCancelledError.
        """
        interval = self.config.poll_interval
        max_attempts = self.config.max_poll_attempts
        for attempt in range(1, max_attempts + 1):
            if self.wait(interval):
                raise PollingCancelledError(
                    f"Backup task {task_id} cancelled by shutdown after {attempt - 1} status checks; "
                    "remote outcome unknown"
                )
            status = self.client.poll_status(session, target, task_id)
            if not status.terminal:
                continue
            if status.success:
                return attempt
            raise RemoteTerminalFailure(task_id, status.exit_status)
        raise PollingTimeoutError(task_id, max_attempts, max_attempts * interval)

    def _notify(
        self,
        schedule: Schedule,
        cluster: Optional[Cluster],
        success: bool,
        started_at: datetime,
        duration: int,
        error: Optional[str],
        *,
        started: bool,
    ) -> None:
        if not should_notify(schedule, success):
            return
        subject, body = render_backup_result(
            schedule,
            cluster,
            success=success,
            started_at=started_at,
            duration_seconds=duration,
            error=error,
            started=started,
        )
        try:
            self.notifier.send(schedule.notification_email, subject, body)
        except Exception:
            logger.exception("Notifier raised for schedule %s", schedule.id)


class ActionExecutor(_RemoteExecutor):
    """Runs one action schedule: a power action or a rotating snapshot."""

    def execute(self, schedule: ActionSchedule) -> ExecutionOutcome:
        try:
            message = self._execute(schedule)
        except BackupCtlError as e:
            logger.error("Action %s (%s) failed: %s", schedule.id, schedule.action.value, e)
            return ExecutionOutcome(schedule_id=schedule.id, success=False, message=str(e))
        except Exception as e:
            logger.exception("Unexpected error executing action %s", schedule.id)
            return ExecutionOutcome(schedule_id=schedule.id, success=False, message=str(e))
        return ExecutionOutcome(schedule_id=schedule.id, success=True, message=message)

    def _execute(self, schedule: ActionSchedule) -> str:
        cluster = self._resolve_cluster(schedule.target)
        if cluster is None:
            raise BackupCtlError(f"Cluster {schedule.target.cluster_id} not found")

        with self._connect(cluster) as session:
            if schedule.action == VMAction.SNAPSHOT:
                return self._snapshot(session, schedule)
            self.client.vm_action(session, schedule.target, schedule.action)
            logger.info("%s issued for %s", schedule.action.value, schedule.target.label)
            return f"{schedule.action.value} issued for {schedule.target.label}"

    def _snapshot(self, session: ProxmoxSession, schedule: ActionSchedule) -> str:
        prefix = f"auto-{schedule.id}-"
        own = [
            snap for snap in self.client.list_snapshots(session, schedule.target)
            if snap.get("name", "").startswith(prefix)
        ]
        own.sort(key=lambda snap: snap.get("snaptime", 0))

        # Make room so that the new snapshot brings us to retention_count
        excess = len(own) - schedule.retention_count + 1
        for snap in own[:max(excess, 0)]:
            try:
                self.client.delete_snapshot(session, schedule.target, snap["name"])
                logger.info("Deleted old snapshot %s", snap["name"])
            except BackupCtlError as e:
                logger.warning("Failed to delete snapshot %s: %s", snap["name"], e)

        name = f"{prefix}{self.clock():%Y-%m-%dT%H-%M-%S}"
        self.client.create_snapshot(
            session, schedule.target, name, description=f"Automated snapshot from schedule: {schedule.id}"
        )
        logger.info("Snapshot created: %s", name)
        return f"Snapshot {name} created"
