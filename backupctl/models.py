"""Data models for schedules, execution history and configuration."""

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:12]


class ScheduleType(str, Enum):
    """How a schedule recurs."""
    ONCE = "once"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CRON = "cron"


class RunStatus(str, Enum):
    """Outcome of the latest run, as stored on the schedule."""
    SUCCESS = "success"
    FAILED = "failed"


class HistoryStatus(str, Enum):
    """Lifecycle states of a single execution attempt."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


class VMAction(str, Enum):
    """Recurring actions an action schedule can perform."""
    START = "start"
    STOP = "stop"
    SHUTDOWN = "shutdown"
    REBOOT = "reboot"
    SNAPSHOT = "snapshot"


_HHMM = re.compile(r"^([0-1][0-9]|2[0-3]):[0-5][0-9]$")


def validate_schedule_value(schedule_type: ScheduleType, value: Optional[str]) -> Optional[str]:
    """Check a schedule value against its type.

    Returns an error message, or None when the value is acceptable. A missing
    value is accepted for every type; the trigger calculator has a default
    for each.
    """
    if value is None or value == "":
        return None

    if schedule_type == ScheduleType.DAILY:
        if not _HHMM.match(value):
            return 'Daily schedule must be in HH:MM format (e.g., "14:30")'
    elif schedule_type == ScheduleType.WEEKLY:
        if not value.isdigit() or not 0 <= int(value) <= 6:
            return "Weekly schedule must be a day of week 0-6 (0=Sunday)"
    elif schedule_type == ScheduleType.MONTHLY:
        if not value.isdigit() or not 1 <= int(value) <= 31:
            return "Monthly schedule must be a day of month 1-31"
    elif schedule_type == ScheduleType.CRON:
        if len(value.split()) != 5 or not croniter.is_valid(value):
            return "Cron expression must have 5 fields (minute hour day month weekday)"
    elif schedule_type == ScheduleType.ONCE:
        try:
            datetime.fromisoformat(value)
        except ValueError:
            return "Once schedule must be an ISO-8601 date/time"
    return None


class RetentionKind(str, Enum):
    DAYS = "days"
    COUNT = "count"
    NONE = "none"


class RetentionPolicy(BaseModel):
    """Tagged retention rule: keep N days, keep N records, or keep everything."""
    kind: RetentionKind = RetentionKind.NONE
    value: int = 0

    @classmethod
    def days(cls, n: int) -> "RetentionPolicy":
        return cls(kind=RetentionKind.DAYS, value=n)

    @classmethod
    def count(cls, n: int) -> "RetentionPolicy":
        return cls(kind=RetentionKind.COUNT, value=n)

    @classmethod
    def none(cls) -> "RetentionPolicy":
        return cls()

    def __str__(self) -> str:
        if self.kind == RetentionKind.DAYS:
            return f"{self.value} day(s)"
        if self.kind == RetentionKind.COUNT:
            return f"last {self.value}"
        return "keep all"


class Cluster(BaseModel):
    """A Proxmox VE cluster the engine can dispatch jobs to."""
    id: str = Field(default_factory=new_id)
    name: str
    host: str
    port: int = 8006
    username: str = "root"
    realm: str = "pam"
    password_encrypted: str
    verify_ssl: bool = False

    @property
    def base_url(self) -> str:
        return f"https://{self.host}:{self.port}/api2/json"

    @property
    def login(self) -> str:
        if "@" in self.username:
            return self.username
        return f"{self.username}@{self.realm}"


class BackupTarget(BaseModel):
    """Locator for one virtual machine on a cluster node."""
    cluster_id: str
    node: str
    vmid: int
    vm_name: str = ""

    @property
    def label(self) -> str:
        return self.vm_name or f"VM {self.vmid}"


class BackupOptions(BaseModel):
    """vzdump parameters; unset values fall back to the documented defaults."""
    compression: Optional[str] = None
    mode: Optional[str] = None
    storage: Optional[str] = None
    include_ram: bool = False

    def to_params(self) -> dict:
        mode = self.mode or "snapshot"
        if self.include_ram:
            mode = "suspend"
        return {
            "compress": self.compression or "zstd",
            "mode": mode,
            "storage": self.storage or "local",
            "remove": 0,
        }


class _ScheduleBase(BaseModel):
    """Fields shared by backup and action schedules."""
    id: str = Field(default_factory=new_id)
    name: str
    target: BackupTarget
    schedule_type: ScheduleType
    schedule_value: Optional[str] = None
    enabled: bool = True
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: Optional[RunStatus] = None
    last_error: Optional[str] = None
    claimed_until: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_value(self):
        error = validate_schedule_value(self.schedule_type, self.schedule_value)
        if error:
            raise ValueError(error)
        return self

    def is_due(self, now: datetime) -> bool:
        """Enabled and its trigger instant has been reached."""
        return self.enabled and self.next_run is not None and self.next_run <= now


class Schedule(_ScheduleBase):
    """A recurring intent to back up one virtual machine."""
    retention_days: Optional[int] = None
    retention_count: Optional[int] = None
    options: BackupOptions = Field(default_factory=BackupOptions)
    notification_email: Optional[str] = None
    notify_on_success: bool = False
    notify_on_failure: bool = True

    @field_validator("retention_days", "retention_count")
    @classmethod
    def _positive(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 1:
            raise ValueError("retention must be at least 1")
        return v

    @property
    def retention(self) -> RetentionPolicy:
        """Day-based retention wins when both fields are set."""
        if self.retention_days:
            return RetentionPolicy.days(self.retention_days)
        if self.retention_count:
            return RetentionPolicy.count(self.retention_count)
        return RetentionPolicy.none()


class ActionSchedule(_ScheduleBase):
    """A recurring power or snapshot action on one virtual machine."""
    action: VMAction
    retention_count: int = 7


class HistoryRecord(BaseModel):
    """One backup execution attempt."""
    id: str = Field(default_factory=new_id)
    schedule_id: str
    vm_name: str = ""
    node: str = ""
    backup_mode: str = "snapshot"
    compression: str = "zstd"
    task_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    status: HistoryStatus = HistoryStatus.RUNNING
    error_message: Optional[str] = None
    duration_seconds: Optional[int] = None


class ExecutionOutcome(BaseModel):
    """What one executor run reports back to the orchestrator."""
    schedule_id: str
    success: bool
    message: str = ""
    history_id: Optional[str] = None
    task_id: Optional[str] = None
    duration_seconds: Optional[int] = None
    skipped: bool = False
    # Interrupted by shutdown; the remote outcome is unknown
    cancelled: bool = False


class CycleReport(BaseModel):
    """Summary of one orchestrator cycle."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    due: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    cancelled: int = 0
    outcomes: List[ExecutionOutcome] = Field(default_factory=list)

    def record(self, outcome: ExecutionOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.skipped:
            self.skipped += 1
        elif outcome.cancelled:
            self.cancelled += 1
        elif outcome.success:
            self.succeeded += 1
        else:
            self.failed += 1


class Config(BaseModel):
    """Engine tunables, persisted in the data directory."""
    model_config = ConfigDict(validate_assignment=True)

    poll_interval: float = Field(default=5.0, gt=0)  # seconds between task status checks
    max_poll_attempts: int = Field(default=60, ge=1)  # 60 * 5s = 5 minute cap
    lease_seconds: int = Field(default=900, ge=1)
    max_workers: int = Field(default=1, ge=1)  # 1 = strictly sequential
