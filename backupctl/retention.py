"""Retention enforcement for backup history."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List

from .models import HistoryStatus, RetentionKind, RetentionPolicy, Schedule
from .storage import Storage

logger = logging.getLogger(__name__)

# Day-based pruning only touches finished-and-good records; failures are kept
# for diagnosis and running records are never removed by age.
PRUNABLE_BY_AGE = (HistoryStatus.COMPLETED, HistoryStatus.EXPIRED)


@dataclass
class PurgeResult:
    """Result of one retention pass."""

    schedule_id: str
    policy: str
    deleted: int


class RetentionEnforcer:
    """Deletes history records that exceed a schedule's retention policy."""

    def __init__(self, storage: Storage, clock: Callable[[], datetime]):
        self.storage = storage
        self.clock = clock

    def enforce(self, schedule: Schedule) -> PurgeResult:
        """Apply ``schedule.retention`` to its history."""
        return self.apply(schedule.id, schedule.retention)

    def apply(self, schedule_id: str, policy: RetentionPolicy) -> PurgeResult:
        if policy.kind == RetentionKind.DAYS:
            cutoff = self.clock() - timedelta(days=policy.value)
            deleted = self.storage.delete_history_older_than(schedule_id, cutoff, PRUNABLE_BY_AGE)
        elif policy.kind == RetentionKind.COUNT:
            ids = self.storage.find_history_beyond_count(schedule_id, policy.value)
            deleted = self.storage.delete_history_by_ids(ids)
        else:
            deleted = 0

        if deleted:
            logger.info("Retention (%s) removed %d record(s) of schedule %s", policy, deleted, schedule_id)
        return PurgeResult(schedule_id=schedule_id, policy=str(policy), deleted=deleted)

    def expire_stale(self, schedule_id: str, older_than: timedelta) -> List[str]:
        """Mark running records that outlived ``older_than`` as expired.

        A cycle that died mid-poll leaves its record running forever;
        expiring it lets day-based retention reclaim it later.
        """
        cutoff = self.clock() - older_than
        expired = []
        for record in self.storage.find_stale_running(schedule_id, cutoff):
            self.storage.update_history(
                record.id,
                status=HistoryStatus.EXPIRED,
                completed_at=self.clock(),
                error_message=record.error_message or "Execution abandoned while running",
            )
            expired.append(record.id)
        if expired:
            logger.warning("Expired %d abandoned record(s) of schedule %s", len(expired), schedule_id)
        return expired
