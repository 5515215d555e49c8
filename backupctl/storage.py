"""Persistent schedule and history storage using JSON files."""

import json
import logging
import os
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Type, TypeVar

from pydantic import BaseModel

from .errors import PersistenceError
from .models import (
    ActionSchedule,
    Cluster,
    Config,
    HistoryRecord,
    HistoryStatus,
    RunStatus,
    Schedule,
)

# Handle platform-specific locking
if sys.platform == "win32":
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class Storage:
    """File-based storage for schedules, history and clusters with locking.

    Every read-modify-write runs under an exclusive lock on ``store.lock`` so
    that overlapping cycles (separate processes or threads) see consistent
    files.
    """

    def __init__(self, data_dir: str = ".backupctl"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.schedules_file = self.data_dir / "schedules.json"
        self.actions_file = self.data_dir / "actions.json"
        self.history_file = self.data_dir / "history.json"
        self.clusters_file = self.data_dir / "clusters.json"
        self.config_file = self.data_dir / "config.json"
        self.lock_file = self.data_dir / "store.lock"
        self._mutex = threading.RLock()
        self._depth = 0

        # Initialize files if they don't exist
        for path in (self.schedules_file, self.actions_file, self.history_file, self.clusters_file):
            if not path.exists():
                self._write_json(path, [])
        if not self.config_file.exists():
            self._write_json(self.config_file, Config().model_dump())

    # -- low level -------------------------------------------------------

    def _write_json(self, file_path: Path, data: Any) -> None:
        """Write data to JSON file with atomic write."""
        temp_file = file_path.with_suffix(".tmp")
        try:
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2, default=str)
            temp_file.replace(file_path)
        except OSError as e:
            raise PersistenceError(f"Cannot write {file_path.name}: {e}") from e

    def _read_json(self, file_path: Path) -> Any:
        """Read JSON file safely."""
        if not file_path.exists():
            return [] if file_path.name.endswith("s.json") or file_path == self.history_file else {}
        try:
            with open(file_path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Cannot read {file_path.name}: {e}") from e

    @contextmanager
    def _locked(self) -> Iterator[None]:
        """Hold the store-wide lock; re-entrant within one thread."""
        with self._mutex:
            if self._depth > 0:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            try:
                fd = os.open(str(self.lock_file), os.O_CREAT | os.O_RDWR, 0o644)
            except OSError as e:
                raise PersistenceError(f"Cannot open lock file: {e}") from e
            try:
                if sys.platform == "win32":
                    msvcrt.locking(fd, msvcrt.LK_LOCK, 1)
                else:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                self._depth = 1
                try:
                    yield
                finally:
                    self._depth = 0
                    if sys.platform == "win32":
                        os.lseek(fd, 0, os.SEEK_SET)
                        msvcrt.locking(fd, msvcrt.LK_UNLCK, 1)
                    else:
                        fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    def _load(self, file_path: Path, model: Type[M]) -> List[M]:
        return [model(**item) for item in self._read_json(file_path)]

    def _get(self, file_path: Path, model: Type[M], item_id: str) -> Optional[M]:
        for item in self._read_json(file_path):
            if item["id"] == item_id:
                return model(**item)
        return None

    def _add(self, file_path: Path, item: BaseModel) -> None:
        with self._locked():
            items = self._read_json(file_path)
            if any(existing["id"] == item.id for existing in items):
                raise PersistenceError(f"{item.id} already exists in {file_path.name}")
            items.append(item.model_dump(mode="json"))
            self._write_json(file_path, items)

    def _patch(self, file_path: Path, model: Type[M], item_id: str, fields: Dict[str, Any]) -> M:
        """Apply field updates to one record and return the updated model."""
        with self._locked():
            items = self._read_json(file_path)
            for i, data in enumerate(items):
                if data["id"] == item_id:
                    merged = model(**data).model_dump()
                    merged.update(fields)
                    updated = model(**merged)
                    items[i] = updated.model_dump(mode="json")
                    self._write_json(file_path, items)
                    return updated
        raise PersistenceError(f"{item_id} not found in {file_path.name}")

    def _find_due(self, file_path: Path, model: Type[M], now: datetime) -> List[M]:
        due = [item for item in self._load(file_path, model) if item.is_due(now)]
        due.sort(key=lambda item: item.next_run)
        return due

    def _claim(self, file_path: Path, model: Type[M], item_id: str, now: datetime, until: datetime) -> bool:
        with self._locked():
            item = self._get(file_path, model, item_id)
            if item is None:
                return False
            if item.claimed_until is not None and item.claimed_until > now:
                return False
            self._patch(file_path, model, item_id, {"claimed_until": until})
            return True

    def _update_trigger(
        self,
        file_path: Path,
        model: Type[M],
        item_id: str,
        last_run: Optional[datetime],
        next_run: Optional[datetime],
        last_status: RunStatus,
        last_error: Optional[str],
    ) -> M:
        fields = {
            "last_status": last_status,
            "last_error": last_error,
            "claimed_until": None,
        }
        if last_run is not None:
            fields["last_run"] = last_run
        if next_run is not None:
            fields["next_run"] = next_run
        return self._patch(file_path, model, item_id, fields)

    # -- backup schedules --------------------------------------------------

    def add_schedule(self, schedule: Schedule) -> None:
        """Add a new backup schedule."""
        self._add(self.schedules_file, schedule)

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        """Get a backup schedule by ID."""
        return self._get(self.schedules_file, Schedule, schedule_id)

    def get_all_schedules(self) -> List[Schedule]:
        """Get all backup schedules."""
        return self._load(self.schedules_file, Schedule)

    def update_schedule(self, schedule_id: str, **fields: Any) -> Schedule:
        """Update definition fields of a schedule."""
        return self._patch(self.schedules_file, Schedule, schedule_id, fields)

    def find_due(self, now: datetime) -> List[Schedule]:
        """Enabled schedules whose next_run is at or before ``now``, oldest first."""
        return self._find_due(self.schedules_file, Schedule, now)

    def claim_schedule(self, schedule_id: str, now: datetime, until: datetime) -> bool:
        """Take the lease on a schedule. False if another cycle holds it."""
        return self._claim(self.schedules_file, Schedule, schedule_id, now, until)

    def update_trigger(
        self,
        schedule_id: str,
        *,
        last_run: Optional[datetime],
        next_run: Optional[datetime],
        last_status: RunStatus,
        last_error: Optional[str] = None,
    ) -> Schedule:
        """Persist the outcome of a run and release the lease."""
        return self._update_trigger(
            self.schedules_file, Schedule, schedule_id, last_run, next_run, last_status, last_error
        )

    # -- action schedules ------------------------------------------------

    def add_action(self, action: ActionSchedule) -> None:
        """Add a new action schedule."""
        self._add(self.actions_file, action)

    def get_action(self, action_id: str) -> Optional[ActionSchedule]:
        """Get an action schedule by ID."""
        return self._get(self.actions_file, ActionSchedule, action_id)

    def get_all_actions(self) -> List[ActionSchedule]:
        """Get all action schedules."""
        return self._load(self.actions_file, ActionSchedule)

    def update_action(self, action_id: str, **fields: Any) -> ActionSchedule:
        return self._patch(self.actions_file, ActionSchedule, action_id, fields)

    def find_due_actions(self, now: datetime) -> List[ActionSchedule]:
        return self._find_due(self.actions_file, ActionSchedule, now)

    def claim_action(self, action_id: str, now: datetime, until: datetime) -> bool:
        return self._claim(self.actions_file, ActionSchedule, action_id, now, until)

    def update_action_trigger(
        self,
        action_id: str,
        *,
        last_run: Optional[datetime],
        next_run: Optional[datetime],
        last_status: RunStatus,
        last_error: Optional[str] = None,
    ) -> ActionSchedule:
        return self._update_trigger(
            self.actions_file, ActionSchedule, action_id, last_run, next_run, last_status, last_error
        )

    # -- history ---------------------------------------------------------

    def create_history(self, record: HistoryRecord) -> str:
        """Insert an execution record and return its ID."""
        self._add(self.history_file, record)
        return record.id

    def update_history(self, history_id: str, **fields: Any) -> HistoryRecord:
        """Update fields of an execution record."""
        return self._patch(self.history_file, HistoryRecord, history_id, fields)

    def get_history(self, history_id: str) -> Optional[HistoryRecord]:
        return self._get(self.history_file, HistoryRecord, history_id)

    def get_history_for(self, schedule_id: str) -> List[HistoryRecord]:
        """Execution records of one schedule, newest first."""
        records = [r for r in self._load(self.history_file, HistoryRecord) if r.schedule_id == schedule_id]
        records.sort(key=lambda r: r.started_at, reverse=True)
        return records

    def get_all_history(self) -> List[HistoryRecord]:
        records = self._load(self.history_file, HistoryRecord)
        records.sort(key=lambda r: r.started_at, reverse=True)
        return records

    def delete_history_older_than(
        self, schedule_id: str, cutoff: datetime, statuses: Iterable[HistoryStatus]
    ) -> int:
        """Delete a schedule's records started before ``cutoff`` with one of ``statuses``."""
        allowed = {HistoryStatus(s).value for s in statuses}
        with self._locked():
            records = self._read_json(self.history_file)
            kept = []
            for data in records:
                record = HistoryRecord(**data)
                if (
                    record.schedule_id == schedule_id
                    and record.started_at < cutoff
                    and record.status.value in allowed
                ):
                    continue
                kept.append(data)
            self._write_json(self.history_file, kept)
            return len(records) - len(kept)

    def find_history_beyond_count(self, schedule_id: str, count: int) -> List[str]:
        """IDs of a schedule's records past the ``count`` most recent."""
        return [r.id for r in self.get_history_for(schedule_id)[count:]]

    def delete_history_by_ids(self, ids: Iterable[str]) -> int:
        """Delete execution records by ID. Returns how many were removed."""
        doomed = set(ids)
        if not doomed:
            return 0
        with self._locked():
            records = self._read_json(self.history_file)
            kept = [data for data in records if data["id"] not in doomed]
            self._write_json(self.history_file, kept)
            return len(records) - len(kept)

    def find_stale_running(self, schedule_id: str, started_before: datetime) -> List[HistoryRecord]:
        """Running records of a schedule started before the given instant."""
        return [
            r for r in self.get_history_for(schedule_id)
            if r.status == HistoryStatus.RUNNING and r.started_at < started_before
        ]

    # -- clusters --------------------------------------------------------

    def add_cluster(self, cluster: Cluster) -> None:
        self._add(self.clusters_file, cluster)

    def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        return self._get(self.clusters_file, Cluster, cluster_id)

    def get_all_clusters(self) -> List[Cluster]:
        return self._load(self.clusters_file, Cluster)

    # -- config and stats ------------------------------------------------

    def get_config(self) -> Config:
        """Get current configuration."""
        config_data = self._read_json(self.config_file)
        return Config(**config_data)

    def set_config(self, config: Config) -> None:
        """Update configuration."""
        with self._locked():
            self._write_json(self.config_file, config.model_dump())

    def get_stats(self) -> Dict[str, int]:
        """Get schedule and history statistics."""
        schedules = self._read_json(self.schedules_file)
        history = self._read_json(self.history_file)

        stats = {
            "schedules": len(schedules),
            "enabled": sum(1 for s in schedules if s.get("enabled", True)),
            "actions": len(self._read_json(self.actions_file)),
            "running": 0,
            "completed": 0,
            "failed": 0,
            "expired": 0,
            "history": len(history),
        }

        for record in history:
            status = record.get("status", "running")
            if status in stats:
                stats[status] += 1

        return stats
