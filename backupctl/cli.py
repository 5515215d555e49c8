"""CLI interface for backupctl."""

import sys
from datetime import datetime
from typing import Optional

import click
from pydantic import ValidationError

from .credentials import FernetCredentialProvider, generate_key
from .errors import BackupCtlError
from .logging_config import setup_logging
from .models import (
    ActionSchedule,
    BackupOptions,
    BackupTarget,
    Cluster,
    Schedule,
    ScheduleType,
    VMAction,
)
from .orchestrator import Orchestrator
from .retention import RetentionEnforcer
from .settings import Settings, get_settings
from .storage import Storage
from .triggers import initial_next_run
from .worker import CycleWorker

# Global storage instance
_storage: Optional[Storage] = None

SCHEDULE_TYPES = [t.value for t in ScheduleType]


def get_storage() -> Storage:
    """Get or create storage instance."""
    global _storage
    if _storage is None:
        _storage = Storage(get_settings().data_dir)
    return _storage


def _fmt(dt: Optional[datetime]) -> str:
    return dt.strftime("%Y-%m-%d %H:%M") if dt else "-"


def _fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """backupctl - Scheduled VM Backup Engine"""
    settings = get_settings()
    setup_logging("DEBUG" if verbose else settings.log_level, settings.log_file or None)


@cli.command()
@click.option("--loop", is_flag=True, help="Keep running cycles until interrupted")
@click.option("--interval", default=300.0, help="Seconds between cycles with --loop")
def run(loop: bool, interval: float):
    """Run one backup cycle (or keep cycling with --loop).

    Example:
        backupctl run
        backupctl run --loop --interval 300
    """
    settings = get_settings()
    try:
        orchestrator = Orchestrator.from_settings(settings, get_storage())
    except BackupCtlError as e:
        _fail(f"Error: {e}")

    if loop:
        CycleWorker(orchestrator).run(interval)
        return

    try:
        report = orchestrator.run_cycle()
    except Exception as e:
        _fail(f"Error: {e}")

    click.echo(
        f"✓ Cycle complete: {report.due} due, {report.succeeded} succeeded, "
        f"{report.failed} failed, {report.skipped} skipped, {report.cancelled} cancelled"
    )
    for outcome in report.outcomes:
        symbol = "-" if outcome.skipped or outcome.cancelled else ("✓" if outcome.success else "✗")
        click.echo(f"  {symbol} {outcome.schedule_id}: {outcome.message}")


@cli.command()
def status():
    """Show schedule and history statistics.

    Example:
        backupctl status
    """
    storage = get_storage()
    stats = storage.get_stats()
    config = storage.get_config()

    click.echo("\n" + "=" * 50)
    click.echo("backupctl Status")
    click.echo("=" * 50)
    click.echo(f"Schedules:      {stats['schedules']} ({stats['enabled']} enabled)")
    click.echo(f"Actions:        {stats['actions']}")
    click.echo(f"History:        {stats['history']}")
    click.echo(f"  Running:      {stats['running']}")
    click.echo(f"  Completed:    {stats['completed']}")
    click.echo(f"  Failed:       {stats['failed']}")
    click.echo(f"  Expired:      {stats['expired']}")
    click.echo("\nConfiguration:")
    click.echo(f"  Poll:         {config.max_poll_attempts} x {config.poll_interval}s")
    click.echo(f"  Workers:      {config.max_workers}")
    click.echo("=" * 50 + "\n")


@cli.group()
def schedule():
    """Manage backup schedules"""
    pass


@schedule.command("add")
@click.option("--name", required=True)
@click.option("--cluster", "cluster_id", required=True, help="Cluster ID")
@click.option("--node", required=True, help="Node hosting the VM")
@click.option("--vmid", required=True, type=int)
@click.option("--vm-name", default="")
@click.option("--type", "schedule_type", type=click.Choice(SCHEDULE_TYPES), required=True)
@click.option("--value", "schedule_value", default=None, help="HH:MM, weekday 0-6, day 1-31, cron or ISO time")
@click.option("--retention-days", type=int, default=None)
@click.option("--retention-count", type=int, default=None)
@click.option("--compression", default=None, help="Default: zstd")
@click.option("--mode", default=None, help="Default: snapshot")
@click.option("--storage", "storage_name", default=None, help="Default: local")
@click.option("--include-ram", is_flag=True)
@click.option("--email", default=None, help="Notification recipient")
@click.option("--notify-success/--no-notify-success", default=False)
@click.option("--notify-failure/--no-notify-failure", default=True)
@click.option("--disabled", is_flag=True)
def schedule_add(name, cluster_id, node, vmid, vm_name, schedule_type, schedule_value,
                 retention_days, retention_count, compression, mode, storage_name,
                 include_ram, email, notify_success, notify_failure, disabled):
    """Create a backup schedule.

    Example:
        backupctl schedule add --name nightly --cluster c1 --node pve1 --vmid 100 --type daily --value 02:00 --retention-days 7
    """
    storage = get_storage()
    if storage.get_cluster(cluster_id) is None:
        _fail(f"Cluster {cluster_id} not found")
    if retention_days and retention_count:
        click.echo("! Both retention fields set; day-based retention takes precedence", err=True)

    now = get_settings().clock()()
    try:
        sched = Schedule(
            name=name,
            target=BackupTarget(cluster_id=cluster_id, node=node, vmid=vmid, vm_name=vm_name),
            schedule_type=schedule_type,
            schedule_value=schedule_value,
            retention_days=retention_days,
            retention_count=retention_count,
            options=BackupOptions(
                compression=compression, mode=mode, storage=storage_name, include_ram=include_ram
            ),
            notification_email=email,
            notify_on_success=notify_success,
            notify_on_failure=notify_failure,
            enabled=not disabled,
            next_run=initial_next_run(schedule_type, schedule_value, now),
        )
        storage.add_schedule(sched)
    except ValidationError as e:
        _fail(f"Invalid schedule: {e.errors()[0]['msg']}")
    except BackupCtlError as e:
        _fail(f"Error: {e}")
    click.echo(f"✓ Schedule {sched.id} created, next run {_fmt(sched.next_run)}")


@schedule.command("list")
@click.option("--limit", default=50, help="Maximum schedules to display")
def schedule_list(limit: int):
    """List backup schedules.

    Example:
        backupctl schedule list
    """
    schedules = get_storage().get_all_schedules()[:limit]
    if not schedules:
        click.echo("No schedules found")
        return

    click.echo(f"\n{'ID':<14} {'Name':<20} {'VM':<16} {'Type':<8} {'Next Run':<17} {'Last':<8} {'On':<3}")
    click.echo("-" * 90)
    for s in schedules:
        last = s.last_status.value if s.last_status else "-"
        on = "yes" if s.enabled else "no"
        click.echo(
            f"{s.id:<14} {s.name[:20]:<20} {s.target.label[:16]:<16} {s.schedule_type.value:<8} "
            f"{_fmt(s.next_run):<17} {last:<8} {on:<3}"
        )
    click.echo()


@schedule.command("show")
@click.argument("schedule_id")
def schedule_show(schedule_id: str):
    """Show one schedule as JSON."""
    sched = get_storage().get_schedule(schedule_id)
    if sched is None:
        _fail(f"Schedule {schedule_id} not found")
    click.echo(sched.model_dump_json(indent=2))
    click.echo(f"Retention: {sched.retention}")


def _set_enabled(schedule_id: str, enabled: bool) -> None:
    storage = get_storage()
    if storage.get_schedule(schedule_id) is None:
        _fail(f"Schedule {schedule_id} not found")
    storage.update_schedule(schedule_id, enabled=enabled)
    click.echo(f"✓ Schedule {schedule_id} {'enabled' if enabled else 'disabled'}")


@schedule.command("enable")
@click.argument("schedule_id")
def schedule_enable(schedule_id: str):
    """Enable a schedule."""
    _set_enabled(schedule_id, True)


@schedule.command("disable")
@click.argument("schedule_id")
def schedule_disable(schedule_id: str):
    """Disable a schedule."""
    _set_enabled(schedule_id, False)


@schedule.command("run-now")
@click.argument("schedule_id")
def schedule_run_now(schedule_id: str):
    """Make a schedule due so the next cycle picks it up."""
    storage = get_storage()
    if storage.get_schedule(schedule_id) is None:
        _fail(f"Schedule {schedule_id} not found")
    storage.update_schedule(schedule_id, next_run=get_settings().clock()())
    click.echo(f"✓ Schedule {schedule_id} is due on the next cycle")


@cli.group()
def history():
    """Inspect backup history"""
    pass


@history.command("list")
@click.option("--schedule", "schedule_id", default=None, help="Only this schedule")
@click.option("--limit", default=20, help="Maximum records to display")
def history_list(schedule_id: Optional[str], limit: int):
    """List execution history, newest first.

    Example:
        backupctl history list --schedule 3f2a9c1d4e5b
    """
    storage = get_storage()
    records = storage.get_history_for(schedule_id) if schedule_id else storage.get_all_history()
    records = records[:limit]
    if not records:
        click.echo("No history found")
        return

    click.echo(f"\n{'ID':<14} {'Schedule':<14} {'Started':<17} {'Status':<10} {'Secs':<6} {'Error':<30}")
    click.echo("-" * 94)
    for r in records:
        secs = "-" if r.duration_seconds is None else str(r.duration_seconds)
        error = (r.error_message or "")[:30]
        click.echo(
            f"{r.id:<14} {r.schedule_id:<14} {_fmt(r.started_at):<17} {r.status.value:<10} {secs:<6} {error:<30}"
        )
    click.echo()


@cli.group()
def retention():
    """Apply retention policies"""
    pass


@retention.command("apply")
@click.argument("schedule_id", required=False)
def retention_apply(schedule_id: Optional[str]):
    """Apply retention now, for one schedule or all of them."""
    storage = get_storage()
    enforcer = RetentionEnforcer(storage, get_settings().clock())
    if schedule_id:
        sched = storage.get_schedule(schedule_id)
        if sched is None:
            _fail(f"Schedule {schedule_id} not found")
        schedules = [sched]
    else:
        schedules = storage.get_all_schedules()

    total = 0
    for sched in schedules:
        total += enforcer.enforce(sched).deleted
    click.echo(f"✓ Removed {total} history record(s)")


@cli.group()
def action():
    """Manage recurring VM actions"""
    pass


@action.command("add")
@click.option("--name", required=True)
@click.option("--cluster", "cluster_id", required=True)
@click.option("--node", required=True)
@click.option("--vmid", required=True, type=int)
@click.option("--vm-name", default="")
@click.option("--action", "vm_action", type=click.Choice([a.value for a in VMAction]), required=True)
@click.option("--type", "schedule_type", type=click.Choice(SCHEDULE_TYPES), required=True)
@click.option("--value", "schedule_value", default=None)
@click.option("--retention-count", default=7, help="Snapshots to keep")
def action_add(name, cluster_id, node, vmid, vm_name, vm_action, schedule_type, schedule_value, retention_count):
    """Create an action schedule.

    Example:
        backupctl action add --name night-stop --cluster c1 --node pve1 --vmid 100 --action shutdown --type daily --value 23:00
    """
    storage = get_storage()
    if storage.get_cluster(cluster_id) is None:
        _fail(f"Cluster {cluster_id} not found")
    now = get_settings().clock()()
    try:
        item = ActionSchedule(
            name=name,
            target=BackupTarget(cluster_id=cluster_id, node=node, vmid=vmid, vm_name=vm_name),
            action=vm_action,
            schedule_type=schedule_type,
            schedule_value=schedule_value,
            retention_count=retention_count,
            next_run=initial_next_run(schedule_type, schedule_value, now),
        )
        storage.add_action(item)
    except ValidationError as e:
        _fail(f"Invalid action schedule: {e.errors()[0]['msg']}")
    click.echo(f"✓ Action schedule {item.id} created, next run {_fmt(item.next_run)}")


@action.command("list")
def action_list():
    """List action schedules."""
    items = get_storage().get_all_actions()
    if not items:
        click.echo("No action schedules found")
        return

    click.echo(f"\n{'ID':<14} {'Name':<20} {'Action':<10} {'VM':<16} {'Next Run':<17} {'Last':<8}")
    click.echo("-" * 88)
    for a in items:
        last = a.last_status.value if a.last_status else "-"
        click.echo(
            f"{a.id:<14} {a.name[:20]:<20} {a.action.value:<10} {a.target.label[:16]:<16} "
            f"{_fmt(a.next_run):<17} {last:<8}"
        )
    click.echo()


@cli.group()
def cluster():
    """Manage Proxmox clusters"""
    pass


@cluster.command("add")
@click.option("--name", required=True)
@click.option("--host", required=True)
@click.option("--port", default=8006)
@click.option("--username", default="root")
@click.option("--realm", default="pam")
@click.option("--verify-ssl/--no-verify-ssl", default=False)
@click.password_option("--password", confirmation_prompt=False)
def cluster_add(name, host, port, username, realm, verify_ssl, password):
    """Register a cluster; the password is stored encrypted.

    Example:
        backupctl cluster add --name main --host 10.0.0.10
    """
    settings: Settings = get_settings()
    try:
        provider = FernetCredentialProvider(settings.encryption_key)
    except BackupCtlError as e:
        _fail(f"Error: {e} (see: backupctl key generate)")
    item = Cluster(
        name=name,
        host=host,
        port=port,
        username=username,
        realm=realm,
        verify_ssl=verify_ssl,
        password_encrypted=provider.encrypt(password),
    )
    get_storage().add_cluster(item)
    click.echo(f"✓ Cluster {item.id} ({name}) added")


@cluster.command("list")
def cluster_list():
    """List clusters."""
    items = get_storage().get_all_clusters()
    if not items:
        click.echo("No clusters found")
        return
    click.echo(f"\n{'ID':<14} {'Name':<20} {'Endpoint':<30} {'Login':<20}")
    click.echo("-" * 86)
    for c in items:
        click.echo(f"{c.id:<14} {c.name[:20]:<20} {c.host + ':' + str(c.port):<30} {c.login:<20}")
    click.echo()


@cli.group()
def key():
    """Encryption key helpers"""
    pass


@key.command("generate")
def key_generate():
    """Print a new value for BACKUPCTL_ENCRYPTION_KEY."""
    click.echo(generate_key())


@cli.group()
def config():
    """Manage configuration"""
    pass


@config.command("show")
def config_show():
    """Show current configuration.

    Example:
        backupctl config show
    """
    cfg = get_storage().get_config()

    click.echo("\nCurrent Configuration:")
    click.echo(f"  poll-interval:      {cfg.poll_interval} seconds")
    click.echo(f"  max-poll-attempts:  {cfg.max_poll_attempts}")
    click.echo(f"  lease-seconds:      {cfg.lease_seconds}")
    click.echo(f"  max-workers:        {cfg.max_workers}")
    click.echo()


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a configuration value.

    Example:
        backupctl config set max-poll-attempts 120
        backupctl config set max-workers 4
    """
    storage = get_storage()
    cfg = storage.get_config()

    try:
        if key == "poll-interval":
            cfg.poll_interval = float(value)
        elif key == "max-poll-attempts":
            cfg.max_poll_attempts = int(value)
        elif key == "lease-seconds":
            cfg.lease_seconds = int(value)
        elif key == "max-workers":
            cfg.max_workers = int(value)
        else:
            _fail(f"Unknown config key: {key}")

        storage.set_config(cfg)
        click.echo(f"✓ Configuration updated: {key} = {value}")
    except ValidationError as e:
        _fail(f"Invalid value for {key}: {e.errors()[0]['msg']}")
    except ValueError as e:
        _fail(f"Invalid value: {e}")


if __name__ == "__main__":
    cli()
