"""Email notifications for backup outcomes.

Delivery is best-effort: ``send`` never raises, failures are logged and the
recorded execution outcome is unaffected.
"""

import html
import logging
import smtplib
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional, Protocol, Tuple

from .models import Cluster, Schedule

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def send(self, recipient: str, subject: str, html_body: str) -> None:
        ...


class NullNotifier:
    """Drops every message; used when SMTP is not configured."""

    def send(self, recipient: str, subject: str, html_body: str) -> None:
        logger.debug("Notification to %s dropped: %s", recipient, subject)


class SmtpNotifier:
    """Sends HTML mail over SMTP."""

    def __init__(
        self,
        smtp_host: str,
        from_address: str,
        *,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 30.0,
    ):
        self._smtp_host = smtp_host
        self._smtp_port = smtp_port
        self._smtp_user = smtp_user
        self._smtp_password = smtp_password
        self._from_address = from_address
        self._use_tls = use_tls
        self._timeout = timeout

    def _build_message(self, recipient: str, subject: str, html_body: str) -> str:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = self._from_address
        msg["To"] = recipient
        msg.attach(MIMEText(html_body, "html"))
        return msg.as_string()

    def send(self, recipient: str, subject: str, html_body: str) -> None:
        """Send one message. Errors are logged, never raised."""
        if not recipient:
            return
        try:
            with smtplib.SMTP(self._smtp_host, self._smtp_port, timeout=self._timeout) as server:
                if self._use_tls:
                    server.starttls()
                if self._smtp_user and self._smtp_password:
                    server.login(self._smtp_user, self._smtp_password)
                server.sendmail(
                    self._from_address, [recipient], self._build_message(recipient, subject, html_body)
                )
            logger.info("Notification sent to %s", recipient)
        except (smtplib.SMTPException, OSError) as e:
            logger.warning("Failed to send email to %s: %s", recipient, e)


def should_notify(schedule: Schedule, success: bool) -> bool:
    if not schedule.notification_email:
        return False
    return schedule.notify_on_success if success else schedule.notify_on_failure


def render_backup_result(
    schedule: Schedule,
    cluster: Optional[Cluster],
    *,
    success: bool,
    started_at: datetime,
    duration_seconds: int,
    error: Optional[str] = None,
    started: bool = True,
) -> Tuple[str, str]:
    """Subject and HTML body for a finished (or never started) backup."""
    vm = schedule.target.label
    if not started:
        subject = f"Backup Failed to Start: {vm}"
        heading = "Backup Failed to Start"
    elif success:
        subject = f"Backup Completed: {vm}"
        heading = "Backup Completed Successfully"
    else:
        subject = f"Backup Failed: {vm}"
        heading = "Backup Failed"

    rows = [
        ("Schedule", schedule.name),
        ("VM", f"{vm} (VMID: {schedule.target.vmid})"),
        ("Cluster", cluster.name if cluster else schedule.target.cluster_id),
        ("Node", schedule.target.node),
        ("Started", started_at.strftime("%Y-%m-%d %H:%M:%S %Z").strip()),
        ("Duration", f"{duration_seconds} seconds"),
        ("Status", "Success" if success else "Failed"),
    ]
    if error:
        rows.append(("Error", error))

    body = [f"<h2>{html.escape(heading)}</h2>"]
    for label, value in rows:
        body.append(f"<p><strong>{label}:</strong> {html.escape(str(value))}</p>")
    return subject, "\n".join(body)
