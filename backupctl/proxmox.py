"""Proxmox VE API client.

Handles:
- Ticket authentication (PVEAuthCookie + CSRFPreventionToken)
- vzdump job submission and task status polling
- VM power actions and snapshots for action schedules
- Error mapping to backupctl exceptions
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .errors import AuthenticationError, DispatchError, RemoteJobError
from .models import BackupOptions, BackupTarget, Cluster, VMAction

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "backupctl",
    "Accept": "application/json",
}


@dataclass(frozen=True)
class TaskStatus:
    """Snapshot of a remote task's state."""

    terminal: bool
    success: bool
    exit_status: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "TaskStatus":
        if data.get("status") == "running":
            return cls(terminal=False, success=False)
        exit_status = data.get("exitstatus")
        return cls(terminal=True, success=exit_status == "OK", exit_status=exit_status)


class ProxmoxSession:
    """An authenticated connection to one cluster. Close it when done."""

    def __init__(
        self,
        cluster: Cluster,
        ticket: str,
        csrf_token: str,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.cluster = cluster
        self.ticket = ticket
        self.csrf_token = csrf_token
        self._client = httpx.Client(
            base_url=cluster.base_url,
            headers={
                **DEFAULT_HEADERS,
                "Cookie": f"PVEAuthCookie={ticket}",
                "CSRFPreventionToken": csrf_token,
            },
            timeout=timeout,
            verify=cluster.verify_ssl,
            transport=transport,
        )

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    def __enter__(self) -> "ProxmoxSession":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def request(self, method: str, path: str, *, data: Optional[Dict[str, Any]] = None) -> Any:
        """Perform a request and return the ``data`` member of the answer."""
        try:
            response = self._client.request(method, path, data=data)
        except httpx.TimeoutException as e:
            raise RemoteJobError(f"Request to {self.cluster.name} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise RemoteJobError(f"Request to {self.cluster.name} failed: {e}") from e
        return _handle_response(response)


def _extract_error_message(data: Any, response: httpx.Response) -> str:
    """Extract error message from a Proxmox error answer."""
    if isinstance(data, dict):
        errors = data.get("errors")
        if isinstance(errors, dict) and errors:
            return "; ".join(f"{key}: {value}" for key, value in errors.items())
        if errors:
            return str(errors)
        if data.get("message"):
            return str(data["message"])
    if response.reason_phrase:
        return f"HTTP {response.status_code}: {response.reason_phrase}"
    return f"HTTP {response.status_code}"


def _handle_response(response: httpx.Response) -> Any:
    """Handle HTTP response and map errors."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if response.is_success:
        return payload.get("data") if isinstance(payload, dict) else None

    message = _extract_error_message(payload, response)
    if response.status_code == 401:
        raise AuthenticationError(message)
    raise RemoteJobError(message, status_code=response.status_code)


class ProxmoxClient:
    """Remote job client for Proxmox VE clusters."""

    def __init__(self, timeout: float = 30.0, transport: Optional[httpx.BaseTransport] = None) -> None:
        self._timeout = timeout
        self._transport = transport

    def authenticate(self, cluster: Cluster, password: str) -> ProxmoxSession:
        """Obtain a ticket for ``cluster`` and return a session using it."""
        try:
            with httpx.Client(
                timeout=self._timeout,
                verify=cluster.verify_ssl,
                transport=self._transport,
                headers=DEFAULT_HEADERS,
            ) as client:
                response = client.post(
                    f"{cluster.base_url}/access/ticket",
                    data={"username": cluster.login, "password": password},
                )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Cannot reach cluster {cluster.name}: {e}") from e

        if not response.is_success:
            try:
                message = _extract_error_message(response.json(), response)
            except ValueError:
                message = f"HTTP {response.status_code}"
            raise AuthenticationError(f"Authentication to {cluster.name} failed: {message}")

        try:
            data = response.json()["data"]
            ticket = data["ticket"]
            csrf_token = data["CSRFPreventionToken"]
        except (ValueError, KeyError, TypeError) as e:
            raise AuthenticationError(f"Authentication to {cluster.name} failed: no ticket returned") from e

        logger.debug("Authenticated to cluster %s as %s", cluster.name, cluster.login)
        return ProxmoxSession(
            cluster, ticket, csrf_token, timeout=self._timeout, transport=self._transport
        )

    def submit_backup(
        self, session: ProxmoxSession, target: BackupTarget, options: BackupOptions
    ) -> str:
        """Start a vzdump job. Returns the task UPID."""
        params = {"vmid": str(target.vmid), **options.to_params()}
        try:
            upid = session.request("POST", f"/nodes/{target.node}/vzdump", data=params)
        except RemoteJobError as e:
            raise DispatchError(f"Backup submission rejected: {e}", status_code=e.status_code) from e
        if not upid:
            raise DispatchError("Backup submission returned no task id")
        return str(upid)

    def poll_status(self, session: ProxmoxSession, target: BackupTarget, upid: str) -> TaskStatus:
        """Query the state of a task started on ``target``'s node."""
        data = session.request("GET", f"/nodes/{target.node}/tasks/{upid}/status")
        if not isinstance(data, dict):
            raise RemoteJobError(f"Unexpected task status answer for {upid}")
        return TaskStatus.from_api(data)

    def vm_action(self, session: ProxmoxSession, target: BackupTarget, action: VMAction) -> str:
        """Run a power action (start/stop/shutdown/reboot). Returns the task UPID."""
        if action == VMAction.SNAPSHOT:
            raise ValueError("snapshot is not a power action")
        path = f"/nodes/{target.node}/qemu/{target.vmid}/status/{action.value}"
        return str(session.request("POST", path) or "")

    def list_snapshots(self, session: ProxmoxSession, target: BackupTarget) -> List[Dict[str, Any]]:
        """Snapshots of a VM, without the pseudo-entry for the current state."""
        data = session.request("GET", f"/nodes/{target.node}/qemu/{target.vmid}/snapshot") or []
        return [snap for snap in data if snap.get("name") != "current"]

    def create_snapshot(
        self, session: ProxmoxSession, target: BackupTarget, name: str, description: str = ""
    ) -> str:
        path = f"/nodes/{target.node}/qemu/{target.vmid}/snapshot"
        data = {"snapname": name, "description": description, "vmstate": "0"}
        return str(session.request("POST", path, data=data) or "")

    def delete_snapshot(self, session: ProxmoxSession, target: BackupTarget, name: str) -> str:
        path = f"/nodes/{target.node}/qemu/{target.vmid}/snapshot/{name}"
        return str(session.request("DELETE", path) or "")
